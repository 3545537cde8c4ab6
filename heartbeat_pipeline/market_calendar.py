from __future__ import annotations

from datetime import datetime, time, timezone

from .config import Settings

ASSET_CLASSES = ("crypto", "forex", "stock")

# US cash session expressed in UTC (EST offset); DST and holidays are not modelled.
STOCK_SESSION_OPEN_UTC = time(14, 30)
STOCK_SESSION_CLOSE_UTC = time(21, 0)
FOREX_SUNDAY_OPEN_HOUR_UTC = 22


def _as_utc(now_utc: datetime) -> datetime:
    if now_utc.tzinfo is None:
        return now_utc.replace(tzinfo=timezone.utc)
    return now_utc.astimezone(timezone.utc)


def is_open(asset_class: str, now_utc: datetime) -> bool:
    now = _as_utc(now_utc)
    weekday = now.weekday()  # Monday=0 ... Sunday=6
    if asset_class == "crypto":
        return True
    if asset_class == "forex":
        if weekday == 5:
            return False
        if weekday == 6 and now.hour < FOREX_SUNDAY_OPEN_HOUR_UTC:
            return False
        return True
    if asset_class == "stock":
        if weekday >= 5:
            return False
        return STOCK_SESSION_OPEN_UTC <= now.time() < STOCK_SESSION_CLOSE_UTC
    return False


def open_asset_classes(now_utc: datetime) -> list[str]:
    return [asset_class for asset_class in ASSET_CLASSES if is_open(asset_class, now_utc)]


def symbols_by_asset_class(settings: Settings) -> dict[str, list[str]]:
    return {
        "crypto": list(settings.crypto_symbols),
        "forex": list(settings.forex_symbols),
        "stock": list(settings.stock_symbols),
    }


def open_symbols(settings: Settings, now_utc: datetime) -> list[tuple[str, str]]:
    """(symbol, asset_class) for every configured symbol whose market is open."""
    grouped = symbols_by_asset_class(settings)
    rows: list[tuple[str, str]] = []
    for asset_class in open_asset_classes(now_utc):
        for symbol in grouped.get(asset_class, []):
            rows.append((symbol, asset_class))
    return rows
