from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Callable

import requests

from ..config import Settings
from ..models import Tick

logger = logging.getLogger(__name__)

BINANCE_TICKER_URL = "https://api.binance.com/api/v3/ticker/price"
TWELVE_DATA_PRICE_URL = "https://api.twelvedata.com/price"
FINNHUB_QUOTE_URL = "https://finnhub.io/api/v1/quote"

Fetcher = Callable[[requests.Session, Settings, list[tuple[str, str]], datetime], list[Tick]]


@dataclass(frozen=True)
class CollectionResult:
    ticks: list[Tick]
    expected_symbols: int
    sources: list[str] = field(default_factory=list)
    failed_providers: list[str] = field(default_factory=list)

    @property
    def real_ticks(self) -> int:
        return sum(1 for tick in self.ticks if tick.source != "fallback")


def _as_float(value: object) -> float | None:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _forex_pair(symbol: str) -> str:
    if len(symbol) == 6 and "/" not in symbol:
        return f"{symbol[:3]}/{symbol[3:]}"
    return symbol


def _fetch_binance(
    client: requests.Session,
    settings: Settings,
    symbols: list[tuple[str, str]],
    current_utc: datetime,
) -> list[Tick]:
    wanted = {f"{symbol}USDT": symbol for symbol, asset_class in symbols if asset_class == "crypto"}
    if not wanted:
        return []
    headers = {"X-MBX-APIKEY": settings.binance_api_key} if settings.binance_api_key else None
    response = client.get(
        BINANCE_TICKER_URL,
        headers=headers,
        timeout=settings.provider_timeout_seconds,
    )
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, list):
        raise ValueError("binance ticker payload is not a list")
    ticks: list[Tick] = []
    for row in payload:
        if not isinstance(row, dict):
            continue
        symbol = wanted.get(str(row.get("symbol", "")))
        price = _as_float(row.get("price"))
        if symbol is None or price is None or price <= 0:
            continue
        ticks.append(
            Tick(ts=current_utc, symbol=symbol, asset_class="crypto", source="binance", price=price)
        )
    return ticks


def _fetch_twelvedata(
    client: requests.Session,
    settings: Settings,
    symbols: list[tuple[str, str]],
    current_utc: datetime,
) -> list[Tick]:
    if not settings.twelve_data_api_key:
        logger.info("provider_skipped provider=twelvedata reason=missing_api_key")
        return []
    requested: dict[str, tuple[str, str]] = {}
    for symbol, asset_class in symbols:
        if asset_class == "forex":
            requested[_forex_pair(symbol)] = (symbol, asset_class)
        elif asset_class == "stock":
            requested[symbol] = (symbol, asset_class)
    if not requested:
        return []
    response = client.get(
        TWELVE_DATA_PRICE_URL,
        params={"symbol": ",".join(requested), "apikey": settings.twelve_data_api_key},
        timeout=settings.provider_timeout_seconds,
    )
    response.raise_for_status()
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("twelvedata payload is not an object")
    if payload.get("status") == "error":
        raise ValueError(f"twelvedata error: {payload.get('message')}")
    # A single-symbol request returns the quote at the top level.
    if len(requested) == 1 and "price" in payload:
        payload = {next(iter(requested)): payload}
    ticks: list[Tick] = []
    for provider_symbol, (symbol, asset_class) in requested.items():
        row = payload.get(provider_symbol)
        if not isinstance(row, dict):
            continue
        price = _as_float(row.get("price"))
        if price is None or price <= 0:
            continue
        ticks.append(
            Tick(ts=current_utc, symbol=symbol, asset_class=asset_class, source="twelvedata", price=price)
        )
    return ticks


def _fetch_finnhub(
    client: requests.Session,
    settings: Settings,
    symbols: list[tuple[str, str]],
    current_utc: datetime,
) -> list[Tick]:
    if not settings.finnhub_api_key:
        logger.info("provider_skipped provider=finnhub reason=missing_api_key")
        return []
    stocks = [symbol for symbol, asset_class in symbols if asset_class == "stock"]
    ticks: list[Tick] = []
    last_error: requests.RequestException | None = None
    # Free tier is rate limited, so only the head of the stock list is polled.
    for symbol in stocks[: settings.finnhub_max_symbols]:
        try:
            response = client.get(
                FINNHUB_QUOTE_URL,
                params={"symbol": symbol, "token": settings.finnhub_api_key},
                timeout=settings.provider_timeout_seconds,
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "unknown"
            logger.warning("provider_symbol_failed provider=finnhub symbol=%s status=%s", symbol, status)
            last_error = exc
            continue
        except requests.RequestException as exc:
            logger.warning("provider_symbol_failed provider=finnhub symbol=%s", symbol, exc_info=True)
            last_error = exc
            continue
        payload = response.json()
        if not isinstance(payload, dict):
            continue
        price = _as_float(payload.get("c"))
        if price is None or price <= 0:
            continue
        ticks.append(
            Tick(
                ts=current_utc,
                symbol=symbol,
                asset_class="stock",
                source="finnhub",
                price=price,
                bid=_as_float(payload.get("l")),
                ask=_as_float(payload.get("h")),
                volume=_as_float(payload.get("v")),
            )
        )
    # Only a provider that returned nothing at all counts as failed.
    if last_error is not None and not ticks:
        raise last_error
    return ticks


PROVIDERS: dict[str, tuple[frozenset[str], Fetcher]] = {
    "binance": (frozenset({"crypto"}), _fetch_binance),
    "twelvedata": (frozenset({"forex", "stock"}), _fetch_twelvedata),
    "finnhub": (frozenset({"stock"}), _fetch_finnhub),
}


def _run_provider(
    name: str,
    fetcher: Fetcher,
    client: requests.Session,
    settings: Settings,
    symbols: list[tuple[str, str]],
    current_utc: datetime,
) -> tuple[list[Tick], bool]:
    try:
        return fetcher(client, settings, symbols, current_utc), True
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "unknown"
        logger.warning("provider_failed provider=%s status=%s", name, status)
    except requests.RequestException:
        logger.warning("provider_failed provider=%s", name, exc_info=True)
    except (KeyError, TypeError, ValueError):
        logger.warning("provider_payload_invalid provider=%s", name, exc_info=True)
    return [], False


def dedupe_ticks(ticks: list[Tick]) -> list[Tick]:
    seen: set[str] = set()
    unique: list[Tick] = []
    for tick in ticks:
        if tick.symbol in seen:
            continue
        seen.add(tick.symbol)
        unique.append(tick)
    return unique


def fetch_market_ticks(
    settings: Settings,
    symbols: list[tuple[str, str]],
    *,
    session: requests.Session | None = None,
    now_utc: datetime | None = None,
    providers: dict[str, tuple[frozenset[str], Fetcher]] | None = None,
) -> CollectionResult:
    current_utc = now_utc or datetime.now(timezone.utc)
    client = session or requests.Session()
    registry = providers if providers is not None else PROVIDERS
    open_classes = {asset_class for _, asset_class in symbols}

    selected: list[tuple[str, Fetcher]] = []
    for name in settings.market_data_providers:
        entry = registry.get(name)
        if entry is None:
            continue
        asset_classes, fetcher = entry
        if asset_classes & open_classes:
            selected.append((name, fetcher))

    ticks: list[Tick] = []
    sources: list[str] = []
    failed: list[str] = []
    if selected:
        with ThreadPoolExecutor(max_workers=len(selected)) as pool:
            futures = [
                (name, pool.submit(_run_provider, name, fetcher, client, settings, symbols, current_utc))
                for name, fetcher in selected
            ]
            # Provider order, not completion order, decides which duplicate wins.
            for name, future in futures:
                provider_ticks, ok = future.result()
                if not ok:
                    failed.append(name)
                if provider_ticks:
                    sources.append(name)
                ticks.extend(provider_ticks)

    allowed = set(symbols)
    ticks = [tick for tick in ticks if (tick.symbol, tick.asset_class) in allowed]
    return CollectionResult(
        ticks=dedupe_ticks(ticks),
        expected_symbols=len(symbols),
        sources=sources,
        failed_providers=failed,
    )
