from __future__ import annotations

from datetime import datetime
import random

from ..models import Tick

BASE_PRICES: dict[str, float] = {
    "BTC": 65000.0,
    "ETH": 3400.0,
    "SOL": 150.0,
    "BNB": 580.0,
    "EURUSD": 1.085,
    "GBPUSD": 1.27,
    "USDJPY": 151.0,
    "USDCAD": 1.36,
    "AAPL": 190.0,
    "TSLA": 180.0,
    "NVDA": 900.0,
    "SPY": 520.0,
    "QQQ": 440.0,
    "MSFT": 420.0,
}

VOLATILITY_BY_ASSET_CLASS = {"crypto": 0.002, "forex": 0.0002, "stock": 0.001}


def _seeded_random(seed: str) -> random.Random:
    return random.Random(seed)


def generate_fallback_tick(
    symbol: str,
    asset_class: str,
    at_time: datetime,
    last_price: float | None = None,
) -> Tick:
    rng = _seeded_random(f"{symbol}:{at_time.replace(second=0, microsecond=0).isoformat()}")
    base = last_price if last_price is not None and last_price > 0 else BASE_PRICES.get(symbol, 100.0)
    volatility = VOLATILITY_BY_ASSET_CLASS.get(asset_class, 0.001)
    price = round(base * (1 + (rng.random() - 0.5) * 2 * volatility), 6)
    return Tick(
        ts=at_time,
        symbol=symbol,
        asset_class=asset_class,
        source="fallback",
        price=price,
        bid=round(price * 0.9999, 6),
        ask=round(price * 1.0001, 6),
        volume=round(rng.uniform(1000, 100000), 2),
    )


def fill_missing_symbols(
    ticks: list[Tick],
    symbols: list[tuple[str, str]],
    at_time: datetime,
    last_prices: dict[str, float],
) -> list[Tick]:
    covered = {tick.symbol for tick in ticks}
    filled = list(ticks)
    for symbol, asset_class in symbols:
        if symbol in covered:
            continue
        filled.append(generate_fallback_tick(symbol, asset_class, at_time, last_prices.get(symbol)))
    return filled
