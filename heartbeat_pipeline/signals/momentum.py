from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import math
import random

from ..models import Prediction

VOLATILITY_EPSILON = 1e-4
CONFIDENCE_FLOOR = 0.6
CONFIDENCE_CEILING = 0.92


@dataclass(frozen=True)
class MomentumFeatures:
    latest_price: float
    avg_price: float
    momentum: float
    volatility: float
    trend_strength: float
    direction: str
    confidence: float
    magnitude: float


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def compute_features(prices: list[float], min_ticks: int = 5) -> MomentumFeatures | None:
    """Momentum/volatility features over a most-recent-first price window."""
    window = [float(price) for price in prices if price is not None]
    if len(window) < max(2, min_ticks):
        return None
    latest_price = window[0]
    avg_price = sum(window) / len(window)
    if avg_price <= 0:
        return None
    momentum = (latest_price - avg_price) / avg_price

    returns: list[float] = []
    for idx in range(len(window) - 1):
        previous = window[idx + 1]
        if previous <= 0:
            continue
        returns.append((window[idx] - previous) / previous)
    if returns:
        mean_return = sum(returns) / len(returns)
        variance = sum((value - mean_return) ** 2 for value in returns) / len(returns)
        volatility = math.sqrt(variance)
    else:
        volatility = 0.0

    trend_strength = abs(momentum) / max(volatility, VOLATILITY_EPSILON)
    if momentum > 0:
        direction = "up"
    elif momentum < 0:
        direction = "down"
    else:
        direction = "flat"
    confidence = _clamp(
        0.55 + min(0.35, trend_strength * 0.1),
        CONFIDENCE_FLOOR,
        CONFIDENCE_CEILING,
    )
    return MomentumFeatures(
        latest_price=latest_price,
        avg_price=avg_price,
        momentum=momentum,
        volatility=volatility,
        trend_strength=trend_strength,
        direction=direction,
        confidence=confidence,
        magnitude=abs(momentum) + volatility,
    )


def build_prediction(
    *,
    symbol: str,
    asset_class: str,
    prices: list[float],
    horizon_seconds: int,
    created_at: datetime,
    min_ticks: int = 5,
) -> Prediction | None:
    features = compute_features(prices, min_ticks=min_ticks)
    if features is None:
        return None
    return Prediction(
        symbol=symbol,
        asset_class=asset_class,
        prediction_type="momentum",
        predicted_direction=features.direction,
        predicted_magnitude=features.magnitude,
        confidence=features.confidence,
        entry_price=features.latest_price,
        horizon_seconds=horizon_seconds,
        market_conditions={
            "momentum": features.momentum,
            "volatility": features.volatility,
            "trend_strength": features.trend_strength,
            "avg_price": features.avg_price,
            "window_size": len(prices),
            "real_data_only": True,
        },
        created_at=created_at,
    )


def sample_symbols(
    candidates: list[tuple[str, str]],
    rng: random.Random,
    *,
    min_count: int = 1,
    max_count: int = 3,
) -> list[tuple[str, str]]:
    if not candidates:
        return []
    upper = min(max_count, len(candidates))
    lower = min(max(1, min_count), upper)
    count = rng.randint(lower, upper)
    return rng.sample(candidates, count)
