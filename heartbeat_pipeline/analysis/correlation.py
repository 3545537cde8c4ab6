from __future__ import annotations

from datetime import datetime
import math

from ..models import CorrelationRecord


def pearson(xs: list[float], ys: list[float]) -> float:
    n = min(len(xs), len(ys))
    if n < 2:
        return 0.0
    xs = xs[:n]
    ys = ys[:n]
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    cov = 0.0
    var_x = 0.0
    var_y = 0.0
    for x, y in zip(xs, ys):
        dx = x - mean_x
        dy = y - mean_y
        cov += dx * dy
        var_x += dx * dx
        var_y += dy * dy
    denominator = math.sqrt(var_x * var_y)
    if denominator == 0:
        return 0.0
    return max(-1.0, min(1.0, cov / denominator))


def correlate_pair(
    symbol_a: str,
    symbol_b: str,
    prices_a: list[float],
    prices_b: list[float],
    *,
    min_samples: int,
    timeframe: str,
    computed_at: datetime,
) -> CorrelationRecord | None:
    n = min(len(prices_a), len(prices_b))
    if n < min_samples:
        return None
    return CorrelationRecord(
        symbol_a=symbol_a,
        symbol_b=symbol_b,
        coefficient=pearson(prices_a[:n], prices_b[:n]),
        sample_size=n,
        timeframe=timeframe,
        computed_at=computed_at,
    )
