from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Tick:
    ts: datetime
    symbol: str
    asset_class: str
    source: str
    price: float
    bid: float | None = None
    ask: float | None = None
    volume: float | None = None


@dataclass(frozen=True)
class Prediction:
    symbol: str
    asset_class: str
    prediction_type: str
    predicted_direction: str
    predicted_magnitude: float
    confidence: float
    entry_price: float
    horizon_seconds: int
    market_conditions: dict[str, Any]
    created_at: datetime
    id: int | None = None


@dataclass(frozen=True)
class PredictionResolution:
    prediction_id: int
    symbol: str
    exit_price: float
    actual_direction: str
    actual_magnitude: float
    direction_correct: bool
    magnitude_accuracy: float
    timing_accuracy: float
    calibration_score: float
    composite_score: float
    resolved_at: datetime


@dataclass(frozen=True)
class CorrelationRecord:
    symbol_a: str
    symbol_b: str
    coefficient: float
    sample_size: int
    timeframe: str
    computed_at: datetime


@dataclass(frozen=True)
class EvolutionState:
    state_type: str
    generation: int
    fitness_score: float
    total_predictions_seen: int
    genes: dict[str, float]
    adaptation_history: list[dict[str, Any]] = field(default_factory=list)
    last_mutation_at: datetime | None = None


@dataclass(frozen=True)
class Trade:
    prediction_id: int
    symbol: str
    asset_class: str
    direction: str
    entry_price: float
    shares: float
    entry_time: datetime
    predicted_direction: str
    confidence: float
    status: str = "open"
    exit_price: float | None = None
    exit_time: datetime | None = None
    pnl: float | None = None
    pnl_percent: float | None = None
    actual_direction: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class PortfolioBalance:
    portfolio_key: str
    balance: float
    target_balance: float
    peak_balance: float
    trough_balance: float
    total_trades: int = 0
    winning_trades: int = 0
    last_trade_at: datetime | None = None


@dataclass(frozen=True)
class Vital:
    name: str
    status: str
    value: float
    metadata: dict[str, Any]
    updated_at: datetime
