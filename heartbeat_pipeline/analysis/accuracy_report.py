from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from ..config import Settings
from ..evolution import DEFAULT_STATE_TYPE
from ..risk import progress_percent

if TYPE_CHECKING:
    from ..db import PostgresStore

TOP_CORRELATION_THRESHOLD = 0.5
RECENT_PREDICTION_LIMIT = 10


@dataclass(frozen=True)
class HeartbeatReport:
    overall_accuracy: float | None
    total_predictions: int
    correct_predictions: int
    symbols_tracked: int
    symbol_metrics: list[dict[str, object]]
    top_correlations: list[dict[str, object]]
    evolution: dict[str, Any] | None
    portfolio: dict[str, Any]
    recent_predictions: list[dict[str, object]]
    vitals: list[dict[str, object]]

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def _weighted_accuracy(metrics: list[dict[str, object]]) -> float | None:
    total = 0
    weighted = 0.0
    for row in metrics:
        count = int(row.get("total_predictions") or 0)
        if count <= 0:
            continue
        total += count
        weighted += float(row.get("composite_accuracy") or 0.0) * count
    if total == 0:
        return None
    return round(weighted / total, 4)


def generate_heartbeat_report(store: "PostgresStore", settings: Settings) -> HeartbeatReport:
    metrics = store.get_symbol_accuracy()
    state = store.get_evolution_state(DEFAULT_STATE_TYPE)
    portfolio = store.get_portfolio(
        settings.portfolio_key,
        starting_balance=settings.portfolio_starting_balance,
        target_balance=settings.portfolio_target_balance,
    )
    evolution = None
    if state is not None:
        evolution = {
            "generation": state.generation,
            "fitness_score": state.fitness_score,
            "total_predictions_seen": state.total_predictions_seen,
            "genes": state.genes,
            "last_mutation_at": state.last_mutation_at,
            "history_length": len(state.adaptation_history),
        }
    return HeartbeatReport(
        overall_accuracy=_weighted_accuracy(metrics),
        total_predictions=sum(int(row.get("total_predictions") or 0) for row in metrics),
        correct_predictions=sum(int(row.get("correct_predictions") or 0) for row in metrics),
        symbols_tracked=len(metrics),
        symbol_metrics=metrics,
        top_correlations=store.get_correlations(min_coefficient=TOP_CORRELATION_THRESHOLD),
        evolution=evolution,
        portfolio={
            "balance": portfolio.balance,
            "target": portfolio.target_balance,
            "progress": round(progress_percent(portfolio.balance, portfolio.target_balance), 2),
            "peak_balance": portfolio.peak_balance,
            "trough_balance": portfolio.trough_balance,
            "total_trades": portfolio.total_trades,
            "winning_trades": portfolio.winning_trades,
        },
        recent_predictions=store.get_recent_resolved_predictions(limit=RECENT_PREDICTION_LIMIT),
        vitals=store.get_vitals(),
    )
