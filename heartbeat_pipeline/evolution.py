from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import random
from typing import Any

from .config import Settings
from .models import EvolutionState

DEFAULT_STATE_TYPE = "global"

DEFAULT_GENES: dict[str, float] = {
    "direction_weight": 0.4,
    "magnitude_weight": 0.25,
    "timing_weight": 0.2,
    "calibration_weight": 0.15,
    "volatility_threshold": 0.001,
    "confidence_threshold": 0.6,
    "correlation_threshold": 0.3,
}


@dataclass(frozen=True)
class FitnessSummary:
    sample_size: int
    avg_score: float
    direction_accuracy: float


def initial_state(state_type: str = DEFAULT_STATE_TYPE) -> EvolutionState:
    return EvolutionState(
        state_type=state_type,
        generation=0,
        fitness_score=0.0,
        total_predictions_seen=0,
        genes=dict(DEFAULT_GENES),
        adaptation_history=[],
        last_mutation_at=None,
    )


def summarize_fitness(resolved: list[dict[str, Any]]) -> FitnessSummary | None:
    if not resolved:
        return None
    scores = [float(row.get("composite_score") or 0.0) for row in resolved]
    correct = sum(1 for row in resolved if row.get("direction_correct"))
    return FitnessSummary(
        sample_size=len(resolved),
        avg_score=sum(scores) / len(scores),
        direction_accuracy=correct / len(resolved),
    )


def mutation_rate_for(fitness: float, settings: Settings) -> float:
    if fitness < settings.mutation_fitness_pivot:
        return settings.mutation_rate_low_fitness
    return settings.mutation_rate_high_fitness


def mutate_genes(
    genes: dict[str, float],
    *,
    mutation_rate: float,
    step: float,
    rng: random.Random,
) -> dict[str, float]:
    mutated: dict[str, float] = {}
    for name in sorted(genes):
        value = float(genes[name])
        if rng.random() < mutation_rate:
            value += rng.uniform(-step, step)
        mutated[name] = max(0.0, min(1.0, value))
    return mutated


def evolve_state(
    state: EvolutionState,
    summary: FitnessSummary,
    *,
    settings: Settings,
    rng: random.Random,
    now_utc: datetime,
) -> EvolutionState:
    genes = mutate_genes(
        state.genes or dict(DEFAULT_GENES),
        mutation_rate=mutation_rate_for(summary.avg_score, settings),
        step=settings.mutation_step,
        rng=rng,
    )
    history = list(state.adaptation_history)
    history.append(
        {
            "timestamp": now_utc.isoformat(),
            "fitness": summary.avg_score,
            "direction_accuracy": summary.direction_accuracy,
        }
    )
    cap = max(1, settings.adaptation_history_cap)
    if len(history) > cap:
        history = history[-cap:]
    return EvolutionState(
        state_type=state.state_type,
        generation=state.generation + 1,
        fitness_score=summary.avg_score,
        total_predictions_seen=state.total_predictions_seen + summary.sample_size,
        genes=genes,
        adaptation_history=history,
        last_mutation_at=now_utc,
    )
