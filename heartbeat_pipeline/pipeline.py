from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
import random
import time
from typing import TYPE_CHECKING, Any, Callable

import psycopg
import requests

from .analysis.accuracy_report import generate_heartbeat_report
from .analysis.correlation import correlate_pair
from .analysis.scoring import score_prediction
from .collectors.fallback_ticks import fill_missing_symbols
from .collectors.market_data import fetch_market_ticks
from .config import Settings
from .evolution import DEFAULT_STATE_TYPE, evolve_state, initial_state, summarize_fitness
from .market_calendar import open_symbols
from .paper_trading import PaperTradingEngine
from .signals.momentum import build_prediction, sample_symbols
from .vitals import (
    CRITICAL,
    DEGRADED,
    HEALTHY,
    VitalReporter,
    accuracy_status,
    collector_status,
    integrity_status,
)

if TYPE_CHECKING:
    from .db import PostgresStore

logger = logging.getLogger(__name__)

PHASE_ORDER = ("collect", "predict", "resolve", "trade", "correlate", "evolve")
ACTIONS = ("full_cycle", "report") + PHASE_ORDER

# Vital each phase reports under when it fails on persistence.
PHASE_VITALS = {
    "collect": "market-collector",
    "predict": "prediction-engine",
    "resolve": "resolution-engine",
    "trade": "autonomous-trading",
    "correlate": "correlation-engine",
    "evolve": "evolution-engine",
}


class UnknownActionError(ValueError):
    pass


class HeartbeatPipeline:
    def __init__(
        self,
        settings: Settings,
        store: "PostgresStore",
        *,
        session: requests.Session | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.session = session or requests.Session()
        self.rng = rng or random.Random(settings.random_seed)
        self.vitals = VitalReporter(store)
        self.paper_trader = PaperTradingEngine(settings, store)
        self.last_run_at: datetime | None = None

    # Phases

    def collect(self, now_utc: datetime) -> dict[str, Any]:
        symbols = open_symbols(self.settings, now_utc)
        result = fetch_market_ticks(
            self.settings,
            symbols,
            session=self.session,
            now_utc=now_utc,
        )
        ticks = result.ticks
        if self.settings.allow_synthetic_ticks:
            last_prices = self.store.get_latest_prices([symbol for symbol, _ in symbols])
            ticks = fill_missing_symbols(ticks, symbols, now_utc, last_prices)
        real_ticks = result.real_ticks
        inserted = self.store.insert_ticks(ticks)
        status = collector_status(real_ticks, result.expected_symbols, self.settings.collector_min_coverage)
        if result.failed_providers:
            status = DEGRADED
        self.vitals.pulse(
            "market-collector",
            status,
            real_ticks,
            {
                "ticks_collected": inserted,
                "real_ticks": real_ticks,
                "expected_symbols": result.expected_symbols,
                "sources": result.sources,
                "failed_providers": result.failed_providers,
            },
            now_utc=now_utc,
        )
        return {
            "success": True,
            "ticks": inserted,
            "real_ticks": real_ticks,
            "sources": result.sources,
        }

    def predict(self, now_utc: datetime) -> dict[str, Any]:
        candidates = open_symbols(self.settings, now_utc)
        if not candidates:
            return {"success": True, "predictions": 0, "reason": "no_open_markets"}
        chosen = sample_symbols(
            candidates,
            self.rng,
            min_count=self.settings.predictions_per_cycle_min,
            max_count=self.settings.predictions_per_cycle_max,
        )
        pending = []
        skipped: list[str] = []
        for symbol, asset_class in chosen:
            prices = self.store.get_recent_prices(
                symbol, limit=self.settings.prediction_tick_window, real_only=True
            )
            prediction = build_prediction(
                symbol=symbol,
                asset_class=asset_class,
                prices=prices,
                horizon_seconds=self.settings.prediction_horizon_seconds,
                created_at=now_utc,
                min_ticks=self.settings.prediction_min_ticks,
            )
            if prediction is None:
                skipped.append(symbol)
                continue
            pending.append(prediction)
        stored = self.store.insert_predictions(pending) if pending else []
        for prediction in stored:
            logger.info(
                "prediction_issued id=%s symbol=%s direction=%s confidence=%.3f magnitude=%.6f",
                prediction.id,
                prediction.symbol,
                prediction.predicted_direction,
                prediction.confidence,
                prediction.predicted_magnitude,
            )
        self.vitals.pulse(
            "prediction-engine",
            HEALTHY,
            len(stored),
            {"symbols": [p.symbol for p in stored], "insufficient_data": skipped},
            now_utc=now_utc,
        )
        return {
            "success": True,
            "predictions": len(stored),
            "open_markets": len(candidates),
            "skipped": skipped,
        }

    def resolve(self, now_utc: datetime) -> dict[str, Any]:
        due = self.store.get_due_predictions(now_utc)
        resolved = 0
        correct = 0
        deferred = 0
        for prediction in due:
            exit_price = self.store.get_latest_price(prediction.symbol, real_only=True)
            if exit_price is None:
                deferred += 1
                continue
            resolution = score_prediction(
                prediction,
                exit_price,
                now_utc,
                flat_threshold=self.settings.flat_move_threshold,
            )
            if not self.store.resolve_prediction(resolution):
                # Already resolved by an overlapping invocation.
                continue
            self.store.update_symbol_accuracy(resolution, prediction.asset_class)
            resolved += 1
            if resolution.direction_correct:
                correct += 1
        accuracy = correct / resolved if resolved else 0.0
        self.vitals.pulse(
            "resolution-engine",
            HEALTHY,
            accuracy,
            {"resolved": resolved, "correct": correct, "deferred": deferred},
            now_utc=now_utc,
        )
        return {
            "success": True,
            "resolved": resolved,
            "accuracy": round(accuracy, 4),
            "deferred": deferred,
        }

    def trade(self, now_utc: datetime) -> dict[str, Any]:
        stats = self.paper_trader.execute(now_utc)
        status = HEALTHY if stats["balance"] >= self.settings.portfolio_starting_balance else DEGRADED
        self.vitals.pulse(
            "autonomous-trading",
            status,
            stats["balance"],
            {
                "target": stats["target"],
                "progress": stats["progress"],
                "opened": stats["opened"],
                "closed": stats["closed"],
            },
            now_utc=now_utc,
        )
        return {"success": True, **stats}

    def correlate(self, now_utc: datetime) -> dict[str, Any]:
        records = []
        skipped = 0
        for symbol_a, symbol_b in self.settings.correlation_pairs:
            prices_a = self.store.get_recent_prices(
                symbol_a, limit=self.settings.correlation_window, real_only=False
            )
            prices_b = self.store.get_recent_prices(
                symbol_b, limit=self.settings.correlation_window, real_only=False
            )
            record = correlate_pair(
                symbol_a,
                symbol_b,
                prices_a,
                prices_b,
                min_samples=self.settings.correlation_min_samples,
                timeframe=self.settings.correlation_timeframe,
                computed_at=now_utc,
            )
            if record is None:
                skipped += 1
                continue
            records.append(record)
        updated = self.store.upsert_correlations(records) if records else 0
        self.vitals.pulse(
            "correlation-engine",
            HEALTHY,
            updated,
            {"pairs": len(self.settings.correlation_pairs), "skipped": skipped},
            now_utc=now_utc,
        )
        return {"success": True, "correlations": updated, "skipped": skipped}

    def evolve(self, now_utc: datetime) -> dict[str, Any]:
        resolved = self.store.get_recent_resolved_scores(limit=self.settings.evolution_window)
        if len(resolved) < self.settings.evolution_min_resolved:
            return {"success": True, "skipped": "insufficient_data", "resolved": len(resolved)}
        summary = summarize_fitness(resolved)
        if summary is None:
            return {"success": True, "skipped": "insufficient_data", "resolved": 0}

        current = self.store.get_evolution_state(DEFAULT_STATE_TYPE) or initial_state()
        evolved = evolve_state(current, summary, settings=self.settings, rng=self.rng, now_utc=now_utc)
        saved = self.store.save_evolution_state(evolved, expected_generation=current.generation)
        if not saved:
            logger.info("evolution_conflict generation=%s", current.generation)
            return {"success": True, "skipped": "concurrent_update", "generation": current.generation}

        self.vitals.pulse(
            "evolution-engine",
            HEALTHY,
            summary.avg_score,
            {"generation": evolved.generation, "genes": evolved.genes},
            now_utc=now_utc,
        )
        self.vitals.pulse(
            "system-fitness",
            accuracy_status(summary.avg_score),
            summary.avg_score,
            {"generation": evolved.generation, "sample_size": summary.sample_size},
            now_utc=now_utc,
        )
        self.vitals.pulse(
            "prediction-accuracy",
            accuracy_status(summary.direction_accuracy),
            summary.direction_accuracy,
            {"sample_size": summary.sample_size},
            now_utc=now_utc,
        )
        logger.info(
            "evolution_complete generation=%s fitness=%.4f direction_accuracy=%.4f",
            evolved.generation,
            summary.avg_score,
            summary.direction_accuracy,
        )
        return {
            "success": True,
            "generation": evolved.generation,
            "fitness": round(summary.avg_score, 4),
            "direction_accuracy": round(summary.direction_accuracy, 4),
        }

    def report_data_integrity(self, now_utc: datetime) -> dict[str, Any]:
        expected = len(open_symbols(self.settings, now_utc)) * (60 / self.settings.poll_interval_seconds)
        if expected <= 0:
            return self._pulse_integrity(1.0, 0, 0, now_utc)
        recent = self.store.count_ticks_since(now_utc - timedelta(seconds=60))
        ratio = min(1.0, recent / expected)
        return self._pulse_integrity(ratio, recent, expected, now_utc)

    def _pulse_integrity(self, ratio: float, recent: int, expected: float, now_utc: datetime) -> dict[str, Any]:
        status = integrity_status(ratio)
        self.vitals.pulse(
            "data-integrity",
            status,
            ratio,
            {"ticks_last_minute": recent, "expected": expected},
            now_utc=now_utc,
        )
        return {"status": status, "ratio": round(ratio, 4)}

    # Orchestration

    def _run_phase(self, name: str, now_utc: datetime) -> dict[str, Any]:
        try:
            phase: Callable[[datetime], dict[str, Any]] = getattr(self, name)
            return phase(now_utc)
        except psycopg.Error as exc:
            logger.exception("%s_failed", name)
            try:
                self.store.rollback()
            except psycopg.Error:
                logger.warning("rollback_failed after=%s", name, exc_info=True)
            self.vitals.pulse(
                PHASE_VITALS[name],
                DEGRADED,
                0,
                {"error": str(exc)},
                now_utc=now_utc,
            )
            return {"success": False, "error": str(exc)}

    def run_once(self, action: str = "full_cycle", *, now_utc: datetime | None = None) -> dict[str, Any]:
        if action not in ACTIONS:
            raise UnknownActionError(action)
        now = now_utc or datetime.now(timezone.utc)
        response: dict[str, Any] = {"timestamp": now.isoformat()}
        if action == "report":
            response["report"] = generate_heartbeat_report(self.store, self.settings).to_dict()
            return response

        phases = PHASE_ORDER if action == "full_cycle" else (action,)
        for name in phases:
            response[name] = self._run_phase(name, now)
        try:
            response["data_integrity"] = self.report_data_integrity(now)
        except psycopg.Error:
            logger.exception("data_integrity_failed")
            self.store.rollback()
        response["success"] = all(
            response[name].get("success", False) for name in phases
        )
        self.last_run_at = now
        return response

    def handle_request(
        self, payload: dict[str, Any] | None = None, *, now_utc: datetime | None = None
    ) -> tuple[int, dict[str, Any]]:
        """JSON request/response entry point: `{"action": ...}` -> (status_code, body)."""
        body = payload if isinstance(payload, dict) else {}
        action = str(body.get("action") or "full_cycle")
        try:
            return 200, self.run_once(action, now_utc=now_utc)
        except UnknownActionError:
            return 400, {"success": False, "error": "unknown_action", "actions": list(ACTIONS)}
        except Exception as exc:
            logger.exception("heartbeat_failed action=%s", action)
            self.vitals.pulse(
                "system-fitness",
                CRITICAL,
                0,
                {"error": str(exc), "action": action},
                now_utc=now_utc,
            )
            return 500, {"success": False, "error": str(exc)}

    def run_forever(self) -> None:
        while True:
            started = time.monotonic()
            try:
                status, response = self.handle_request({"action": "full_cycle"})
                summary = {
                    name: response[name].get("success")
                    for name in PHASE_ORDER
                    if isinstance(response.get(name), dict)
                }
                metrics = " ".join(f"{key}={value}" for key, value in summary.items())
                logger.info("cycle_complete status=%s %s", status, metrics)
            except Exception:
                logger.exception("poll_failed")
            elapsed = time.monotonic() - started
            remaining = max(0.0, self.settings.poll_interval_seconds - elapsed)
            if remaining > 0:
                time.sleep(remaining)
