from __future__ import annotations

from datetime import datetime, timedelta, timezone
import unittest
from unittest.mock import patch

import requests

from heartbeat_pipeline.collectors.market_data import BINANCE_TICKER_URL
from heartbeat_pipeline.models import Prediction, PredictionResolution
from heartbeat_pipeline.pipeline import PHASE_ORDER, HeartbeatPipeline

from fakes import FakeResponse, FakeSession, FakeStore, make_settings

SATURDAY = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)

BINANCE_PAYLOAD = [
    {"symbol": "BTCUSDT", "price": "65000.0"},
    {"symbol": "ETHUSDT", "price": "3400.0"},
    {"symbol": "SOLUSDT", "price": "150.0"},
    {"symbol": "BNBUSDT", "price": "580.0"},
]


def _binance_session(route: object | None = None) -> FakeSession:
    return FakeSession({BINANCE_TICKER_URL: route if route is not None else FakeResponse(BINANCE_PAYLOAD)})


def _prediction(symbol: str, created_at: datetime, entry_price: float = 100.0) -> Prediction:
    return Prediction(
        symbol=symbol,
        asset_class="crypto",
        prediction_type="momentum",
        predicted_direction="up",
        predicted_magnitude=0.004,
        confidence=0.8,
        entry_price=entry_price,
        horizon_seconds=60,
        market_conditions={},
        created_at=created_at,
    )


def _resolution(prediction_id: int, score: float, correct: bool, resolved_at: datetime) -> PredictionResolution:
    return PredictionResolution(
        prediction_id=prediction_id,
        symbol="BTC",
        exit_price=100.5,
        actual_direction="up" if correct else "down",
        actual_magnitude=0.005,
        direction_correct=correct,
        magnitude_accuracy=0.75,
        timing_accuracy=0.7,
        calibration_score=0.8 if correct else 0.2,
        composite_score=score,
        resolved_at=resolved_at,
    )


class PipelineTestCase(unittest.TestCase):
    def make_pipeline(self, session: FakeSession | None = None, **overrides: object) -> HeartbeatPipeline:
        self.settings = make_settings(**overrides)
        self.store = FakeStore()
        return HeartbeatPipeline(self.settings, self.store, session=session or _binance_session())


class CollectPhaseTests(PipelineTestCase):
    def test_collect_stores_real_ticks_and_reports_healthy(self) -> None:
        pipeline = self.make_pipeline()
        result = pipeline.collect(SATURDAY)
        self.assertEqual(result["ticks"], 4)
        self.assertEqual(result["real_ticks"], 4)
        vital = self.store.vitals["market-collector"]
        self.assertEqual(vital.status, "healthy")
        self.assertEqual(vital.metadata["failed_providers"], [])

    def test_provider_failure_stores_no_synthetic_ticks(self) -> None:
        pipeline = self.make_pipeline(_binance_session(requests.Timeout("slow")))
        result = pipeline.collect(SATURDAY)
        self.assertEqual(result["ticks"], 0)
        self.assertEqual(self.store.ticks, [])
        vital = self.store.vitals["market-collector"]
        self.assertEqual(vital.status, "degraded")
        self.assertEqual(vital.metadata["failed_providers"], ["binance"])

    def test_synthetic_ticks_when_enabled_are_marked_fallback(self) -> None:
        pipeline = self.make_pipeline(_binance_session(requests.Timeout("slow")), allow_synthetic_ticks=True)
        result = pipeline.collect(SATURDAY)
        self.assertEqual(result["ticks"], 4)
        self.assertEqual(result["real_ticks"], 0)
        self.assertEqual({tick.source for tick in self.store.ticks}, {"fallback"})
        self.assertEqual(self.store.get_recent_prices("BTC", limit=5), [])
        self.assertEqual(self.store.vitals["market-collector"].status, "degraded")


class PredictPhaseTests(PipelineTestCase):
    def test_predicts_for_open_symbols_with_history(self) -> None:
        pipeline = self.make_pipeline()
        for symbol in self.settings.crypto_symbols:
            self.store.add_prices(symbol, "crypto", [100.0 + idx for idx in range(20)], start=SATURDAY - timedelta(seconds=100))
        result = pipeline.predict(SATURDAY)
        self.assertGreaterEqual(result["predictions"], 1)
        self.assertLessEqual(result["predictions"], 3)
        for prediction in self.store.predictions.values():
            self.assertIn(prediction.symbol, self.settings.crypto_symbols)
            self.assertEqual(prediction.predicted_direction, "up")
            self.assertEqual(prediction.created_at, SATURDAY)
        self.assertEqual(self.store.vitals["prediction-engine"].value, float(result["predictions"]))

    def test_insufficient_history_is_skipped(self) -> None:
        pipeline = self.make_pipeline(crypto_symbols=["BTC"])
        self.store.add_prices("BTC", "crypto", [100.0, 101.0], start=SATURDAY - timedelta(seconds=10))
        result = pipeline.predict(SATURDAY)
        self.assertEqual(result["predictions"], 0)
        self.assertEqual(result["skipped"], ["BTC"])

    def test_fallback_ticks_never_feed_predictions(self) -> None:
        pipeline = self.make_pipeline(crypto_symbols=["BTC"])
        self.store.add_prices("BTC", "crypto", [100.0 + idx for idx in range(20)], start=SATURDAY - timedelta(seconds=100), source="fallback")
        self.assertEqual(pipeline.predict(SATURDAY)["predictions"], 0)

    def test_no_open_markets(self) -> None:
        pipeline = self.make_pipeline(crypto_symbols=[])
        result = pipeline.predict(SATURDAY)
        self.assertEqual(result["reason"], "no_open_markets")
        self.assertEqual(self.store.predictions, {})


class ResolvePhaseTests(PipelineTestCase):
    def test_resolves_due_predictions_once(self) -> None:
        pipeline = self.make_pipeline()
        self.store.insert_predictions([_prediction("BTC", SATURDAY)])
        self.store.insert_predictions([_prediction("BTC", SATURDAY + timedelta(seconds=30))])
        self.store.add_prices("BTC", "crypto", [100.5], start=SATURDAY + timedelta(seconds=45))

        first = pipeline.resolve(SATURDAY + timedelta(seconds=61))
        second = pipeline.resolve(SATURDAY + timedelta(seconds=62))

        self.assertEqual(first["resolved"], 1)
        self.assertEqual(first["accuracy"], 1.0)
        self.assertEqual(second["resolved"], 0)
        self.assertEqual(len(self.store.resolutions), 1)
        resolution = self.store.resolutions[1]
        self.assertTrue(resolution.direction_correct)
        self.assertAlmostEqual(resolution.calibration_score, 0.8)
        self.assertEqual(self.store.symbol_accuracy["BTC"]["total_predictions"], 1)

    def test_prediction_without_exit_price_is_deferred(self) -> None:
        pipeline = self.make_pipeline()
        self.store.insert_predictions([_prediction("ETH", SATURDAY)])
        result = pipeline.resolve(SATURDAY + timedelta(seconds=61))
        self.assertEqual(result["resolved"], 0)
        self.assertEqual(result["deferred"], 1)
        self.assertEqual(self.store.resolutions, {})


class CorrelateAndEvolveTests(PipelineTestCase):
    def test_correlates_configured_pairs(self) -> None:
        pipeline = self.make_pipeline()
        start = SATURDAY - timedelta(minutes=5)
        self.store.add_prices("BTC", "crypto", [100.0 + idx for idx in range(30)], start=start)
        self.store.add_prices("ETH", "crypto", [50.0 + 2 * idx for idx in range(30)], start=start)
        result = pipeline.correlate(SATURDAY)
        self.assertEqual(result["correlations"], 1)
        record = self.store.correlations[("BTC", "ETH", "5m")]
        self.assertAlmostEqual(record.coefficient, 1.0)
        self.assertEqual(record.sample_size, 30)

    def test_correlation_skips_short_history(self) -> None:
        pipeline = self.make_pipeline()
        self.store.add_prices("BTC", "crypto", [100.0] * 5, start=SATURDAY)
        result = pipeline.correlate(SATURDAY)
        self.assertEqual(result, {"success": True, "correlations": 0, "skipped": 1})

    def test_evolve_skips_without_enough_resolutions(self) -> None:
        pipeline = self.make_pipeline()
        self.store.resolutions[1] = _resolution(1, 0.6, True, SATURDAY)
        result = pipeline.evolve(SATURDAY)
        self.assertEqual(result["skipped"], "insufficient_data")
        self.assertIsNone(self.store.evolution)

    def test_evolve_advances_generation_and_reports_fitness(self) -> None:
        pipeline = self.make_pipeline()
        for idx in range(1, 6):
            self.store.resolutions[idx] = _resolution(idx, 0.6, idx != 5, SATURDAY - timedelta(seconds=idx))
        first = pipeline.evolve(SATURDAY)
        second = pipeline.evolve(SATURDAY + timedelta(seconds=5))

        self.assertEqual(first["generation"], 1)
        self.assertEqual(second["generation"], 2)
        self.assertAlmostEqual(first["direction_accuracy"], 0.8)
        state = self.store.evolution
        assert state is not None
        self.assertEqual(state.total_predictions_seen, 10)
        self.assertEqual(len(state.adaptation_history), 2)
        self.assertEqual(self.store.vitals["system-fitness"].status, "healthy")
        self.assertEqual(self.store.vitals["prediction-accuracy"].status, "healthy")

    def test_evolve_conflict_is_skipped(self) -> None:
        pipeline = self.make_pipeline()
        for idx in range(1, 6):
            self.store.resolutions[idx] = _resolution(idx, 0.6, True, SATURDAY)
        with patch.object(self.store, "save_evolution_state", return_value=False):
            result = pipeline.evolve(SATURDAY)
        self.assertEqual(result["skipped"], "concurrent_update")
        self.assertNotIn("evolution-engine", self.store.vitals)


class RunOnceTests(PipelineTestCase):
    def test_full_cycle_runs_every_phase(self) -> None:
        pipeline = self.make_pipeline()
        status, body = pipeline.handle_request({"action": "full_cycle"}, now_utc=SATURDAY)
        self.assertEqual(status, 200)
        for name in PHASE_ORDER:
            self.assertTrue(body[name]["success"], name)
        self.assertTrue(body["success"])
        self.assertEqual(body["timestamp"], SATURDAY.isoformat())
        self.assertIn("data_integrity", body)
        self.assertIn("autonomous-trading", self.store.vitals)
        self.assertIn("data-integrity", self.store.vitals)

    def test_single_phase_action(self) -> None:
        pipeline = self.make_pipeline()
        status, body = pipeline.handle_request({"action": "collect"}, now_utc=SATURDAY)
        self.assertEqual(status, 200)
        self.assertIn("collect", body)
        self.assertNotIn("predict", body)

    def test_missing_action_defaults_to_full_cycle(self) -> None:
        pipeline = self.make_pipeline()
        status, body = pipeline.handle_request(None, now_utc=SATURDAY)
        self.assertEqual(status, 200)
        self.assertIn("evolve", body)

    def test_persistence_failure_degrades_phase_and_continues(self) -> None:
        pipeline = self.make_pipeline()
        self.store.fail_on.add("insert_ticks")
        status, body = pipeline.handle_request({"action": "full_cycle"}, now_utc=SATURDAY)
        self.assertEqual(status, 200)
        self.assertFalse(body["collect"]["success"])
        self.assertFalse(body["success"])
        self.assertTrue(body["predict"]["success"])
        self.assertTrue(body["evolve"]["success"])
        self.assertGreaterEqual(self.store.rollbacks, 1)
        vital = self.store.vitals["market-collector"]
        self.assertEqual(vital.status, "degraded")
        self.assertIn("insert_ticks unavailable", vital.metadata["error"])

    def test_vital_write_failure_does_not_fail_phase(self) -> None:
        pipeline = self.make_pipeline()
        self.store.fail_on.add("upsert_vital")
        result = pipeline.collect(SATURDAY)
        self.assertTrue(result["success"])
        self.assertEqual(self.store.vitals, {})
        self.assertEqual(self.store.rollbacks, 1)

    def test_unexpected_error_returns_500_and_critical_vital(self) -> None:
        pipeline = self.make_pipeline()
        with patch.object(self.store, "get_due_predictions", side_effect=RuntimeError("boom")):
            status, body = pipeline.handle_request({"action": "resolve"}, now_utc=SATURDAY)
        self.assertEqual(status, 500)
        self.assertEqual(body, {"success": False, "error": "boom"})
        vital = self.store.vitals["system-fitness"]
        self.assertEqual(vital.status, "critical")
        self.assertEqual(vital.metadata["action"], "resolve")

    def test_run_forever_survives_a_failed_cycle(self) -> None:
        pipeline = self.make_pipeline()

        class StopLoop(Exception):
            pass

        with patch.object(pipeline, "handle_request", side_effect=RuntimeError("vital store gone")), \
                patch("heartbeat_pipeline.pipeline.time.sleep", side_effect=StopLoop) as sleep, \
                self.assertLogs("heartbeat_pipeline.pipeline", level="ERROR") as logs:
            with self.assertRaises(StopLoop):
                pipeline.run_forever()

        sleep.assert_called_once()
        self.assertTrue(any("poll_failed" in line for line in logs.output))

    def test_unknown_action_is_rejected(self) -> None:
        pipeline = self.make_pipeline()
        status, body = pipeline.handle_request({"action": "explode"}, now_utc=SATURDAY)
        self.assertEqual(status, 400)
        self.assertEqual(body["error"], "unknown_action")
        self.assertEqual(self.store.vitals, {})

    def test_report_action_returns_report(self) -> None:
        pipeline = self.make_pipeline()
        self.store.insert_predictions([_prediction("BTC", SATURDAY - timedelta(seconds=120))])
        self.store.add_prices("BTC", "crypto", [100.5], start=SATURDAY - timedelta(seconds=30))
        pipeline.resolve(SATURDAY)
        status, body = pipeline.handle_request({"action": "report"}, now_utc=SATURDAY)
        self.assertEqual(status, 200)
        report = body["report"]
        self.assertEqual(report["total_predictions"], 1)
        self.assertEqual(report["correct_predictions"], 1)
        self.assertEqual(report["symbols_tracked"], 1)
        self.assertEqual(report["portfolio"]["balance"], 1000.0)
        self.assertEqual(len(report["recent_predictions"]), 1)


if __name__ == "__main__":
    unittest.main()
