from __future__ import annotations

from datetime import datetime, timedelta, timezone
import unittest

from heartbeat_pipeline.models import Prediction, Trade
from heartbeat_pipeline.paper_trading import PaperTradingEngine

from fakes import FakeStore, make_settings

MONDAY_OPEN = datetime(2024, 1, 8, 15, 0, tzinfo=timezone.utc)
SATURDAY = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)


def _prediction(symbol: str, asset_class: str, direction: str, created_at: datetime, confidence: float = 0.8) -> Prediction:
    return Prediction(
        symbol=symbol,
        asset_class=asset_class,
        prediction_type="momentum",
        predicted_direction=direction,
        predicted_magnitude=0.004,
        confidence=confidence,
        entry_price=25.0,
        horizon_seconds=60,
        market_conditions={},
        created_at=created_at,
    )


class PaperTradingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = make_settings()
        self.store = FakeStore()
        self.engine = PaperTradingEngine(self.settings, self.store)

    def _seed(self, direction: str, asset_class: str = "stock", at_time: datetime = MONDAY_OPEN) -> Prediction:
        self.store.add_prices("AAPL", asset_class, [25.0], start=at_time - timedelta(seconds=10))
        return self.store.insert_predictions([_prediction("AAPL", asset_class, direction, at_time)])[0]

    def test_opens_long_sized_from_balance(self) -> None:
        prediction = self._seed("up")
        stats = self.engine.execute(MONDAY_OPEN)
        self.assertEqual(stats["opened"], 1)
        trade = self.store.get_open_trades()[0]
        self.assertEqual(trade.prediction_id, prediction.id)
        self.assertEqual(trade.direction, "long")
        self.assertEqual(trade.shares, 2.0)
        self.assertEqual(trade.entry_price, 25.0)
        self.assertEqual(stats["balance"], 1000.0)

    def test_skips_closed_market(self) -> None:
        self._seed("up", at_time=SATURDAY)
        stats = self.engine.execute(SATURDAY)
        self.assertEqual(stats["opened"], 0)
        self.assertEqual(self.store.trades, {})

    def test_never_opens_two_trades_for_one_prediction(self) -> None:
        self._seed("up")
        self.engine.execute(MONDAY_OPEN)
        self.engine.execute(MONDAY_OPEN + timedelta(seconds=5))
        self.assertEqual(len(self.store.trades), 1)

    def test_low_confidence_prediction_is_not_traded(self) -> None:
        self.store.add_prices("AAPL", "stock", [25.0], start=MONDAY_OPEN - timedelta(seconds=10))
        self.store.insert_predictions([_prediction("AAPL", "stock", "up", MONDAY_OPEN, confidence=0.6)])
        self.assertEqual(self.engine.execute(MONDAY_OPEN)["opened"], 0)

    def test_closes_after_hold_and_books_pnl(self) -> None:
        self._seed("up")
        self.engine.execute(MONDAY_OPEN)
        later = MONDAY_OPEN + timedelta(seconds=61)
        self.store.add_prices("AAPL", "stock", [26.0], start=later - timedelta(seconds=1))
        stats = self.engine.execute(later)

        self.assertEqual(stats["closed"], 1)
        self.assertAlmostEqual(stats["pnl"], 2.0)
        self.assertAlmostEqual(stats["balance"], 1002.0)
        closed = next(iter(self.store.trades.values()))
        self.assertEqual(closed.status, "closed")
        self.assertEqual(closed.actual_direction, "up")
        self.assertAlmostEqual(closed.pnl_percent, 4.0)
        portfolio = self.store.portfolio
        assert portfolio is not None
        self.assertEqual(portfolio.total_trades, 1)
        self.assertEqual(portfolio.winning_trades, 1)
        self.assertAlmostEqual(portfolio.peak_balance, 1002.0)
        self.assertAlmostEqual(portfolio.trough_balance, 1000.0)

    def test_short_profits_from_falling_price(self) -> None:
        self._seed("down")
        self.engine.execute(MONDAY_OPEN)
        later = MONDAY_OPEN + timedelta(seconds=61)
        self.store.add_prices("AAPL", "stock", [24.0], start=later - timedelta(seconds=1))
        stats = self.engine.execute(later)
        self.assertAlmostEqual(stats["pnl"], 2.0)
        self.assertAlmostEqual(stats["balance"], 1002.0)

    def test_losing_trade_lowers_trough(self) -> None:
        self._seed("up")
        self.engine.execute(MONDAY_OPEN)
        later = MONDAY_OPEN + timedelta(seconds=61)
        self.store.add_prices("AAPL", "stock", [20.0], start=later - timedelta(seconds=1))
        stats = self.engine.execute(later)
        self.assertAlmostEqual(stats["pnl"], -10.0)
        self.assertAlmostEqual(stats["trough_balance"], 990.0)
        self.assertAlmostEqual(stats["peak_balance"], 1000.0)

    def test_trade_stays_open_during_hold(self) -> None:
        self._seed("up")
        self.engine.execute(MONDAY_OPEN)
        stats = self.engine.execute(MONDAY_OPEN + timedelta(seconds=30))
        self.assertEqual(stats["closed"], 0)
        self.assertEqual(len(self.store.get_open_trades()), 1)

    def test_close_is_deferred_without_price(self) -> None:
        prediction = self._seed("up")
        self.engine.execute(MONDAY_OPEN)
        self.store.ticks = [tick for tick in self.store.ticks if tick.symbol != prediction.symbol]
        stats = self.engine.execute(MONDAY_OPEN + timedelta(seconds=61))
        self.assertEqual(stats["closed"], 0)
        self.assertEqual(stats["deferred"], 1)
        self.assertEqual(len(self.store.get_open_trades()), 1)

    def test_new_position_is_sized_from_balance_after_closes(self) -> None:
        opened_at = MONDAY_OPEN - timedelta(seconds=120)
        self.store.insert_trade(
            Trade(
                prediction_id=99,
                symbol="ETH",
                asset_class="crypto",
                direction="long",
                entry_price=100.0,
                shares=5.0,
                entry_time=opened_at,
                predicted_direction="up",
                confidence=0.8,
            )
        )
        self.store.add_prices("ETH", "crypto", [120.0], start=MONDAY_OPEN - timedelta(seconds=5))
        self.store.add_prices("BTC", "crypto", [25.0], start=MONDAY_OPEN - timedelta(seconds=5))
        self.store.insert_predictions([_prediction("BTC", "crypto", "up", MONDAY_OPEN)])

        stats = self.engine.execute(MONDAY_OPEN)

        self.assertEqual(stats["closed"], 1)
        self.assertEqual(stats["opened"], 1)
        self.assertAlmostEqual(stats["balance"], 1100.0)
        btc_trade = next(trade for trade in self.store.get_open_trades() if trade.symbol == "BTC")
        self.assertAlmostEqual(btc_trade.shares, 2.2)

    def test_portfolio_conflict_is_retried(self) -> None:
        self._seed("up")
        self.engine.execute(MONDAY_OPEN)
        later = MONDAY_OPEN + timedelta(seconds=61)
        self.store.add_prices("AAPL", "stock", [26.0], start=later - timedelta(seconds=1))
        self.store.portfolio_conflicts = 1
        stats = self.engine.execute(later)
        self.assertAlmostEqual(stats["balance"], 1002.0)
        self.assertEqual(self.store.portfolio_conflicts, 0)


if __name__ == "__main__":
    unittest.main()
