from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import TYPE_CHECKING, Any

from .analysis.scoring import classify_move
from .config import Settings
from .market_calendar import is_open
from .models import PortfolioBalance, Trade
from .risk import (
    apply_realized_pnl,
    pnl_percent,
    position_size,
    progress_percent,
    trade_direction_for,
    trade_pnl,
)

if TYPE_CHECKING:
    from .db import PostgresStore

logger = logging.getLogger(__name__)

PORTFOLIO_UPDATE_ATTEMPTS = 2


class PaperTradingEngine:
    def __init__(self, settings: Settings, store: "PostgresStore") -> None:
        self.settings = settings
        self.store = store

    def _portfolio(self) -> PortfolioBalance:
        return self.store.get_portfolio(
            self.settings.portfolio_key,
            starting_balance=self.settings.portfolio_starting_balance,
            target_balance=self.settings.portfolio_target_balance,
        )

    def close_expired(self, now_utc: datetime) -> dict[str, Any]:
        cutoff = now_utc - timedelta(seconds=self.settings.trade_hold_seconds)
        closed = 0
        wins = 0
        deferred = 0
        net_pnl = 0.0
        for trade in self.store.get_open_trades(opened_before=cutoff):
            if trade.id is None:
                continue
            exit_price = self.store.get_latest_price(trade.symbol)
            if exit_price is None:
                deferred += 1
                logger.info("trade_close_deferred trade_id=%s symbol=%s reason=no_price", trade.id, trade.symbol)
                continue
            pnl = trade_pnl(trade.direction, trade.entry_price, exit_price, trade.shares)
            move = (exit_price - trade.entry_price) / trade.entry_price
            updated = self.store.close_trade(
                trade.id,
                exit_price=exit_price,
                exit_time=now_utc,
                pnl=pnl,
                pnl_percent=pnl_percent(pnl, trade.entry_price, trade.shares),
                actual_direction=classify_move(move, self.settings.flat_move_threshold),
            )
            if not updated:
                # Another invocation closed it first.
                continue
            closed += 1
            net_pnl += pnl
            if pnl > 0:
                wins += 1
            logger.info(
                "trade_closed trade_id=%s symbol=%s direction=%s pnl=%.4f",
                trade.id,
                trade.symbol,
                trade.direction,
                pnl,
            )
        return {"closed": closed, "wins": wins, "deferred": deferred, "pnl": net_pnl}

    def open_from_predictions(self, now_utc: datetime, balance: float) -> dict[str, int]:
        opened = 0
        skipped = 0
        candidates = self.store.get_trade_candidates(
            min_confidence=self.settings.trade_min_confidence,
            limit=self.settings.trade_candidate_limit,
        )
        for prediction in candidates:
            if prediction.id is None:
                continue
            direction = trade_direction_for(prediction.predicted_direction)
            if direction is None:
                skipped += 1
                continue
            if not is_open(prediction.asset_class, now_utc):
                skipped += 1
                continue
            if self.store.has_trade_for_prediction(prediction.id):
                skipped += 1
                continue
            entry_price = self.store.get_latest_price(prediction.symbol)
            if entry_price is None or entry_price <= 0:
                skipped += 1
                logger.info(
                    "trade_open_deferred prediction_id=%s symbol=%s reason=no_price",
                    prediction.id,
                    prediction.symbol,
                )
                continue
            shares = position_size(balance, entry_price, self.settings.trade_risk_fraction)
            if shares <= 0:
                skipped += 1
                continue
            trade_id = self.store.insert_trade(
                Trade(
                    prediction_id=prediction.id,
                    symbol=prediction.symbol,
                    asset_class=prediction.asset_class,
                    direction=direction,
                    entry_price=entry_price,
                    shares=shares,
                    entry_time=now_utc,
                    predicted_direction=prediction.predicted_direction,
                    confidence=prediction.confidence,
                )
            )
            if trade_id is None:
                skipped += 1
                continue
            opened += 1
            logger.info(
                "trade_opened trade_id=%s prediction_id=%s symbol=%s direction=%s shares=%s entry=%s",
                trade_id,
                prediction.id,
                prediction.symbol,
                direction,
                shares,
                entry_price,
            )
        return {"opened": opened, "skipped": skipped}

    def _apply_closed(self, close_stats: dict[str, Any], now_utc: datetime) -> PortfolioBalance:
        snapshot = self._portfolio()
        for attempt in range(1, PORTFOLIO_UPDATE_ATTEMPTS + 1):
            updated = apply_realized_pnl(
                snapshot,
                close_stats["pnl"],
                closed_trades=close_stats["closed"],
                winning_trades=close_stats["wins"],
                at_time=now_utc,
            )
            if self.store.save_portfolio(updated, expected=snapshot):
                return updated
            logger.info("portfolio_update_conflict attempt=%s", attempt)
            snapshot = self._portfolio()
        logger.warning(
            "portfolio_update_dropped pnl=%.4f closed=%s",
            close_stats["pnl"],
            close_stats["closed"],
        )
        return snapshot

    def execute(self, now_utc: datetime) -> dict[str, Any]:
        close_stats = self.close_expired(now_utc)
        if close_stats["closed"] > 0:
            portfolio = self._apply_closed(close_stats, now_utc)
        else:
            portfolio = self._portfolio()
        # Sizing uses the balance after this cycle's realised P&L.
        open_stats = self.open_from_predictions(now_utc, portfolio.balance)

        return {
            "balance": round(portfolio.balance, 2),
            "target": portfolio.target_balance,
            "progress": round(progress_percent(portfolio.balance, portfolio.target_balance), 2),
            "opened": open_stats["opened"],
            "closed": close_stats["closed"],
            "deferred": close_stats["deferred"],
            "pnl": round(close_stats["pnl"], 4),
            "peak_balance": portfolio.peak_balance,
            "trough_balance": portfolio.trough_balance,
        }
