from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import math

from .models import PortfolioBalance


def position_size(balance: float, entry_price: float, risk_fraction: float) -> float:
    """Shares affordable with a fraction of the balance, rounded down to 0.1."""
    if balance <= 0 or entry_price <= 0 or risk_fraction <= 0:
        return 0.0
    budget = balance * risk_fraction
    return math.floor(budget / entry_price * 10) / 10


def trade_direction_for(predicted_direction: str) -> str | None:
    if predicted_direction == "up":
        return "long"
    if predicted_direction == "down":
        return "short"
    return None


def trade_pnl(direction: str, entry_price: float, exit_price: float, shares: float) -> float:
    if direction == "long":
        return (exit_price - entry_price) * shares
    return (entry_price - exit_price) * shares


def pnl_percent(pnl: float, entry_price: float, shares: float) -> float:
    cost = entry_price * shares
    if cost <= 0:
        return 0.0
    return pnl / cost * 100


def apply_realized_pnl(
    portfolio: PortfolioBalance,
    net_pnl: float,
    *,
    closed_trades: int,
    winning_trades: int,
    at_time: datetime | None = None,
) -> PortfolioBalance:
    balance = portfolio.balance + net_pnl
    return replace(
        portfolio,
        balance=balance,
        peak_balance=max(portfolio.peak_balance, balance),
        trough_balance=min(portfolio.trough_balance, balance),
        total_trades=portfolio.total_trades + closed_trades,
        winning_trades=portfolio.winning_trades + winning_trades,
        last_trade_at=at_time or portfolio.last_trade_at,
    )


def progress_percent(balance: float, target: float) -> float:
    if target <= 0:
        return 0.0
    return balance / target * 100
