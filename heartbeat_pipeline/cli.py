from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
import logging
import sys

from .analysis.accuracy_report import generate_heartbeat_report
from .config import Settings
from .db import PostgresStore
from .evolution import DEFAULT_STATE_TYPE
from .market_calendar import ASSET_CLASSES, is_open


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Market heartbeat operations CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show market calendar, vitals and portfolio")
    subparsers.add_parser("report", help="Show accuracy, correlation and evolution report")
    subparsers.add_parser("portfolio", help="Show simulated portfolio balance")
    subparsers.add_parser("vitals", help="Show latest system vitals")
    subparsers.add_parser("evolution", help="Show current gene vector and fitness")

    predictions_cmd = subparsers.add_parser("predictions", help="Show recent predictions")
    predictions_cmd.add_argument("--last", type=int, default=20)

    trades_cmd = subparsers.add_parser("trades", help="Show recent simulated trades")
    trades_cmd.add_argument("--last", type=int, default=20)

    correlations_cmd = subparsers.add_parser("correlations", help="Show stored pair correlations")
    correlations_cmd.add_argument("--min", type=float, default=None)
    return parser


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _portfolio_view(settings: Settings, store: PostgresStore) -> dict[str, object]:
    portfolio = store.get_portfolio(
        settings.portfolio_key,
        starting_balance=settings.portfolio_starting_balance,
        target_balance=settings.portfolio_target_balance,
    )
    return {
        "portfolio_key": portfolio.portfolio_key,
        "balance": portfolio.balance,
        "target_balance": portfolio.target_balance,
        "peak_balance": portfolio.peak_balance,
        "trough_balance": portfolio.trough_balance,
        "total_trades": portfolio.total_trades,
        "winning_trades": portfolio.winning_trades,
        "last_trade_at": portfolio.last_trade_at,
    }


def _run_status(settings: Settings, store: PostgresStore) -> None:
    now = datetime.now(timezone.utc)
    _print_json(
        {
            "time_utc": now.isoformat(),
            "markets_open": {asset_class: is_open(asset_class, now) for asset_class in ASSET_CLASSES},
            "portfolio": _portfolio_view(settings, store),
            "vitals": store.get_vitals(),
        }
    )


def _run_evolution(store: PostgresStore) -> None:
    state = store.get_evolution_state(DEFAULT_STATE_TYPE)
    if state is None:
        _print_json({"error": "no evolution state yet"})
        return
    _print_json(
        {
            "generation": state.generation,
            "fitness_score": state.fitness_score,
            "total_predictions_seen": state.total_predictions_seen,
            "genes": state.genes,
            "last_mutation_at": state.last_mutation_at,
            "recent_history": state.adaptation_history[-10:],
        }
    )


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    store = PostgresStore(settings.database_url)
    try:
        if args.command == "status":
            _run_status(settings, store)
            return 0
        if args.command == "report":
            _print_json(generate_heartbeat_report(store, settings).to_dict())
            return 0
        if args.command == "portfolio":
            _print_json(_portfolio_view(settings, store))
            return 0
        if args.command == "vitals":
            _print_json(store.get_vitals())
            return 0
        if args.command == "evolution":
            _run_evolution(store)
            return 0
        if args.command == "predictions":
            _print_json(store.get_recent_predictions(limit=max(1, args.last)))
            return 0
        if args.command == "trades":
            _print_json(store.get_recent_trades(limit=max(1, args.last)))
            return 0
        if args.command == "correlations":
            _print_json(store.get_correlations(min_coefficient=args.min))
            return 0
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
