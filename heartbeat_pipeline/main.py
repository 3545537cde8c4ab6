from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import Settings, redact_database_url
from .pipeline import ACTIONS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Market heartbeat orchestrator")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database schema")

    run_once_cmd = subparsers.add_parser("run-once", help="Run one heartbeat invocation")
    run_once_cmd.add_argument("--action", choices=ACTIONS, default="full_cycle")

    invoke_cmd = subparsers.add_parser("invoke", help="Handle a JSON request body, e.g. '{\"action\": \"collect\"}'")
    invoke_cmd.add_argument("body", nargs="?", default="{}")

    subparsers.add_parser("run", help="Run the heartbeat on POLL_INTERVAL_SECONDS")
    return parser


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    logger = logging.getLogger(__name__)
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logger.info(
        "startup database_source=%s database_target=%s poll_interval=%s providers=%s crypto=%s forex=%s stock=%s synthetic_ticks=%s seed=%s",
        settings.database_url_source,
        redact_database_url(settings.database_url),
        settings.poll_interval_seconds,
        ",".join(settings.market_data_providers),
        ",".join(settings.crypto_symbols),
        ",".join(settings.forex_symbols),
        ",".join(settings.stock_symbols),
        settings.allow_synthetic_ticks,
        settings.random_seed,
    )

    body: dict[str, object] = {}
    if args.command == "invoke":
        try:
            parsed = json.loads(args.body or "{}")
        except json.JSONDecodeError as exc:
            _print_json({"success": False, "error": f"invalid_json: {exc.msg}"})
            return 2
        body = parsed if isinstance(parsed, dict) else {}

    from .db import PostgresStore
    from .pipeline import HeartbeatPipeline

    store = PostgresStore(settings.database_url)
    try:
        if args.command == "init-db":
            store.ensure_schema()
            print("Schema initialized")
            return 0

        store.ensure_schema()
        pipeline = HeartbeatPipeline(settings, store)

        if args.command == "run-once":
            status, response = pipeline.handle_request({"action": args.action})
            _print_json(response)
            return 0 if status == 200 else 1

        if args.command == "invoke":
            status, response = pipeline.handle_request(body)
            _print_json({"status": status, "body": response})
            return 0 if status == 200 else 1

        if args.command == "run":
            pipeline.run_forever()
            return 0
    finally:
        store.close()

    return 1


if __name__ == "__main__":
    sys.exit(main())
