# main.py

"""Entry point for the price_intel operational CLI."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from price_intel.config.logging_config import setup_logging
from price_intel.config.settings import Settings

logger = logging.getLogger("price_intel.main")


def _add_entity_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "entity_type", help="HOTEL, FLIGHT or TOUR (case-insensitive).",
    )
    parser.add_argument("entity_id", help="Opaque entity identifier.")


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="price-intel",
        description="Price history, forecasting and price-drop alerts.",
    )
    parser.add_argument(
        "-f",
        "--format",
        choices=["json", "table"],
        default="json",
        dest="output_format",
        help="Output format (default: json).",
    )
    parser.add_argument(
        "--db",
        default=None,
        dest="db_path",
        help=f"SQLite database file (default: {Settings.DB_PATH}).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Echo INFO logs to the console.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Load observations from JSON.")
    ingest.add_argument("file", help="JSON array of observations.")

    summary = sub.add_parser("summary", help="Window statistics.")
    _add_entity_args(summary)
    summary.add_argument(
        "--days", type=int, default=Settings.DEFAULT_WINDOW_DAYS,
    )

    best = sub.add_parser("best-time", help="Cheapest observation in window.")
    _add_entity_args(best)
    best.add_argument(
        "--days", type=int, default=Settings.DEFAULT_WINDOW_DAYS,
    )

    predict = sub.add_parser("predict", help="Forecast upcoming prices.")
    _add_entity_args(predict)
    predict.add_argument("--days-ahead", type=int, default=7)
    predict.add_argument(
        "--lookback", type=int, default=Settings.DEFAULT_WINDOW_DAYS,
    )
    predict.add_argument(
        "--chart",
        action="store_true",
        default=False,
        help="Also export an HTML chart and open it.",
    )

    backtest = sub.add_parser("backtest", help="Score the forecast strategy.")
    _add_entity_args(backtest)
    backtest.add_argument("--holdout", type=int, default=7)
    backtest.add_argument(
        "--lookback", type=int, default=Settings.DEFAULT_WINDOW_DAYS,
    )

    alerts = sub.add_parser("alerts", help="List a user's alerts.")
    alerts.add_argument("user_id")
    alerts.add_argument(
        "--status", default=None, help="ACTIVE, TRIGGERED, EXPIRED, CANCELLED.",
    )

    sub.add_parser("run-cycle", help="Run one collection/alert cycle.")

    purge = sub.add_parser("purge", help="Apply the retention policy.")
    purge.add_argument("--days", type=int, default=Settings.RETENTION_DAYS)

    sub.add_parser("health", help="Check the store and collectors.")

    chart = sub.add_parser("chart", help="Export HTML price charts.")
    chart.add_argument(
        "entities", nargs="+", metavar="TYPE:ID",
        help="One entity for history+forecast, several to compare.",
    )
    chart.add_argument(
        "--days", type=int, default=Settings.DEFAULT_WINDOW_DAYS,
    )
    return parser


def _dispatch(args: argparse.Namespace) -> int:
    """Route a parsed command to its runner."""
    from price_intel.cli import runner

    db_path = Path(args.db_path) if args.db_path else None
    fmt = args.output_format
    cmd = args.command

    if cmd == "ingest":
        return runner.run_ingest(args.file, fmt, db_path)
    if cmd == "summary":
        return runner.run_summary(
            args.entity_type, args.entity_id, args.days, fmt, db_path,
        )
    if cmd == "best-time":
        return runner.run_best_time(
            args.entity_type, args.entity_id, args.days, fmt, db_path,
        )
    if cmd == "predict":
        return runner.run_predict(
            args.entity_type,
            args.entity_id,
            args.days_ahead,
            args.lookback,
            fmt,
            chart=args.chart,
            db_path=db_path,
        )
    if cmd == "backtest":
        return runner.run_backtest(
            args.entity_type,
            args.entity_id,
            args.holdout,
            args.lookback,
            fmt,
            db_path,
        )
    if cmd == "alerts":
        return runner.run_alerts(args.user_id, args.status, fmt, db_path)
    if cmd == "run-cycle":
        return runner.run_cycle(fmt, db_path)
    if cmd == "purge":
        return runner.run_purge(args.days, fmt, db_path)
    if cmd == "health":
        return asyncio.run(runner.run_health_check(db_path))
    if cmd == "chart":
        return runner.run_chart(args.entities, args.days, db_path)
    raise ValueError(f"Unknown command: {cmd}")


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, run one command and exit with its code."""
    args = _build_parser().parse_args(argv)
    log_file = setup_logging(verbose=args.verbose)
    logger.info("price-intel %s starting, log file: %s", args.command, log_file)

    try:
        exit_code = _dispatch(args)
    except Exception:
        logger.critical("Fatal error in %s", args.command, exc_info=True)
        raise
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
