"""
Run settlement batch passes from cron.

Usage:
    python -m settlement_batch run <pass> [--config PATH] [--database-url URL]

Passes:
    refresh    move open invoices between unpaid and overdue
    reconcile  stop follow-ups left active on paid or cancelled invoices
    schedule   create or advance follow-ups of open invoices
    dispatch   send due follow-ups to the email outbox
    all        every pass above, in that order

Each pass commits on its own, so a crash in ``dispatch`` keeps the
refreshed statuses and the scheduled follow-ups.

Exit status is 0 when every item succeeded or was skipped, 1 otherwise.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m settlement_batch",
        description="Run settlement batch passes.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one pass, or all of them.")
    run.add_argument(
        "pass_name",
        choices=("refresh", "reconcile", "schedule", "dispatch", "all"),
        help="Pass to run.",
    )
    run.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file merged over the defaults (default: $SETTLEMENT_CONFIG).",
    )
    run.add_argument(
        "--database-url",
        default=None,
        help="Database URL (default: $SETTLEMENT_DATABASE_URL, then the config).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from settlement_batch.orchestrator import PASS_ORDER, BatchOrchestrator
    from settlement_config import get_active_config
    from settlement_kernel.db.engine import create_tables, init_engine_from_url, session_scope
    from settlement_kernel.domain.clock import SystemClock
    from settlement_kernel.logging_config import configure_logging

    configure_logging()

    try:
        config = get_active_config(args.config, database_url=args.database_url)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    logging.getLogger("settlement").setLevel(config.log_level)

    try:
        engine = init_engine_from_url(config.database_url)
        create_tables(engine)
    except Exception as e:
        print(f"ERROR: Database init failed: {e}", file=sys.stderr)
        return 1

    clock = SystemClock()
    names = PASS_ORDER if args.pass_name == "all" else (args.pass_name,)
    exit_code = 0

    for name in names:
        with session_scope() as session:
            orchestrator = BatchOrchestrator.from_session(session, config=config, clock=clock)
            result = orchestrator.run_pass(name)
        print(
            f"{name:<10} {result.status.value:<20} "
            f"total={result.total_items} succeeded={result.succeeded} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        if result.failed:
            exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
