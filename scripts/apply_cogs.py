#!/usr/bin/env python3
"""
Apply COGS to every order line shipped in a business-date range.

Loads configuration through get_active_config (COSTING_CONFIG and
COSTING_DATABASE_URL are honoured), runs CogsRunService.apply_range in one
transaction and prints the run summary plus every failed line.  A run that
hits a database error is committed with status FAILED and its error message.

Usage:
    python3 scripts/apply_cogs.py --start 2024-01-01 --end 2024-01-31 [options]

Examples:
    # FIFO (the configured default) for January
    python3 scripts/apply_cogs.py --start 2024-01-01 --end 2024-01-31

    # Moving average instead of the configured method
    python3 scripts/apply_cogs.py --start 2024-01-01 --end 2024-01-31 --method AVG

    # See what would happen without keeping any writes
    python3 scripts/apply_cogs.py --start 2024-01-01 --end 2024-01-31 --dry-run
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date
from pathlib import Path
from uuid import UUID, uuid4

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Apply COGS to shipped order lines in a business-date range.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--start",
        required=True,
        type=date.fromisoformat,
        help="First business day (YYYY-MM-DD), inclusive.",
    )
    parser.add_argument(
        "--end",
        required=True,
        type=date.fromisoformat,
        help="Last business day (YYYY-MM-DD), inclusive.",
    )
    parser.add_argument(
        "--method",
        choices=["FIFO", "AVG"],
        default=None,
        help="Costing method (default: costing.default_method from config).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: COSTING_CONFIG env or packaged defaults).",
    )
    parser.add_argument(
        "--actor-id",
        default=None,
        help="Actor UUID for audit (default: COSTING_ACTOR_ID env or new UUID).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run everything, then roll the transaction back.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    if args.end < args.start:
        print(f"ERROR: --end {args.end} is before --start {args.start}", file=sys.stderr)
        return 2
    actor_id = UUID(args.actor_id) if args.actor_id else UUID(os.environ.get("COSTING_ACTOR_ID", str(uuid4())))

    # Lazy imports so we fail fast on args first
    from sqlalchemy.exc import SQLAlchemyError

    from costing_config import get_active_config
    from costing_kernel.db.engine import get_session, init_engine_from_url
    from costing_kernel.domain.clock import SystemClock
    from costing_kernel.domain.values import CostMethod
    from costing_kernel.logging_config import LogContext, configure_logging
    from costing_services.cogs_runs import CogsRunService

    try:
        config = get_active_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    configure_logging(level=logging.getLevelName(config.logging.level))
    init_engine_from_url(
        config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )
    method = CostMethod(args.method) if args.method else None

    session = get_session()
    try:
        with LogContext.bind(correlation_id=str(uuid4()), actor_id=str(actor_id)):
            service = CogsRunService(session, SystemClock(), actor_id, config.costing)
            run, result = service.apply_range(args.start, args.end, method)
            run_id, run_method = run.id, run.method
        if args.dry_run:
            session.rollback()
        else:
            session.commit()
    except SQLAlchemyError as e:
        # The service left the run marked failed; keep that record
        if args.dry_run:
            session.rollback()
        else:
            try:
                session.commit()
            except SQLAlchemyError:
                session.rollback()
        print(f"ERROR: COGS run failed: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        session.rollback()
        print(f"ERROR: COGS run failed: {e}", file=sys.stderr)
        return 1
    finally:
        session.close()

    print(f"Run {run_id} ({run_method}) {args.start} .. {args.end}{' [dry run]' if args.dry_run else ''}")
    print(f"  total:      {result.total}")
    print(f"  eligible:   {result.eligible}")
    print(f"  successful: {result.successful}")
    print(f"  skipped:    {result.skipped_total} {dict(sorted(result.skipped.items()))}")
    print(f"  failed:     {result.failed_count}")
    print(f"  COGS:       {result.total_cost}")
    for outcome in result.failed:
        print(f"    {outcome.order_id} {outcome.sku}: {outcome.error_code} {outcome.error_message}")

    return 0 if result.failed_count == 0 else 3


if __name__ == "__main__":
    sys.exit(main())
