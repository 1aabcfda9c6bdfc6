#!/usr/bin/env python3
"""
Roll back or purge an import batch.

Rollback soft-deletes every row the batch produced (they stay for audit and
drop out of reports); purge removes the rows and the batch record.

Usage:
    python3 scripts/import_batch.py <batch-id> [--purge]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from uuid import UUID

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Roll back or purge an import batch.")
    parser.add_argument("batch_id", type=UUID, help="Import batch UUID.")
    parser.add_argument(
        "--purge",
        action="store_true",
        help="Hard-delete the batch and its rows instead of rolling back.",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file.")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    from costing_config import get_active_config
    from costing_kernel.db.engine import init_engine_from_url, session_scope
    from costing_kernel.domain.clock import SystemClock
    from costing_kernel.exceptions import ImportBatchError
    from costing_kernel.logging_config import configure_logging
    from costing_services.import_batches import ImportBatchService

    config = get_active_config(args.config)
    configure_logging(level=logging.getLevelName(config.logging.level))
    init_engine_from_url(config.database.url, echo=config.database.echo)

    try:
        with session_scope() as session:
            service = ImportBatchService(session, SystemClock(), settings=config.imports)
            if args.purge:
                result = service.purge(args.batch_id)
            else:
                result = service.rollback(args.batch_id)
    except ImportBatchError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"Batch {result.batch_id}: {result.status.value}")
    for table, count in sorted(result.rows_affected.items()):
        print(f"  {table}: {count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
