#!/usr/bin/env python3
"""
Idempotency Record Cleanup

Deletes idempotency records older than the retention window. Runs with
operator privileges, so every user's records are swept. Intended for cron.

Usage:
    # Default retention (IDEMPOTENCY_RETENTION_HOURS, 24h unless configured)
    python3 scripts/cleanup_idempotency.py

    # Custom retention window (1-168 hours)
    python3 scripts/cleanup_idempotency.py --max-age-hours 72
"""

import argparse
import asyncio
import sys

from structlog import get_logger

from paysync.config import settings
from paysync.db.session import close_engines, get_session
from paysync.db.store import SqlLedgerStore
from paysync.exceptions import PaymentCoreError
from paysync.models.domain import CallerIdentity
from paysync.observability import setup_logging
from paysync.services.idempotency import IdempotencyGuard

OPERATOR_ID = "system:idempotency-cleanup"

logger = get_logger(__name__)


async def cleanup(max_age_hours: int) -> int:
    operator = CallerIdentity(user_id=OPERATOR_ID, is_admin=True)
    try:
        async with get_session() as session:
            guard = IdempotencyGuard(SqlLedgerStore(session))
            return await guard.cleanup_expired(operator, max_age_hours)
    finally:
        await close_engines()


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete expired idempotency records")
    parser.add_argument(
        "--max-age-hours",
        type=int,
        default=settings.idempotency_retention_hours,
        help="Delete records older than this many hours (1-168)",
    )
    args = parser.parse_args()

    setup_logging()
    try:
        deleted = asyncio.run(cleanup(args.max_age_hours))
    except PaymentCoreError as exc:
        logger.error("idempotency_cleanup_failed", error=str(exc), error_type=type(exc).__name__)
        return 1

    print(f"Deleted {deleted} idempotency record(s) older than {args.max_age_hours}h")
    return 0


if __name__ == "__main__":
    sys.exit(main())
