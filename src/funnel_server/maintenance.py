"""Maintenance CLI: ``funnel-maintenance``.

Standalone command for cron jobs or one-off operations: purges expired
idempotency records and creates processing jobs for completed assessments
that never got one.

Examples::

    # Purge expired idempotency keys
    funnel-maintenance --purge-idempotency

    # Create up to 500 missing processing jobs
    funnel-maintenance --sweep-jobs --limit 500

    # Both
    funnel-maintenance --purge-idempotency --sweep-jobs
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from funnel_core.constants import DEFAULT_SWEEP_LIMIT

logger = logging.getLogger(__name__)


async def run_maintenance(
    *,
    purge_idempotency: bool = False,
    sweep_jobs: bool = False,
    limit: int = DEFAULT_SWEEP_LIMIT,
) -> dict[str, int]:
    """Run the selected operations in one transaction and return row counts."""
    # Lazy imports to avoid loading DB machinery at module import time
    from funnel_core.idempotency import IdempotencyService
    from funnel_core.jobs import ProcessingJobService
    from funnel_db.engine import dispose_engine, get_session_factory

    results: dict[str, int] = {}
    factory = get_session_factory()
    try:
        async with factory() as db:
            if purge_idempotency:
                results["purged_idempotency_keys"] = await IdempotencyService().purge_expired(db)
            if sweep_jobs:
                created = await ProcessingJobService().sweep_missing_jobs(db, limit=limit)
                results["created_jobs"] = len(created)
            await db.commit()

        logger.info("Maintenance complete: %s", results)
        return results
    finally:
        await dispose_engine()


def cli() -> None:
    """Console-script entry point: ``funnel-maintenance``."""
    parser = argparse.ArgumentParser(
        prog="funnel-maintenance",
        description="Housekeeping for the funnel assessment database.",
    )
    parser.add_argument(
        "--purge-idempotency",
        action="store_true",
        default=False,
        help="Delete idempotency records past their TTL",
    )
    parser.add_argument(
        "--sweep-jobs",
        action="store_true",
        default=False,
        help="Create processing jobs for completed assessments missing one",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=DEFAULT_SWEEP_LIMIT,
        help=f"Max assessments handled by --sweep-jobs (default: {DEFAULT_SWEEP_LIMIT})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    args = parser.parse_args()
    if not (args.purge_idempotency or args.sweep_jobs):
        parser.error("nothing to do: pass --purge-idempotency and/or --sweep-jobs")

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    results = asyncio.run(
        run_maintenance(
            purge_idempotency=args.purge_idempotency,
            sweep_jobs=args.sweep_jobs,
            limit=args.limit,
        )
    )
    for name, count in results.items():
        print(f"{name}: {count}")
    sys.exit(0)
