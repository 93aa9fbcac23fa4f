"""Insert-or-fetch: the one place unique-constraint races are resolved.

Starting an assessment, claiming an idempotency key and creating a
processing job all follow the same shape:

1. Try to insert the row inside a SAVEPOINT.
2. If PostgreSQL rejects it with a unique violation, the row already exists
   (another request won the race); roll back to the savepoint only, so the
   surrounding request transaction stays usable.
3. Re-read the winner's row and hand it back to the caller.

Repositories perform step 1 with :func:`insert_row`, which turns a unique
violation into :class:`DuplicateRowError`.  Services combine the insert and
the re-read with :func:`insert_or_fetch`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE for unique_violation
_UNIQUE_VIOLATION = "23505"


class DuplicateRowError(Exception):
    """An insert lost a race against an existing row with the same unique key."""

    def __init__(self, table: str, original: Exception | None = None) -> None:
        super().__init__(f"duplicate row in {table}")
        self.table = table
        self.original = original


def is_unique_violation(exc: IntegrityError) -> bool:
    """Return True when an IntegrityError was caused by a unique index.

    asyncpg exposes the SQLSTATE as ``sqlstate``; psycopg2 as ``pgcode``.
    Other integrity failures (foreign key, check constraints) are real
    errors and must keep propagating.
    """
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code is not None:
        return code == _UNIQUE_VIOLATION
    return "unique" in str(orig).lower() or "duplicate key" in str(orig).lower()


async def insert_row(db: AsyncSession, row: T, *, table: str) -> T:
    """Add ``row`` and flush it inside a savepoint.

    Raises:
        DuplicateRowError: the row collides with an existing unique key.
            The savepoint is rolled back; the outer transaction is intact.
    """
    try:
        async with db.begin_nested():
            db.add(row)
            await db.flush()
    except IntegrityError as exc:
        if not is_unique_violation(exc):
            raise
        raise DuplicateRowError(table, exc) from exc
    return row


async def insert_or_fetch(
    insert: Callable[[], Awaitable[T]],
    fetch: Callable[[], Awaitable[T | None]],
    *,
    attempts: int = 3,
    delay: float = 0.05,
) -> tuple[T, bool]:
    """Insert a row, or return the row that beat us to the unique key.

    ``insert`` must raise :class:`DuplicateRowError` on a unique conflict.
    ``fetch`` re-reads by the same unique key.  If the conflicting row has
    vanished by the time we re-read it (its writer rolled back), the insert
    is attempted again, up to ``attempts`` times in total (always at least
    once).

    Returns:
        ``(row, created)``: ``created`` is False when the row already existed.

    Raises:
        DuplicateRowError: the conflict could not be resolved in time.
    """
    attempt = 1
    while True:
        try:
            return await insert(), True
        except DuplicateRowError as exc:
            conflict = exc
        logger.debug(
            "Unique conflict on %s (attempt %d/%d), re-reading existing row",
            conflict.table, attempt, attempts,
        )
        existing = await fetch()
        if existing is not None:
            return existing, False
        if attempt >= attempts:
            logger.warning(
                "Unique conflict on %s not resolved after %d attempts",
                conflict.table, attempt,
            )
            raise conflict
        attempt += 1
        await asyncio.sleep(delay)
