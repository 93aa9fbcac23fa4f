"""IdempotencyService: at most one logical execution per client key.

Mutating endpoints pass their handler through :meth:`IdempotencyService.execute`.
With no ``Idempotency-Key`` the handler simply runs.  With a key:

1. The request body (plus the caller) is hashed into ``request_hash``.
2. A pending record for ``(endpoint_path, key)`` is claimed through
   insert-or-fetch.  Winning the claim means this request executes the
   handler and stores the response snapshot on the record.
3. Losing the claim means the key was seen before:

   - different hash: ``PAYLOAD_CONFLICT``, the handler does not run;
   - same hash, snapshot stored: the snapshot is replayed verbatim;
   - same hash, still pending: poll briefly for the snapshot, then give
     up with ``IDEMPOTENCY_IN_PROGRESS``.

Only successful (2xx) responses are stored.  A handler that fails with a
domain error releases its claim so a corrected retry can run.  Records
expire after ``IDEMPOTENCY_TTL_HOURS``; an expired record is discarded and
the request handled as new.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from funnel_db.models.idempotency import IdempotencyRecord
from funnel_db.repository import IdempotencyRepository
from funnel_db.upsert import insert_or_fetch

from funnel_core.constants import (
    IDEMPOTENCY_POLL_ATTEMPTS,
    IDEMPOTENCY_POLL_INTERVAL_MS,
    IDEMPOTENCY_TTL_HOURS,
    INSERT_RETRY_ATTEMPTS,
    INSERT_RETRY_DELAY_MS,
)
from funnel_core.errors import (
    FunnelError,
    IdempotencyInProgressError,
    PayloadConflictError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotentResponse:
    """Status and JSON body of a handled (or replayed) request."""

    status_code: int
    body: Any
    replayed: bool = False

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


Handler = Callable[[], Awaitable[IdempotentResponse]]


def canonical_json(body: Any) -> str:
    """Serialise with sorted keys and no whitespace so equal bodies hash equally."""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def compute_request_hash(body: Any, caller_id: str | None = None) -> str:
    """sha256 over the caller and the canonical body."""
    payload = canonical_json({"caller": caller_id, "body": body})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class IdempotencyService:
    """Wraps handlers with replay-on-retry semantics."""

    def __init__(
        self,
        *,
        ttl: timedelta | None = None,
        poll_attempts: int = IDEMPOTENCY_POLL_ATTEMPTS,
        poll_interval: float = IDEMPOTENCY_POLL_INTERVAL_MS / 1000,
    ) -> None:
        self._ttl = ttl or timedelta(hours=IDEMPOTENCY_TTL_HOURS)
        self._poll_attempts = poll_attempts
        self._poll_interval = poll_interval
        self._repo = IdempotencyRepository()

    async def execute(
        self,
        db: AsyncSession,
        *,
        endpoint_path: str,
        idempotency_key: str | None,
        request_body: Any,
        handler: Handler,
        caller_id: str | None = None,
        check_payload_conflict: bool = True,
    ) -> IdempotentResponse:
        """Run ``handler`` at most once per ``(endpoint_path, idempotency_key)``.

        Raises:
            PayloadConflictError: the key was used for a different request.
            IdempotencyInProgressError: the first request holding the key
                did not finish within the polling window.
        """
        if not idempotency_key:
            return await handler()

        request_hash = compute_request_hash(request_body, caller_id)

        async def claim() -> IdempotencyRecord:
            return await self._repo.create_pending(
                db,
                endpoint_path=endpoint_path,
                idempotency_key=idempotency_key,
                caller_id=caller_id,
                request_hash=request_hash,
                expires_at=datetime.now(timezone.utc) + self._ttl,
            )

        record, claimed = await insert_or_fetch(
            claim,
            lambda: self._get_live(db, endpoint_path, idempotency_key),
            attempts=INSERT_RETRY_ATTEMPTS,
            delay=INSERT_RETRY_DELAY_MS / 1000,
        )

        if not claimed:
            return await self._replay(
                db,
                record,
                request_hash=request_hash,
                caller_id=caller_id,
                check_payload_conflict=check_payload_conflict,
            )

        try:
            response = await handler()
        except FunnelError:
            await self._repo.delete(db, record)
            raise

        if not response.is_success:
            await self._repo.delete(db, record)
            return response

        await self._repo.store_response(
            db, record, status_code=response.status_code, body=response.body
        )
        return response

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_live(
        self, db: AsyncSession, endpoint_path: str, idempotency_key: str
    ) -> IdempotencyRecord | None:
        """Fetch the record for a key, discarding it if its TTL has passed."""
        record = await self._repo.get(db, endpoint_path, idempotency_key)
        if record is None:
            return None
        if record.expires_at <= datetime.now(timezone.utc):
            logger.info(
                "Idempotency key expired, discarding: path=%s", endpoint_path
            )
            await self._repo.delete(db, record)
            return None
        return record

    async def _replay(
        self,
        db: AsyncSession,
        record: IdempotencyRecord,
        *,
        request_hash: str,
        caller_id: str | None,
        check_payload_conflict: bool,
    ) -> IdempotentResponse:
        # A key is never shared across callers, even where the body check is off
        if record.caller_id != caller_id or (
            check_payload_conflict and record.request_hash != request_hash
        ):
            logger.warning(
                "Idempotency payload conflict: path=%s", record.endpoint_path
            )
            raise PayloadConflictError(
                details={"endpointPath": record.endpoint_path}
            )

        attempts = 0
        while record.is_pending:
            if attempts >= self._poll_attempts:
                logger.warning(
                    "Idempotency key still pending after %d polls: path=%s",
                    attempts, record.endpoint_path,
                )
                raise IdempotencyInProgressError()
            await asyncio.sleep(self._poll_interval)
            attempts += 1
            refreshed = await self._repo.get(db, record.endpoint_path, record.idempotency_key)
            if refreshed is None:
                # The first request failed and released the key
                raise IdempotencyInProgressError()
            record = refreshed

        logger.info(
            "Replaying stored response: path=%s status=%s",
            record.endpoint_path, record.response_status,
        )
        return IdempotentResponse(
            status_code=record.response_status,
            body=record.response_body,
            replayed=True,
        )

    async def purge_expired(self, db: AsyncSession) -> int:
        """Delete records whose TTL has passed.  Returns the number removed."""
        removed = await self._repo.purge_expired(db)
        logger.info("Purged %d expired idempotency records", removed)
        return removed
