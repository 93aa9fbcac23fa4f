"""IdempotencyRecord ORM model.

One row per (endpoint_path, idempotency_key).  A row whose
``response_status`` is NULL is still pending: its first request has not
stored a response snapshot yet.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Index, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from funnel_db.models.base import Base


class IdempotencyRecord(Base):
    """Stored outcome of a mutating request, keyed by client token."""

    __tablename__ = "idempotency_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    endpoint_path: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    caller_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    # sha256 hex of the canonical request body plus caller
    request_hash: Mapped[str] = mapped_column(Text, nullable=False)

    # --- Response snapshot (NULL while pending) ---
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[Any | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "endpoint_path", "idempotency_key", name="uq_idempotency_endpoint_key"
        ),
        # Purge scans
        Index("ix_idempotency_expires_at", "expires_at"),
    )

    @property
    def is_pending(self) -> bool:
        return self.response_status is None

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord(path={self.endpoint_path!r}, "
            f"key={self.idempotency_key!r}, status={self.response_status})>"
        )
