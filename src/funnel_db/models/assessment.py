"""Assessment and AssessmentAnswer ORM models.

An assessment is one patient's pass through a funnel.  Answers live in
their own table so that concurrent saves to different questions never
rewrite each other's rows.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from funnel_db.models.base import Base
from funnel_db.models.enums import AssessmentStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Assessment(Base):
    """One row per assessment attempt.

    Rows are never deleted; a restarted funnel leaves the previous row in
    ``abandoned`` for the audit trail.
    """

    __tablename__ = "assessments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Identity ---
    patient_id: Mapped[str] = mapped_column(Text, nullable=False)
    funnel_slug: Mapped[str] = mapped_column(Text, nullable=False)
    # Set for funnels stored in the legacy funnel tables
    funnel_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    # Set for funnels served from the YAML catalog
    funnel_version: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Lifecycle ---
    status: Mapped[AssessmentStatus] = mapped_column(
        String(20),
        nullable=False,
        default=AssessmentStatus.IN_PROGRESS,
    )
    # Resume hint only; the authoritative current step is derived from answers
    current_step_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_step_order: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # --- Timestamps ---
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'abandoned')",
            name="ck_assessment_status",
        ),
        CheckConstraint(
            "status != 'completed' OR completed_at IS NOT NULL",
            name="ck_completed_has_timestamp",
        ),
        # At most one in-progress assessment per patient and funnel
        Index(
            "ux_active_patient_funnel",
            "patient_id",
            "funnel_slug",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
        ),
        Index("ix_assessment_patient", "patient_id", "started_at"),
        Index(
            "ix_assessment_completed",
            "completed_at",
            postgresql_where=text("status = 'completed'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Assessment(id={self.id!s}, patient={self.patient_id!r}, "
            f"funnel={self.funnel_slug!r}, status={self.status!r})>"
        )


class AssessmentAnswer(Base):
    """Latest saved value for one question of one assessment."""

    __tablename__ = "assessment_answers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("assessments.id"),
        nullable=False,
    )
    question_key: Mapped[str] = mapped_column(Text, nullable=False)
    question_id: Mapped[str] = mapped_column(Text, nullable=False)
    step_id: Mapped[str] = mapped_column(Text, nullable=False)
    # number | boolean | string, kept as JSON so the type survives a round trip
    value: Mapped[Any] = mapped_column(JSONB, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "assessment_id", "question_key", name="uq_answer_assessment_question"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AssessmentAnswer(assessment={self.assessment_id!s}, "
            f"key={self.question_key!r}, value={self.value!r})>"
        )
