"""ProcessingJob ORM model: the downstream work item for a completed assessment."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from funnel_db.models.base import Base
from funnel_db.models.enums import JobStage, JobStatus


class ProcessingJob(Base):
    """Exactly one row per completed assessment.

    The unique ``assessment_id`` column is what makes concurrent job
    creation collapse to a single row.
    """

    __tablename__ = "processing_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    assessment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("assessments.id"),
        nullable=False,
        unique=True,
    )
    correlation_id: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED
    )
    stage: Mapped[JobStage] = mapped_column(
        String(20), nullable=False, default=JobStage.PENDING
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    schema_version: Mapped[str] = mapped_column(Text, nullable=False, default="v1")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed')",
            name="ck_job_status",
        ),
        CheckConstraint("attempt >= 1 AND attempt <= max_attempts", name="ck_job_attempt"),
        # Worker polling
        Index(
            "ix_job_queued",
            "created_at",
            postgresql_where=text("status = 'queued'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob(id={self.id!s}, assessment={self.assessment_id!s}, "
            f"status={self.status!r}, stage={self.stage!r})>"
        )
