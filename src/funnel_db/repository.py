"""Async repositories for assessments, idempotency records, processing jobs
and legacy funnels.

All public methods accept an ``AsyncSession`` so the caller controls
transaction boundaries: they ``flush()`` but never ``commit()``.  The
request dependency in the server commits once the whole request succeeded.

Mutations that race with other requests are written as single conditional
``UPDATE`` statements (compare-and-swap) or as savepoint inserts that raise
:class:`~funnel_db.upsert.DuplicateRowError`; business decisions stay in
``funnel_core``.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from funnel_db.models.assessment import Assessment, AssessmentAnswer
from funnel_db.models.enums import AssessmentStatus, JobStage, JobStatus
from funnel_db.models.funnel import Funnel, FunnelStep
from funnel_db.models.idempotency import IdempotencyRecord
from funnel_db.models.processing_job import ProcessingJob
from funnel_db.upsert import insert_row


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class AssessmentRepository:
    """Read/write operations on ``assessments`` and ``assessment_answers``."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_assessment(
        self,
        db: AsyncSession,
        *,
        patient_id: str,
        funnel_slug: str,
        funnel_id: uuid.UUID | None = None,
        funnel_version: str | None = None,
        current_step_id: str | None = None,
        current_step_order: int | None = None,
    ) -> Assessment:
        """Insert a new in-progress assessment.

        Raises DuplicateRowError when the patient already has an
        in-progress assessment for this funnel.
        """
        row = Assessment(
            patient_id=patient_id,
            funnel_slug=funnel_slug,
            funnel_id=funnel_id,
            funnel_version=funnel_version,
            status=AssessmentStatus.IN_PROGRESS,
            current_step_id=current_step_id,
            current_step_order=current_step_order,
        )
        return await insert_row(db, row, table="assessments")

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_by_id(
        self, db: AsyncSession, assessment_id: uuid.UUID
    ) -> Assessment | None:
        return await db.get(Assessment, assessment_id, populate_existing=True)

    async def get_active(
        self, db: AsyncSession, patient_id: str, funnel_slug: str
    ) -> Assessment | None:
        """Return the patient's in-progress assessment for a funnel, if any."""
        stmt = select(Assessment).where(
            Assessment.patient_id == patient_id,
            Assessment.funnel_slug == funnel_slug,
            Assessment.status == AssessmentStatus.IN_PROGRESS,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_completed_without_job(
        self, db: AsyncSession, *, limit: int = 100
    ) -> list[Assessment]:
        """Completed assessments that never got a processing job (oldest first)."""
        stmt = (
            select(Assessment)
            .outerjoin(ProcessingJob, ProcessingJob.assessment_id == Assessment.id)
            .where(
                Assessment.status == AssessmentStatus.COMPLETED,
                ProcessingJob.id.is_(None),
            )
            .order_by(Assessment.completed_at.asc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Update: compare-and-swap on status
    # ------------------------------------------------------------------

    async def abandon_active(
        self, db: AsyncSession, patient_id: str, funnel_slug: str
    ) -> int:
        """Move any in-progress assessment for (patient, funnel) to ``abandoned``.

        Returns the number of rows transitioned (0 or 1).
        """
        stmt = (
            update(Assessment)
            .where(
                Assessment.patient_id == patient_id,
                Assessment.funnel_slug == funnel_slug,
                Assessment.status == AssessmentStatus.IN_PROGRESS,
            )
            .values(status=AssessmentStatus.ABANDONED, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount

    async def advance_step(
        self,
        db: AsyncSession,
        assessment_id: uuid.UUID,
        *,
        step_id: str,
        step_order: int,
    ) -> Assessment | None:
        """Touch an in-progress assessment and move its resume hint forward.

        The hint only moves forward: revising an earlier step leaves it
        where it is.  Returns None when the assessment is no longer in
        progress, in which case nothing was written.
        """
        moves_forward = func.coalesce(Assessment.current_step_order, -1) <= step_order
        stmt = (
            update(Assessment)
            .where(
                Assessment.id == assessment_id,
                Assessment.status == AssessmentStatus.IN_PROGRESS,
            )
            .values(
                current_step_id=case(
                    (moves_forward, step_id), else_=Assessment.current_step_id
                ),
                current_step_order=case(
                    (moves_forward, step_order), else_=Assessment.current_step_order
                ),
                updated_at=_utcnow(),
            )
            .returning(Assessment)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_completed(
        self, db: AsyncSession, assessment_id: uuid.UUID
    ) -> Assessment | None:
        """Transition ``in_progress -> completed``.

        Returns None when another request already moved the assessment out
        of ``in_progress``.
        """
        now = _utcnow()
        stmt = (
            update(Assessment)
            .where(
                Assessment.id == assessment_id,
                Assessment.status == AssessmentStatus.IN_PROGRESS,
            )
            .values(
                status=AssessmentStatus.COMPLETED,
                completed_at=now,
                updated_at=now,
            )
            .returning(Assessment)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def get_answers(
        self, db: AsyncSession, assessment_id: uuid.UUID
    ) -> dict[str, Any]:
        """Return ``{question_key: value}`` for every saved answer."""
        stmt = select(AssessmentAnswer.question_key, AssessmentAnswer.value).where(
            AssessmentAnswer.assessment_id == assessment_id
        )
        result = await db.execute(stmt)
        return {key: value for key, value in result.all()}

    async def upsert_answer(
        self,
        db: AsyncSession,
        *,
        assessment_id: uuid.UUID,
        question_key: str,
        question_id: str,
        step_id: str,
        value: Any,
    ) -> None:
        """Insert or overwrite the answer for (assessment, question_key)."""
        now = _utcnow()
        stmt = pg_insert(AssessmentAnswer).values(
            id=uuid.uuid4(),
            assessment_id=assessment_id,
            question_key=question_key,
            question_id=question_id,
            step_id=step_id,
            value=value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_answer_assessment_question",
            set_={
                "value": stmt.excluded.value,
                "question_id": stmt.excluded.question_id,
                "step_id": stmt.excluded.step_id,
                "updated_at": now,
            },
        )
        await db.execute(stmt)


class IdempotencyRepository:
    """Read/write operations on ``idempotency_keys``."""

    async def create_pending(
        self,
        db: AsyncSession,
        *,
        endpoint_path: str,
        idempotency_key: str,
        caller_id: str | None,
        request_hash: str,
        expires_at: datetime,
    ) -> IdempotencyRecord:
        """Claim a key.  Raises DuplicateRowError if the key is already claimed."""
        row = IdempotencyRecord(
            endpoint_path=endpoint_path,
            idempotency_key=idempotency_key,
            caller_id=caller_id,
            request_hash=request_hash,
            expires_at=expires_at,
        )
        return await insert_row(db, row, table="idempotency_keys")

    async def get(
        self, db: AsyncSession, endpoint_path: str, idempotency_key: str
    ) -> IdempotencyRecord | None:
        stmt = (
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.endpoint_path == endpoint_path,
                IdempotencyRecord.idempotency_key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def store_response(
        self,
        db: AsyncSession,
        record: IdempotencyRecord,
        *,
        status_code: int,
        body: Any,
    ) -> IdempotencyRecord:
        """Attach the response snapshot, turning a pending record into a replayable one."""
        record.response_status = status_code
        record.response_body = body
        record.completed_at = _utcnow()
        await db.flush()
        return record

    async def delete(self, db: AsyncSession, record: IdempotencyRecord) -> None:
        await db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.id == record.id)
        )

    async def purge_expired(self, db: AsyncSession, *, now: datetime | None = None) -> int:
        """Delete every record whose TTL has passed.  Returns the row count."""
        cutoff = now or _utcnow()
        result = await db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < cutoff)
        )
        return result.rowcount


class ProcessingJobRepository:
    """Read/write operations on ``processing_jobs``."""

    async def get_by_assessment(
        self, db: AsyncSession, assessment_id: uuid.UUID
    ) -> ProcessingJob | None:
        stmt = select(ProcessingJob).where(ProcessingJob.assessment_id == assessment_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_job(
        self,
        db: AsyncSession,
        *,
        assessment_id: uuid.UUID,
        correlation_id: str,
        max_attempts: int,
        schema_version: str,
    ) -> ProcessingJob:
        """Insert the queued job.  Raises DuplicateRowError if one already exists."""
        row = ProcessingJob(
            assessment_id=assessment_id,
            correlation_id=correlation_id,
            status=JobStatus.QUEUED,
            stage=JobStage.PENDING,
            attempt=1,
            max_attempts=max_attempts,
            schema_version=schema_version,
        )
        return await insert_row(db, row, table="processing_jobs")


class FunnelRepository:
    """Read-only access to the legacy funnel tables."""

    @staticmethod
    def _with_children():
        return (
            selectinload(Funnel.steps).selectinload(FunnelStep.questions),
            selectinload(Funnel.steps).selectinload(FunnelStep.rules),
        )

    async def get_by_slug(self, db: AsyncSession, slug: str) -> Funnel | None:
        """Load a funnel with its steps, questions and rules."""
        stmt = select(Funnel).where(Funnel.slug == slug).options(*self._with_children())
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, db: AsyncSession, funnel_id: uuid.UUID) -> Funnel | None:
        stmt = select(Funnel).where(Funnel.id == funnel_id).options(*self._with_children())
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_step(self, db: AsyncSession, step_id: str) -> FunnelStep | None:
        """Fetch a step by id regardless of which funnel owns it."""
        pk = _as_uuid(step_id)
        if pk is None:
            return None
        return await db.get(FunnelStep, pk)
