"""ProcessingJobService: exactly one downstream job per completed assessment.

``ensure_job`` reads first and inserts only when nothing exists.  Two
requests completing the same assessment at once both reach the insert; the
unique ``assessment_id`` index rejects the loser, which re-reads the
winner's row.  Both callers end up holding the same job id.

Assessments whose job could not be created (storage hiccup after the
completion was committed) are picked up by :meth:`sweep_missing_jobs`,
run from the maintenance CLI or the admin endpoint.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_db.models.processing_job import ProcessingJob
from funnel_db.repository import AssessmentRepository, ProcessingJobRepository
from funnel_db.upsert import DuplicateRowError, insert_or_fetch

from funnel_core.constants import (
    DEFAULT_SWEEP_LIMIT,
    INSERT_RETRY_ATTEMPTS,
    INSERT_RETRY_DELAY_MS,
    JOB_MAX_ATTEMPTS,
    JOB_SCHEMA_VERSION,
)
from funnel_core.models.assessment import ProcessingJobRef

logger = logging.getLogger(__name__)


def job_reference(job: ProcessingJob) -> ProcessingJobRef:
    return ProcessingJobRef(
        id=job.id,
        status=str(getattr(job.status, "value", job.status)),
        stage=str(getattr(job.stage, "value", job.stage)),
        correlation_id=job.correlation_id,
        created_at=job.created_at,
    )


class ProcessingJobService:
    """Creates processing jobs idempotently."""

    def __init__(self) -> None:
        self._repo = ProcessingJobRepository()
        self._assessments = AssessmentRepository()

    async def ensure_job(
        self,
        db: AsyncSession,
        assessment_id: uuid.UUID,
        *,
        correlation_id: str,
    ) -> ProcessingJob:
        """Return the job for ``assessment_id``, creating it if needed.

        Never surfaces a uniqueness race.  Other storage errors propagate.
        """
        existing = await self._repo.get_by_assessment(db, assessment_id)
        if existing is not None:
            return existing

        job, created = await insert_or_fetch(
            lambda: self._repo.create_job(
                db,
                assessment_id=assessment_id,
                correlation_id=correlation_id,
                max_attempts=JOB_MAX_ATTEMPTS,
                schema_version=JOB_SCHEMA_VERSION,
            ),
            lambda: self._repo.get_by_assessment(db, assessment_id),
            attempts=INSERT_RETRY_ATTEMPTS,
            delay=INSERT_RETRY_DELAY_MS / 1000,
        )
        if created:
            logger.info(
                "Processing job %s queued for assessment %s (correlation %s)",
                job.id, assessment_id, correlation_id,
            )
        else:
            logger.info(
                "Processing job %s already existed for assessment %s",
                job.id, assessment_id,
            )
        return job

    async def sweep_missing_jobs(
        self,
        db: AsyncSession,
        *,
        limit: int = DEFAULT_SWEEP_LIMIT,
        correlation_id: str | None = None,
    ) -> list[ProcessingJob]:
        """Create jobs for completed assessments that are missing one.

        Each assessment is handled in its own savepoint so one failure does
        not abort the rest of the sweep.
        """
        sweep_id = correlation_id or f"sweep-{uuid.uuid4()}"
        created: list[ProcessingJob] = []
        for assessment in await self._assessments.list_completed_without_job(db, limit=limit):
            try:
                async with db.begin_nested():
                    job = await self.ensure_job(
                        db, assessment.id, correlation_id=sweep_id
                    )
            except (SQLAlchemyError, DuplicateRowError):
                logger.exception(
                    "Sweep could not create job for assessment %s", assessment.id
                )
                continue
            created.append(job)
        logger.info("Job sweep %s created %d jobs", sweep_id, len(created))
        return created
