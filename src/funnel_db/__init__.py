"""funnel_db: PostgreSQL persistence layer for funnel assessments.

ORM models, the async engine factory, repositories and the insert-or-fetch
primitive used to settle unique-key races.  Consumed by ``funnel_core``
services and the FastAPI server.
"""

from funnel_db.engine import dispose_engine, get_engine, get_session_factory
from funnel_db.models.assessment import Assessment, AssessmentAnswer
from funnel_db.models.enums import AssessmentStatus, JobStage, JobStatus
from funnel_db.models.idempotency import IdempotencyRecord
from funnel_db.models.processing_job import ProcessingJob
from funnel_db.repository import (
    AssessmentRepository,
    FunnelRepository,
    IdempotencyRepository,
    ProcessingJobRepository,
)
from funnel_db.upsert import DuplicateRowError, insert_or_fetch

__all__ = [
    "Assessment",
    "AssessmentAnswer",
    "AssessmentRepository",
    "AssessmentStatus",
    "DuplicateRowError",
    "FunnelRepository",
    "IdempotencyRecord",
    "IdempotencyRepository",
    "JobStage",
    "JobStatus",
    "ProcessingJob",
    "ProcessingJobRepository",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "insert_or_fetch",
]
