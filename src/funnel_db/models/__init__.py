"""ORM models for funnel_db."""

from funnel_db.models.assessment import Assessment, AssessmentAnswer
from funnel_db.models.base import Base
from funnel_db.models.enums import AssessmentStatus, JobStage, JobStatus
from funnel_db.models.funnel import (
    Funnel,
    FunnelConditionalRule,
    FunnelQuestion,
    FunnelStep,
)
from funnel_db.models.idempotency import IdempotencyRecord
from funnel_db.models.processing_job import ProcessingJob

__all__ = [
    "Assessment",
    "AssessmentAnswer",
    "AssessmentStatus",
    "Base",
    "Funnel",
    "FunnelConditionalRule",
    "FunnelQuestion",
    "FunnelStep",
    "IdempotencyRecord",
    "JobStage",
    "JobStatus",
    "ProcessingJob",
]
