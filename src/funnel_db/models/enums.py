"""Database-level enumerations for assessments and processing jobs."""

import enum


class AssessmentStatus(str, enum.Enum):
    """Lifecycle states for an assessment.

    Transitions:
        in_progress -> completed  (all effectively-required questions answered)
        in_progress -> abandoned  (patient restarted the funnel with forceNew)
    """

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class JobStatus(str, enum.Enum):
    """Execution status of a downstream processing job.

    The core only ever writes ``queued``; the worker owns the rest.
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, enum.Enum):
    """Pipeline stage a processing job has reached."""

    PENDING = "pending"
    RISK = "risk"
    RANKING = "ranking"
    CONTENT = "content"
    VALIDATION = "validation"
    REVIEW = "review"
    PDF = "pdf"
    DELIVERY = "delivery"
    COMPLETED = "completed"
    FAILED = "failed"
