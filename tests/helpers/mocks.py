"""In-memory stand-ins for the funnel_db repositories and AsyncSession.

Mock strategy:
  - Row dataclasses carry the same attributes as the ORM models, without
    SQLAlchemy.  Services read and write those attributes directly.
  - Each mock repository implements the async methods the services call
    and reproduces the storage guarantees that matter: unique keys raise
    ``DuplicateRowError`` and compare-and-swap updates return None when
    the guard fails.
  - ``await asyncio.sleep(0)`` before reads and inserts lets tests
    interleave coroutines with ``asyncio.gather`` and hit the same races
    concurrent requests hit against PostgreSQL.
  - ``MockDB`` stands in for ``AsyncSession``; ``begin_nested()`` is an
    async context manager that lets exceptions propagate.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from funnel_core.models.funnel import (
    CatalogFunnelRef,
    Condition,
    ConditionalRule,
    FunnelDefinition,
    Question,
    Step,
)
from funnel_db.models.enums import AssessmentStatus, JobStage, JobStatus
from funnel_db.models.funnel import (
    Funnel,
    FunnelConditionalRule,
    FunnelQuestion,
    FunnelStep,
)
from funnel_db.upsert import DuplicateRowError


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =====================================================================
# Session
# =====================================================================


class MockDB:
    """AsyncSession stand-in; counts savepoints and commits."""

    def __init__(self):
        self.savepoints = 0
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def begin_nested(self):
        self.savepoints += 1
        yield self

    async def flush(self):
        return None

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


# =====================================================================
# Assessments and answers
# =====================================================================


@dataclass
class MockAssessmentRow:
    patient_id: str
    funnel_slug: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    funnel_id: uuid.UUID | None = None
    funnel_version: str | None = None
    status: AssessmentStatus = AssessmentStatus.IN_PROGRESS
    current_step_id: str | None = None
    current_step_order: int | None = None
    started_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None


@dataclass
class MockAnswerRow:
    assessment_id: uuid.UUID
    question_key: str
    question_id: str
    step_id: str
    value: Any
    updated_at: datetime = field(default_factory=_now)


class MockAssessmentRepository:
    """In-memory AssessmentRepository.

    ``job_repo`` is consulted by ``list_completed_without_job`` the way the
    real query outer-joins ``processing_jobs``.
    """

    def __init__(self, job_repo=None):
        self.rows: dict[uuid.UUID, MockAssessmentRow] = {}
        self.answers: dict[uuid.UUID, dict[str, MockAnswerRow]] = {}
        self.job_repo = job_repo
        self.upsert_calls = 0
        # Answers written while the assessment row was already completed
        self.writes_after_completion = 0

    def _find_active(self, patient_id, funnel_slug):
        for row in self.rows.values():
            if (
                row.patient_id == patient_id
                and row.funnel_slug == funnel_slug
                and row.status == AssessmentStatus.IN_PROGRESS
            ):
                return row
        return None

    def active_rows(self, patient_id, funnel_slug):
        return [
            r for r in self.rows.values()
            if r.patient_id == patient_id
            and r.funnel_slug == funnel_slug
            and r.status == AssessmentStatus.IN_PROGRESS
        ]

    async def create_assessment(
        self, db, *, patient_id, funnel_slug, funnel_id=None, funnel_version=None,
        current_step_id=None, current_step_order=None,
    ):
        await asyncio.sleep(0)
        # Partial unique index on (patient_id, funnel_slug) WHERE in_progress
        if self._find_active(patient_id, funnel_slug) is not None:
            raise DuplicateRowError("assessments")
        row = MockAssessmentRow(
            patient_id=patient_id,
            funnel_slug=funnel_slug,
            funnel_id=funnel_id,
            funnel_version=funnel_version,
            current_step_id=current_step_id,
            current_step_order=current_step_order,
        )
        self.rows[row.id] = row
        return row

    async def get_by_id(self, db, assessment_id):
        await asyncio.sleep(0)
        return self.rows.get(assessment_id)

    async def get_active(self, db, patient_id, funnel_slug):
        await asyncio.sleep(0)
        return self._find_active(patient_id, funnel_slug)

    async def list_completed_without_job(self, db, *, limit=100):
        with_jobs = set(self.job_repo.jobs) if self.job_repo is not None else set()
        done = [
            r for r in self.rows.values()
            if r.status == AssessmentStatus.COMPLETED and r.id not in with_jobs
        ]
        done.sort(key=lambda r: r.completed_at)
        return done[:limit]

    async def abandon_active(self, db, patient_id, funnel_slug):
        await asyncio.sleep(0)
        count = 0
        for row in self.active_rows(patient_id, funnel_slug):
            row.status = AssessmentStatus.ABANDONED
            row.updated_at = _now()
            count += 1
        return count

    async def advance_step(self, db, assessment_id, *, step_id, step_order):
        row = self.rows.get(assessment_id)
        if row is None or row.status != AssessmentStatus.IN_PROGRESS:
            return None
        current = row.current_step_order if row.current_step_order is not None else -1
        if current <= step_order:
            row.current_step_id = step_id
            row.current_step_order = step_order
        row.updated_at = _now()
        return row

    async def mark_completed(self, db, assessment_id):
        await asyncio.sleep(0)
        row = self.rows.get(assessment_id)
        if row is None or row.status != AssessmentStatus.IN_PROGRESS:
            return None
        row.status = AssessmentStatus.COMPLETED
        row.completed_at = _now()
        row.updated_at = row.completed_at
        return row

    async def get_answers(self, db, assessment_id):
        await asyncio.sleep(0)
        return {
            key: ans.value for key, ans in self.answers.get(assessment_id, {}).items()
        }

    async def upsert_answer(
        self, db, *, assessment_id, question_key, question_id, step_id, value,
    ):
        self.upsert_calls += 1
        row = self.rows.get(assessment_id)
        if row is not None and row.status == AssessmentStatus.COMPLETED:
            self.writes_after_completion += 1
        self.answers.setdefault(assessment_id, {})[question_key] = MockAnswerRow(
            assessment_id=assessment_id,
            question_key=question_key,
            question_id=question_id,
            step_id=step_id,
            value=value,
        )


# =====================================================================
# Processing jobs
# =====================================================================


@dataclass
class MockJobRow:
    assessment_id: uuid.UUID
    correlation_id: str
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: JobStatus = JobStatus.QUEUED
    stage: JobStage = JobStage.PENDING
    attempt: int = 1
    max_attempts: int = 3
    schema_version: str = "v1"
    created_at: datetime = field(default_factory=_now)


class MockJobRepository:
    """In-memory ProcessingJobRepository keyed by assessment_id (unique)."""

    def __init__(self):
        self.jobs: dict[uuid.UUID, MockJobRow] = {}
        self.create_calls = 0

    async def get_by_assessment(self, db, assessment_id):
        await asyncio.sleep(0)
        return self.jobs.get(assessment_id)

    async def create_job(
        self, db, *, assessment_id, correlation_id, max_attempts, schema_version,
    ):
        self.create_calls += 1
        await asyncio.sleep(0)
        if assessment_id in self.jobs:
            raise DuplicateRowError("processing_jobs")
        job = MockJobRow(
            assessment_id=assessment_id,
            correlation_id=correlation_id,
            max_attempts=max_attempts,
            schema_version=schema_version,
        )
        self.jobs[assessment_id] = job
        return job


class FailingJobRepository(MockJobRepository):
    """Every insert fails with a non-uniqueness storage error."""

    def __init__(self, exc: Exception):
        super().__init__()
        self._exc = exc

    async def create_job(self, db, **kwargs):
        self.create_calls += 1
        raise self._exc


# =====================================================================
# Idempotency records
# =====================================================================


@dataclass
class MockIdempotencyRecord:
    endpoint_path: str
    idempotency_key: str
    caller_id: str | None
    request_hash: str
    expires_at: datetime
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    response_status: int | None = None
    response_body: Any = None
    created_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.response_status is None


class MockIdempotencyRepository:
    """In-memory IdempotencyRepository keyed by (endpoint_path, key)."""

    def __init__(self):
        self.records: dict[tuple[str, str], MockIdempotencyRecord] = {}

    async def create_pending(
        self, db, *, endpoint_path, idempotency_key, caller_id, request_hash, expires_at,
    ):
        await asyncio.sleep(0)
        if (endpoint_path, idempotency_key) in self.records:
            raise DuplicateRowError("idempotency_keys")
        record = MockIdempotencyRecord(
            endpoint_path=endpoint_path,
            idempotency_key=idempotency_key,
            caller_id=caller_id,
            request_hash=request_hash,
            expires_at=expires_at,
        )
        self.records[(endpoint_path, idempotency_key)] = record
        return record

    async def get(self, db, endpoint_path, idempotency_key):
        await asyncio.sleep(0)
        return self.records.get((endpoint_path, idempotency_key))

    async def store_response(self, db, record, *, status_code, body):
        record.response_status = status_code
        record.response_body = body
        record.completed_at = _now()
        return record

    async def delete(self, db, record):
        key = (record.endpoint_path, record.idempotency_key)
        if key in self.records and self.records[key].id == record.id:
            del self.records[key]

    async def purge_expired(self, db, *, now=None):
        cutoff = now or _now()
        expired = [k for k, r in self.records.items() if r.expires_at < cutoff]
        for k in expired:
            del self.records[k]
        return len(expired)


# =====================================================================
# Legacy funnels
# =====================================================================


class MockFunnelRepository:
    """Legacy-table lookups over a list of transient ``Funnel`` ORM objects."""

    def __init__(self, funnels=()):
        self.funnels = list(funnels)

    async def get_by_slug(self, db, slug):
        return next((f for f in self.funnels if f.slug == slug), None)

    async def get_by_id(self, db, funnel_id):
        return next((f for f in self.funnels if f.id == funnel_id), None)

    async def get_step(self, db, step_id):
        for f in self.funnels:
            for s in f.steps:
                if str(s.id) == str(step_id):
                    return s
        return None


# =====================================================================
# Funnel builders
# =====================================================================


def make_funnel(slug: str = "test-funnel", *, is_active: bool = True) -> FunnelDefinition:
    """Three-step funnel used across the engine tests.

    Step 1 ``basics``: age (required), smoker (required)
    Step 2 ``habits``: activity_level (required), cigarettes_per_day
                       (required only when smoker == true)
    Step 3 ``extras``: notes (optional)
    """
    return FunnelDefinition(
        ref=CatalogFunnelRef(slug=slug, version="1.0.0"),
        slug=slug,
        title="Test funnel",
        is_active=is_active,
        steps=[
            Step(
                id="basics",
                order_index=0,
                title="Basics",
                questions=[
                    Question(id="q-age", key="age", label="Age", type="number",
                             required=True, order_index=0),
                    Question(id="q-smoker", key="smoker", label="Smoker?",
                             type="boolean", required=True, order_index=1),
                ],
            ),
            Step(
                id="habits",
                order_index=1,
                title="Habits",
                questions=[
                    Question(id="q-activity", key="activity_level", label="Activity",
                             required=True, order_index=0),
                    Question(id="q-cigs", key="cigarettes_per_day",
                             label="Cigarettes per day", type="number",
                             required=False, order_index=1),
                ],
                rules=[
                    ConditionalRule(
                        id="rule-cigs",
                        question_id="q-cigs",
                        step_id="habits",
                        type="conditional_required",
                        conditions=[
                            Condition(question_key="smoker", operator="eq", value=True)
                        ],
                        priority=10,
                    )
                ],
            ),
            Step(
                id="extras",
                order_index=2,
                title="Extras",
                questions=[
                    Question(id="q-notes", key="notes", label="Notes", order_index=0),
                ],
            ),
        ],
    )


def make_other_funnel() -> FunnelDefinition:
    return FunnelDefinition(
        ref=CatalogFunnelRef(slug="other-funnel", version="1.0.0"),
        slug="other-funnel",
        title="Other funnel",
        steps=[
            Step(
                id="other-step",
                order_index=0,
                title="Other",
                questions=[
                    Question(id="q-other", key="other", label="Other", required=True)
                ],
            )
        ],
    )


def make_legacy_funnel(slug: str = "legacy-funnel") -> Funnel:
    """Transient ORM rows for a two-step legacy funnel.

    Step 1: ``pain`` (required), ``pain_detail`` (required when pain >= 5,
    through a rule); one rule of an unknown type that must be skipped.
    Step 2: ``consent`` (required).
    """
    funnel = Funnel(
        id=uuid.uuid4(), slug=slug, title="Legacy", description="Relational", is_active=True
    )
    first = FunnelStep(
        id=uuid.uuid4(), funnel_id=funnel.id, order_index=0, title="Pain",
        step_type="question_step",
    )
    second = FunnelStep(
        id=uuid.uuid4(), funnel_id=funnel.id, order_index=1, title="Consent",
        step_type="question_step",
    )
    pain = FunnelQuestion(
        id=uuid.uuid4(), step_id=first.id, key="pain", label="Pain 0-10",
        question_type="number", is_required=True, order_index=0,
    )
    detail = FunnelQuestion(
        id=uuid.uuid4(), step_id=first.id, key="pain_detail", label="Describe",
        question_type="text", is_required=False, order_index=1,
    )
    consent = FunnelQuestion(
        id=uuid.uuid4(), step_id=second.id, key="consent", label="Consent",
        question_type="boolean", is_required=True, order_index=0,
    )
    first.questions = [pain, detail]
    second.questions = [consent]
    first.rules = [
        FunnelConditionalRule(
            id=uuid.uuid4(), step_id=first.id, question_id=detail.id,
            rule_type="conditional_required", logic="and",
            conditions=[{"question_key": "pain", "operator": "gte", "value": 5}],
            priority=5, is_active=True,
        ),
        FunnelConditionalRule(
            id=uuid.uuid4(), step_id=first.id, question_id=detail.id,
            rule_type="conditional_skip", logic="AND", conditions=[],
            priority=1, is_active=True,
        ),
    ]
    second.rules = []
    funnel.steps = [first, second]
    return funnel
