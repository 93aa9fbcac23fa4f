"""AssessmentEngine: the start/resume, answer and completion state machine.

Stateless engine pattern: each call loads the assessment and its answers
from the database, decides, writes, and returns a contract model.  No
in-memory state is kept between calls, so any number of server instances
can serve the same patient.

The engine accepts an ``AsyncSession`` from the caller so that the caller
(the FastAPI request dependency) owns the transaction.  Every write that
can race with another request is a compare-and-swap ``UPDATE`` guarded on
``status = 'in_progress'`` or an insert-or-fetch on a unique index.

Lifecycle::

    (none) --start--> in_progress --complete--> completed
                          |
                          +--start(forceNew)--> abandoned  (+ new in_progress)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from funnel_db.models.assessment import Assessment
from funnel_db.models.enums import AssessmentStatus
from funnel_db.repository import AssessmentRepository
from funnel_db.upsert import insert_or_fetch

from funnel_core.constants import INSERT_RETRY_ATTEMPTS, INSERT_RETRY_DELAY_MS
from funnel_core.errors import (
    AlreadyCompletedError,
    AuthenticationRequiredError,
    ForbiddenError,
    NotFoundError,
    ValidationFailedError,
)
from funnel_core.evaluator import RuleEvaluator
from funnel_core.jobs import ProcessingJobService, job_reference
from funnel_core.models.assessment import (
    AssessmentStartResult,
    AssessmentStatusResult,
    CompletionResult,
    ProcessingJobRef,
    SaveAnswerResult,
    StepValidationResult,
)
from funnel_core.models.funnel import (
    CatalogFunnelRef,
    FunnelDefinition,
    LegacyFunnelRef,
    Step,
)
from funnel_core.navigation import Navigator, StepState
from funnel_core.resolver import FunnelResolver

logger = logging.getLogger(__name__)


def _status_value(assessment: Assessment) -> str:
    return str(getattr(assessment.status, "value", assessment.status))


class AssessmentEngine:
    """Drives assessments through a funnel.

    Args:
        resolver: resolves funnel slugs (legacy tables or YAML catalog)
        jobs: processing job service used on completion
    """

    def __init__(
        self,
        resolver: FunnelResolver,
        jobs: ProcessingJobService | None = None,
    ) -> None:
        self._resolver = resolver
        self._repo = AssessmentRepository()
        self._jobs = jobs or ProcessingJobService()
        self._evaluator = RuleEvaluator()
        self._navigator = Navigator(self._evaluator)

    # ==================================================================
    # Start / resume
    # ==================================================================

    async def start_or_resume(
        self,
        db: AsyncSession,
        *,
        patient_id: str | None,
        slug: str,
        force_new: bool = False,
    ) -> AssessmentStartResult:
        """Return the patient's in-progress assessment, or create one.

        Resuming performs no writes.  ``force_new`` abandons the current
        in-progress assessment and inserts a fresh one in the same
        transaction.  When two starts race, the loser re-reads the winner's
        row and reports it as resumed.

        Raises:
            NotFoundError: unknown funnel.
            ValidationFailedError: funnel inactive or without steps.
        """
        if not patient_id:
            raise AuthenticationRequiredError()

        funnel = await self._resolver.resolve(db, slug)
        if not funnel.is_active:
            raise ValidationFailedError(
                "Funnel is not active", details={"reason": "FUNNEL_INACTIVE"}
            )
        if not funnel.steps:
            raise ValidationFailedError(
                "Funnel has no steps", details={"reason": "FUNNEL_NOT_SUPPORTED"}
            )

        if force_new:
            abandoned = await self._repo.abandon_active(db, patient_id, slug)
            if abandoned:
                logger.info(
                    "Abandoned %d in-progress assessment(s) for funnel %s (forceNew)",
                    abandoned, slug,
                )
        else:
            existing = await self._repo.get_active(db, patient_id, slug)
            if existing is not None:
                logger.info("Resuming assessment %s (funnel %s)", existing.id, slug)
                return await self._start_result(db, funnel, existing, resumed=True)

        first = funnel.steps[0]
        funnel_id = funnel.ref.funnel_id if isinstance(funnel.ref, LegacyFunnelRef) else None
        funnel_version = (
            funnel.ref.version if isinstance(funnel.ref, CatalogFunnelRef) else None
        )
        row, created = await insert_or_fetch(
            lambda: self._repo.create_assessment(
                db,
                patient_id=patient_id,
                funnel_slug=slug,
                funnel_id=funnel_id,
                funnel_version=funnel_version,
                current_step_id=first.id,
                current_step_order=first.order_index,
            ),
            lambda: self._repo.get_active(db, patient_id, slug),
            attempts=INSERT_RETRY_ATTEMPTS,
            delay=INSERT_RETRY_DELAY_MS / 1000,
        )
        if created:
            logger.info("Created assessment %s (funnel %s)", row.id, slug)
        else:
            logger.info("Start race on funnel %s resolved to assessment %s", slug, row.id)
        return await self._start_result(db, funnel, row, resumed=not created)

    async def _start_result(
        self,
        db: AsyncSession,
        funnel: FunnelDefinition,
        assessment: Assessment,
        *,
        resumed: bool,
    ) -> AssessmentStartResult:
        answers = await self._repo.get_answers(db, assessment.id) if resumed else {}
        current = self._navigator.current_step(funnel, answers)
        return AssessmentStartResult(
            assessment_id=assessment.id,
            funnel_slug=assessment.funnel_slug,
            status=_status_value(assessment),
            started_at=assessment.started_at,
            resumed=resumed,
            current_step=current.summary() if current else None,
            total_steps=funnel.total_steps,
        )

    # ==================================================================
    # Read
    # ==================================================================

    async def get_status(
        self,
        db: AsyncSession,
        *,
        patient_id: str | None,
        slug: str,
        assessment_id: uuid.UUID,
    ) -> AssessmentStatusResult:
        """Current step and progress counters, recomputed from the answers."""
        assessment = await self._load_owned(db, patient_id, slug, assessment_id)
        funnel = await self._resolver.resolve_for_assessment(db, assessment)
        answers = await self._repo.get_answers(db, assessment.id)
        current = self._navigator.current_step(funnel, answers)

        if assessment.status == AssessmentStatus.COMPLETED:
            completed_steps = funnel.total_steps
        else:
            completed_steps = current.position if current else 0

        return AssessmentStatusResult(
            assessment_id=assessment.id,
            funnel_slug=assessment.funnel_slug,
            status=_status_value(assessment),
            current_step=current.summary() if current else None,
            completed_steps=completed_steps,
            total_steps=funnel.total_steps,
            answered_question_keys_current_step=current.answered_keys if current else [],
            started_at=assessment.started_at,
            completed_at=assessment.completed_at,
        )

    async def get_definition(self, db: AsyncSession, slug: str) -> FunnelDefinition:
        return await self._resolver.resolve(db, slug)

    # ==================================================================
    # Answers
    # ==================================================================

    async def save_answer(
        self,
        db: AsyncSession,
        *,
        patient_id: str | None,
        slug: str,
        assessment_id: uuid.UUID,
        step_id: str,
        question_id: str,
        value: Any,
    ) -> SaveAnswerResult:
        """Upsert one answer after the precondition chain passes.

        Checks, in order: authentication, assessment exists, ownership,
        still in progress, step in funnel, question in step, step not ahead
        of the current step.  A rejected save writes nothing.
        """
        assessment = await self._load_owned(db, patient_id, slug, assessment_id)
        self._ensure_in_progress(assessment)

        funnel = await self._resolver.resolve_for_assessment(db, assessment)
        step = await self._step_in_funnel(db, funnel, step_id)
        question = step.get_question(question_id)
        if question is None:
            raise NotFoundError(
                "Question not found in step",
                details={"stepId": step_id, "questionId": question_id},
            )

        answers = await self._repo.get_answers(db, assessment.id)
        self._ensure_not_ahead(assessment, funnel, step, answers)

        # Guard-and-advance first: loses cleanly against a concurrent completion
        updated = await self._repo.advance_step(
            db, assessment.id, step_id=step.id, step_order=step.order_index
        )
        if updated is None:
            raise AlreadyCompletedError()

        await self._repo.upsert_answer(
            db,
            assessment_id=assessment.id,
            question_key=question.key,
            question_id=question.id,
            step_id=step.id,
            value=value,
        )
        logger.debug(
            "Saved answer: assessment=%s question=%s", assessment.id, question.key
        )
        return SaveAnswerResult(
            assessment_id=assessment.id,
            step_id=step.id,
            question_id=question.id,
            question_key=question.key,
            answer_value=value,
            current_step_id=updated.current_step_id,
        )

    async def validate_step(
        self,
        db: AsyncSession,
        *,
        patient_id: str | None,
        slug: str,
        assessment_id: uuid.UUID,
        step_id: str,
    ) -> StepValidationResult:
        """Check one step's required answers and suggest the next step.

        Only the current step or an earlier one can be validated.  The next
        step is the recomputed current step, or the step after it when the
        validated step is itself current.  A valid step moves the resume
        hint forward to that next step.

        Raises:
            ForbiddenError: the step lies ahead of the current step.
        """
        assessment = await self._load_owned(db, patient_id, slug, assessment_id)
        self._ensure_in_progress(assessment)

        funnel = await self._resolver.resolve_for_assessment(db, assessment)
        step = await self._step_in_funnel(db, funnel, step_id)
        answers = await self._repo.get_answers(db, assessment.id)
        current = self._ensure_not_ahead(assessment, funnel, step, answers)

        state = self._navigator.step_state(funnel, step, answers)
        if not state.is_satisfied:
            return StepValidationResult(
                is_valid=False, missing_questions=state.missing_questions()
            )

        if current is None:
            next_step = None
        elif current.step.id != step.id:
            next_step = current.step
        else:
            next_step = funnel.next_step(current.step)

        if next_step is not None:
            updated = await self._repo.advance_step(
                db,
                assessment.id,
                step_id=next_step.id,
                step_order=next_step.order_index,
            )
            if updated is None:
                raise AlreadyCompletedError()
        return StepValidationResult(
            is_valid=True,
            next_step=(
                self._navigator.step_state(funnel, next_step, answers).summary()
                if next_step is not None
                else None
            ),
        )

    # ==================================================================
    # Completion
    # ==================================================================

    async def complete(
        self,
        db: AsyncSession,
        *,
        patient_id: str | None,
        slug: str,
        assessment_id: uuid.UUID,
        correlation_id: str,
    ) -> CompletionResult:
        """Complete the assessment and ensure its processing job.

        Completing twice is a no-op that returns the existing state.  A
        failure while creating the job is logged and leaves
        ``processing_job`` empty; the completion itself still stands.

        Raises:
            ValidationFailedError (422): required questions are unanswered.
        """
        assessment = await self._load_owned(db, patient_id, slug, assessment_id)

        if assessment.status == AssessmentStatus.COMPLETED:
            logger.info("Assessment %s already completed", assessment.id)
            return await self._completion_result(
                db, assessment, correlation_id, already_completed=True
            )
        self._ensure_in_progress(assessment)

        funnel = await self._resolver.resolve_for_assessment(db, assessment)
        answers = await self._repo.get_answers(db, assessment.id)
        missing = self._navigator.missing_questions(funnel, answers)
        if missing:
            logger.info(
                "Completion blocked: assessment=%s missing=%d",
                assessment.id, len(missing),
            )
            raise ValidationFailedError(
                "Required questions are unanswered",
                details={
                    "missingQuestions": [m.model_dump(by_alias=True) for m in missing]
                },
                status_code=422,
            )

        completed = await self._repo.mark_completed(db, assessment.id)
        if completed is None:
            # Lost the race: someone else moved it out of in_progress
            current = await self._repo.get_by_id(db, assessment.id)
            if current is None or current.status != AssessmentStatus.COMPLETED:
                raise AlreadyCompletedError(
                    "Assessment is no longer in progress",
                    details={"status": _status_value(current) if current else None},
                )
            return await self._completion_result(
                db, current, correlation_id, already_completed=True
            )

        logger.info(
            "Assessment %s completed (correlation %s)", completed.id, correlation_id
        )
        return await self._completion_result(
            db, completed, correlation_id, already_completed=False
        )

    async def _completion_result(
        self,
        db: AsyncSession,
        assessment: Assessment,
        correlation_id: str,
        *,
        already_completed: bool,
    ) -> CompletionResult:
        return CompletionResult(
            assessment_id=assessment.id,
            completed_at=assessment.completed_at,
            already_completed=already_completed,
            processing_job=await self._ensure_job_quietly(db, assessment, correlation_id),
        )

    async def _ensure_job_quietly(
        self, db: AsyncSession, assessment: Assessment, correlation_id: str
    ) -> ProcessingJobRef | None:
        """Ensure the job inside a savepoint; on failure log and return None."""
        try:
            async with db.begin_nested():
                job = await self._jobs.ensure_job(
                    db, assessment.id, correlation_id=correlation_id
                )
        except Exception:
            logger.exception(
                "Processing job creation failed for assessment %s (correlation %s); "
                "left for the job sweep",
                assessment.id, correlation_id,
            )
            return None
        return job_reference(job)

    # ==================================================================
    # Precondition helpers
    # ==================================================================

    async def _load_owned(
        self,
        db: AsyncSession,
        patient_id: str | None,
        slug: str,
        assessment_id: uuid.UUID,
    ) -> Assessment:
        """Authentication, existence (within ``slug``), then ownership."""
        if not patient_id:
            raise AuthenticationRequiredError()
        assessment = await self._repo.get_by_id(db, assessment_id)
        if assessment is None or assessment.funnel_slug != slug:
            raise NotFoundError(
                "Assessment not found", details={"assessmentId": str(assessment_id)}
            )
        if assessment.patient_id != patient_id:
            logger.warning(
                "Ownership check failed for assessment %s", assessment.id
            )
            raise ForbiddenError(
                "Assessment belongs to another patient", details={"reason": "NOT_OWNER"}
            )
        return assessment

    def _ensure_not_ahead(
        self,
        assessment: Assessment,
        funnel: FunnelDefinition,
        step: Step,
        answers: dict[str, Any],
    ) -> StepState | None:
        """Reject steps past the current one; returns the current step state."""
        current = self._navigator.current_step(funnel, answers)
        if current is not None and step.order_index > current.step.order_index:
            logger.info(
                "Step skip prevented: assessment=%s requested=%s current=%s",
                assessment.id, step.id, current.step.id,
            )
            raise ForbiddenError(
                "Complete the current step before moving to later steps",
                details={
                    "reason": "STEP_SKIPPING_PREVENTED",
                    "currentStepId": current.step.id,
                    "requestedStepId": step.id,
                },
            )
        return current

    @staticmethod
    def _ensure_in_progress(assessment: Assessment) -> None:
        if assessment.status == AssessmentStatus.COMPLETED:
            raise AlreadyCompletedError()
        if assessment.status != AssessmentStatus.IN_PROGRESS:
            raise AlreadyCompletedError(
                "Assessment is no longer in progress",
                details={"status": _status_value(assessment)},
            )

    async def _step_in_funnel(
        self, db: AsyncSession, funnel: FunnelDefinition, step_id: str
    ) -> Step:
        step = funnel.get_step(step_id)
        if step is not None:
            return step
        if await self._resolver.step_exists_elsewhere(db, funnel, step_id):
            raise ForbiddenError(
                "Step does not belong to this funnel",
                details={"reason": "STEP_NOT_IN_FUNNEL", "stepId": step_id},
            )
        raise NotFoundError("Step not found", details={"stepId": step_id})
