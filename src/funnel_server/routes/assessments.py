"""Assessment endpoints: start/resume, answer save, step validation, completion.

All endpoints require the ``X-User-ID`` header.  Mutating endpoints accept
an optional ``Idempotency-Key`` header; the request is then executed at
most once per (path, key) and retries replay the stored response with
``Idempotent-Replayed: true``.
"""

import uuid

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_core.constants import REPLAYED_HEADER
from funnel_core.engine import AssessmentEngine
from funnel_core.idempotency import IdempotencyService, IdempotentResponse
from funnel_core.models.assessment import (
    AssessmentStatusResult,
    SaveAnswerRequest,
    StartAssessmentRequest,
)

from funnel_server.dependencies import (
    get_assessment_engine,
    get_correlation_id,
    get_db,
    get_idempotency,
    get_idempotency_key,
    get_user_id,
)

router = APIRouter(tags=["assessments"])


def _respond(response: IdempotentResponse, correlation_id: str | None = None) -> JSONResponse:
    headers = {}
    if response.replayed:
        headers[REPLAYED_HEADER] = "true"
    if correlation_id:
        headers["X-Correlation-ID"] = correlation_id
    return JSONResponse(
        status_code=response.status_code, content=response.body, headers=headers
    )


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/funnels/{slug}/assessments", status_code=201)
async def start_assessment(
    slug: str,
    request: Request,
    body: StartAssessmentRequest | None = Body(None),
    user_id: str = Depends(get_user_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    engine: AssessmentEngine = Depends(get_assessment_engine),
    idempotency: IdempotencyService = Depends(get_idempotency),
) -> JSONResponse:
    """Resume the in-progress assessment (200) or create one (201).

    ``forceNew`` abandons the in-progress assessment and starts over.
    400 for an inactive funnel, 404 for an unknown one.
    """
    body = body or StartAssessmentRequest()

    async def handler() -> IdempotentResponse:
        result = await engine.start_or_resume(
            db, patient_id=user_id, slug=slug, force_new=body.force_new
        )
        return IdempotentResponse(
            status_code=200 if result.resumed else 201,
            body=result.model_dump(mode="json", by_alias=True),
        )

    response = await idempotency.execute(
        db,
        endpoint_path=request.url.path,
        idempotency_key=idempotency_key,
        request_body=body.model_dump(mode="json", by_alias=True),
        handler=handler,
        caller_id=user_id,
        check_payload_conflict=False,
    )
    return _respond(response, correlation_id)


@router.get("/funnels/{slug}/assessments/{assessment_id}")
async def get_assessment(
    slug: str,
    assessment_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    engine: AssessmentEngine = Depends(get_assessment_engine),
) -> AssessmentStatusResult:
    """Status, current step and progress counters."""
    return await engine.get_status(
        db, patient_id=user_id, slug=slug, assessment_id=assessment_id
    )


@router.post("/funnels/{slug}/assessments/{assessment_id}/answers/save")
async def save_answer(
    slug: str,
    assessment_id: uuid.UUID,
    body: SaveAnswerRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    engine: AssessmentEngine = Depends(get_assessment_engine),
    idempotency: IdempotencyService = Depends(get_idempotency),
) -> JSONResponse:
    """Save (upsert) one answer.

    403 when skipping ahead of the current step or touching another
    patient's assessment, 404 for unknown step/question, 409 once completed.
    """

    async def handler() -> IdempotentResponse:
        result = await engine.save_answer(
            db,
            patient_id=user_id,
            slug=slug,
            assessment_id=assessment_id,
            step_id=body.step_id,
            question_id=body.question_id,
            value=body.answer_value,
        )
        return IdempotentResponse(
            status_code=200, body=result.model_dump(mode="json", by_alias=True)
        )

    response = await idempotency.execute(
        db,
        endpoint_path=request.url.path,
        idempotency_key=idempotency_key,
        request_body=body.model_dump(mode="json", by_alias=True),
        handler=handler,
        caller_id=user_id,
    )
    return _respond(response, correlation_id)


@router.post("/funnels/{slug}/assessments/{assessment_id}/steps/{step_id}/validate")
async def validate_step(
    slug: str,
    assessment_id: uuid.UUID,
    step_id: str,
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    engine: AssessmentEngine = Depends(get_assessment_engine),
) -> JSONResponse:
    """Report missing required answers for one step and the next step."""
    result = await engine.validate_step(
        db,
        patient_id=user_id,
        slug=slug,
        assessment_id=assessment_id,
        step_id=step_id,
    )
    return JSONResponse(content=result.model_dump(mode="json", by_alias=True))


@router.post("/funnels/{slug}/assessments/{assessment_id}/complete")
async def complete_assessment(
    slug: str,
    assessment_id: uuid.UUID,
    request: Request,
    user_id: str = Depends(get_user_id),
    idempotency_key: str | None = Depends(get_idempotency_key),
    correlation_id: str = Depends(get_correlation_id),
    db: AsyncSession = Depends(get_db),
    engine: AssessmentEngine = Depends(get_assessment_engine),
    idempotency: IdempotencyService = Depends(get_idempotency),
) -> JSONResponse:
    """Complete the assessment and queue its processing job.

    422 with ``details.missingQuestions`` while required answers are missing.
    Completing again returns 200 with the existing state.
    """

    async def handler() -> IdempotentResponse:
        result = await engine.complete(
            db,
            patient_id=user_id,
            slug=slug,
            assessment_id=assessment_id,
            correlation_id=correlation_id,
        )
        return IdempotentResponse(
            status_code=200, body=result.model_dump(mode="json", by_alias=True)
        )

    response = await idempotency.execute(
        db,
        endpoint_path=request.url.path,
        idempotency_key=idempotency_key,
        request_body={},
        handler=handler,
        caller_id=user_id,
    )
    return _respond(response, correlation_id)
