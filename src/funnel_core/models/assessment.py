"""Assessment contract models: what the engine hands back to API callers.

These are decoupled from the ORM models in ``funnel_db`` so
clients never see database internals.  Field names are snake_case in
Python and camelCase on the wire (``stepId``, ``answerValue``...);
``populate_by_name`` lets tests and internal callers use either.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool
from pydantic.alias_generators import to_camel

# bool first so JSON true/false never degrades to 1/0
AnswerValue = Union[StrictBool, int, float, str]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ------------------------------------------------------------------
# Requests
# ------------------------------------------------------------------

class StartAssessmentRequest(ApiModel):
    """Body for POST /funnels/{slug}/assessments."""

    force_new: bool = False


class SaveAnswerRequest(ApiModel):
    """Body for POST .../answers/save."""

    step_id: str = Field(min_length=1)
    question_id: str = Field(min_length=1)
    answer_value: AnswerValue


# ------------------------------------------------------------------
# Building blocks
# ------------------------------------------------------------------

class StepSummary(ApiModel):
    """Flattened step for resume/navigation hints."""

    step_id: str
    title: str
    type: str
    order_index: int
    step_index: int
    has_questions: bool
    required_question_keys: list[str] = Field(default_factory=list)
    answered_question_keys: list[str] = Field(default_factory=list)
    visible_question_keys: list[str] = Field(default_factory=list)


class MissingQuestion(ApiModel):
    question_id: str
    question_key: str
    question_label: str
    order_index: int
    step_id: str
    reason: Literal["required", "conditional_required"] = "required"


class ProcessingJobRef(ApiModel):
    id: uuid.UUID
    status: str
    stage: str
    correlation_id: str
    created_at: Optional[datetime] = None


# ------------------------------------------------------------------
# Responses
# ------------------------------------------------------------------

class AssessmentStartResult(ApiModel):
    """Result of start-or-resume.  ``resumed`` decides 200 vs 201."""

    assessment_id: uuid.UUID
    funnel_slug: str
    status: str
    started_at: datetime
    resumed: bool
    current_step: Optional[StepSummary] = None
    total_steps: int


class SaveAnswerResult(ApiModel):
    assessment_id: uuid.UUID
    step_id: str
    question_id: str
    question_key: str
    answer_value: AnswerValue
    current_step_id: Optional[str] = None


class StepValidationResult(ApiModel):
    is_valid: bool
    missing_questions: list[MissingQuestion] = Field(default_factory=list)
    next_step: Optional[StepSummary] = None


class CompletionResult(ApiModel):
    assessment_id: uuid.UUID
    status: Literal["completed"] = "completed"
    completed_at: Optional[datetime] = None
    already_completed: bool = False
    processing_job: Optional[ProcessingJobRef] = None


class AssessmentStatusResult(ApiModel):
    assessment_id: uuid.UUID
    funnel_slug: str
    status: str
    current_step: Optional[StepSummary] = None
    completed_steps: int
    total_steps: int
    answered_question_keys_current_step: list[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None

