"""Pydantic models for funnel definitions and the assessment API contract."""

from funnel_core.models.assessment import (
    AssessmentStartResult,
    AssessmentStatusResult,
    CompletionResult,
    MissingQuestion,
    ProcessingJobRef,
    SaveAnswerRequest,
    SaveAnswerResult,
    StartAssessmentRequest,
    StepSummary,
    StepValidationResult,
)
from funnel_core.models.funnel import (
    CatalogFunnelRef,
    Condition,
    ConditionalRule,
    FunnelDefinition,
    FunnelRef,
    LegacyFunnelRef,
    Question,
    Step,
)

__all__ = [
    "AssessmentStartResult",
    "AssessmentStatusResult",
    "CatalogFunnelRef",
    "CompletionResult",
    "Condition",
    "ConditionalRule",
    "FunnelDefinition",
    "FunnelRef",
    "LegacyFunnelRef",
    "MissingQuestion",
    "ProcessingJobRef",
    "Question",
    "SaveAnswerRequest",
    "SaveAnswerResult",
    "StartAssessmentRequest",
    "Step",
    "StepSummary",
    "StepValidationResult",
]
