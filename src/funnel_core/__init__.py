"""funnel_core: assessment funnel progression engine.

Rule evaluation, funnel resolution (legacy tables or YAML catalog), the
start/answer/complete state machine, the idempotency layer and processing
job dedup.  Storage goes through ``funnel_db``; HTTP lives in
``funnel_server``.
"""

from funnel_core.catalog import FunnelCatalog
from funnel_core.engine import AssessmentEngine
from funnel_core.errors import FunnelError
from funnel_core.evaluator import RuleEvaluator
from funnel_core.idempotency import IdempotencyService, IdempotentResponse
from funnel_core.jobs import ProcessingJobService
from funnel_core.navigation import Navigator
from funnel_core.resolver import FunnelResolver

__all__ = [
    "AssessmentEngine",
    "FunnelCatalog",
    "FunnelError",
    "FunnelResolver",
    "IdempotencyService",
    "IdempotentResponse",
    "Navigator",
    "ProcessingJobService",
    "RuleEvaluator",
]
