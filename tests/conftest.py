import pytest

from helpers.mocks import (
    MockAssessmentRepository,
    MockDB,
    MockFunnelRepository,
    MockIdempotencyRepository,
    MockJobRepository,
    make_funnel,
    make_other_funnel,
)

from funnel_core.catalog import FunnelCatalog
from funnel_core.engine import AssessmentEngine
from funnel_core.idempotency import IdempotencyService
from funnel_core.jobs import ProcessingJobService
from funnel_core.resolver import FunnelResolver


@pytest.fixture
def funnel():
    return make_funnel()


@pytest.fixture
def catalog(funnel):
    cat = FunnelCatalog(funnel_dir="unused")
    cat.add(funnel)
    cat.add(make_other_funnel())
    cat.add(make_funnel("paused-funnel", is_active=False))
    return cat


@pytest.fixture
def db():
    return MockDB()


@pytest.fixture
def job_repo():
    return MockJobRepository()


@pytest.fixture
def assessment_repo(job_repo):
    return MockAssessmentRepository(job_repo)


@pytest.fixture
def funnel_repo():
    return MockFunnelRepository()


@pytest.fixture
def jobs(job_repo, assessment_repo):
    svc = ProcessingJobService()
    svc._repo = job_repo
    svc._assessments = assessment_repo
    return svc


@pytest.fixture
def resolver(catalog, funnel_repo):
    res = FunnelResolver(catalog)
    res._repo = funnel_repo
    return res


@pytest.fixture
def engine(resolver, jobs, assessment_repo):
    eng = AssessmentEngine(resolver, jobs)
    eng._repo = assessment_repo
    return eng


@pytest.fixture
def idem_repo():
    return MockIdempotencyRepository()


@pytest.fixture
def idempotency(idem_repo):
    svc = IdempotencyService(poll_attempts=50, poll_interval=0.001)
    svc._repo = idem_repo
    return svc
