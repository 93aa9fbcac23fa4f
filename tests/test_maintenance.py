"""Tests for the funnel-maintenance CLI.

The session factory and the services' maintenance methods are patched, so
nothing here touches PostgreSQL.
"""

import pytest

from helpers.mocks import MockDB

from funnel_core.idempotency import IdempotencyService
from funnel_core.jobs import ProcessingJobService
from funnel_server import maintenance


class _Session(MockDB):
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture
def session(monkeypatch):
    sess = _Session()
    disposed = []

    async def fake_dispose():
        disposed.append(True)

    monkeypatch.setattr("funnel_db.engine.get_session_factory", lambda: lambda: sess)
    monkeypatch.setattr("funnel_db.engine.dispose_engine", fake_dispose)
    sess.disposed = disposed
    return sess


@pytest.fixture
def patched_services(monkeypatch):
    calls = {}

    async def fake_purge(self, db):
        calls["purge"] = True
        return 4

    async def fake_sweep(self, db, *, limit, correlation_id=None):
        calls["limit"] = limit
        return ["job-a", "job-b"]

    monkeypatch.setattr(IdempotencyService, "purge_expired", fake_purge)
    monkeypatch.setattr(ProcessingJobService, "sweep_missing_jobs", fake_sweep)
    return calls


class TestRunMaintenance:
    @pytest.mark.asyncio
    async def test_runs_selected_operations(self, session, patched_services):
        results = await maintenance.run_maintenance(
            purge_idempotency=True, sweep_jobs=True, limit=5
        )
        assert results == {"purged_idempotency_keys": 4, "created_jobs": 2}
        assert patched_services["limit"] == 5
        assert session.commits == 1
        assert session.disposed == [True]

    @pytest.mark.asyncio
    async def test_purge_only(self, session, patched_services):
        results = await maintenance.run_maintenance(purge_idempotency=True)
        assert results == {"purged_idempotency_keys": 4}
        assert "limit" not in patched_services


class TestCli:
    def test_requires_an_operation(self, monkeypatch):
        monkeypatch.setattr("sys.argv", ["funnel-maintenance"])
        with pytest.raises(SystemExit) as exc_info:
            maintenance.cli()
        assert exc_info.value.code == 2

    def test_prints_counts(self, monkeypatch, session, patched_services, capsys):
        monkeypatch.setattr("sys.argv", ["funnel-maintenance", "--sweep-jobs", "--limit", "7"])
        with pytest.raises(SystemExit) as exc_info:
            maintenance.cli()
        assert exc_info.value.code == 0
        assert "created_jobs: 2" in capsys.readouterr().out
        assert patched_services["limit"] == 7
