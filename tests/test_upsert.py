"""Tests for the insert-or-fetch primitive and unique-violation detection."""

import pytest
from sqlalchemy.exc import IntegrityError

from funnel_db.upsert import DuplicateRowError, insert_or_fetch, is_unique_violation


class _PgError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


def _integrity(orig):
    return IntegrityError("INSERT INTO t VALUES (...)", {}, orig)


class TestIsUniqueViolation:
    def test_unique_sqlstate(self):
        assert is_unique_violation(_integrity(_PgError("dup", sqlstate="23505")))

    def test_foreign_key_is_not_unique(self):
        assert not is_unique_violation(_integrity(_PgError("fk", sqlstate="23503")))

    def test_falls_back_to_message(self):
        exc = _integrity(Exception('duplicate key value violates unique constraint "x"'))
        assert is_unique_violation(exc)


class _Calls:
    """Scripted insert/fetch callables that record how often they ran."""

    def __init__(self, inserts, fetches):
        self._inserts = list(inserts)
        self._fetches = list(fetches)
        self.insert_calls = 0
        self.fetch_calls = 0

    async def insert(self):
        self.insert_calls += 1
        outcome = self._inserts.pop(0)
        if outcome is DuplicateRowError:
            raise DuplicateRowError("t")
        return outcome

    async def fetch(self):
        self.fetch_calls += 1
        return self._fetches.pop(0)


class TestInsertOrFetch:
    @pytest.mark.asyncio
    async def test_insert_wins(self):
        calls = _Calls(["new"], [])
        assert await insert_or_fetch(calls.insert, calls.fetch) == ("new", True)
        assert calls.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_conflict_returns_existing_row(self):
        calls = _Calls([DuplicateRowError], ["existing"])
        assert await insert_or_fetch(calls.insert, calls.fetch) == ("existing", False)

    @pytest.mark.asyncio
    async def test_vanished_row_retries_insert(self):
        calls = _Calls([DuplicateRowError, "second"], [None])
        row, created = await insert_or_fetch(calls.insert, calls.fetch, delay=0)
        assert (row, created) == ("second", True)
        assert calls.insert_calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        calls = _Calls([DuplicateRowError] * 3, [None] * 3)
        with pytest.raises(DuplicateRowError):
            await insert_or_fetch(calls.insert, calls.fetch, attempts=3, delay=0)
        assert calls.insert_calls == 3
        assert calls.fetch_calls == 3

    @pytest.mark.asyncio
    async def test_raises_the_last_conflict(self):
        conflicts = [DuplicateRowError("t"), DuplicateRowError("t")]

        async def insert():
            raise conflicts.pop(0)

        async def fetch():
            return None

        last = conflicts[-1]
        with pytest.raises(DuplicateRowError) as info:
            await insert_or_fetch(insert, fetch, attempts=2, delay=0)
        assert info.value is last
        assert info.value.table == "t"

    @pytest.mark.asyncio
    async def test_non_positive_attempts_still_tries_once(self):
        calls = _Calls([DuplicateRowError], [None])
        with pytest.raises(DuplicateRowError):
            await insert_or_fetch(calls.insert, calls.fetch, attempts=0, delay=0)
        assert calls.insert_calls == 1
        assert calls.fetch_calls == 1

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        async def insert():
            raise RuntimeError("connection lost")

        async def fetch():
            return "unused"

        with pytest.raises(RuntimeError):
            await insert_or_fetch(insert, fetch)
