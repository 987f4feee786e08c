"""Tests for named try-locks."""
import pytest

from deep_research.services.locks import (
    InProcessLocker,
    PostgresAdvisoryLocker,
    finalize_lock,
    hold,
    provider_queue_lock,
    session_run_lock,
)


@pytest.mark.asyncio
async def test_try_acquire_never_blocks():
    locker = InProcessLocker()
    first = await locker.try_acquire("session_run:1")
    assert first is not None
    assert await locker.try_acquire("session_run:1") is None
    assert await locker.try_acquire("session_run:2") is not None
    await locker.release(first)
    assert await locker.try_acquire("session_run:1") is not None


@pytest.mark.asyncio
async def test_hold_releases_on_error():
    locker = InProcessLocker()
    with pytest.raises(RuntimeError):
        async with hold(locker, "finalize:1") as handle:
            assert handle is not None
            raise RuntimeError("boom")
    assert not locker.is_held("finalize:1")


@pytest.mark.asyncio
async def test_hold_yields_none_when_busy():
    locker = InProcessLocker()
    async with locker.hold("gemini_queue") as outer:
        async with locker.hold("gemini_queue") as inner:
            assert outer is not None
            assert inner is None
        assert locker.is_held("gemini_queue")


def test_lock_names():
    assert session_run_lock("abc") == "session_run:abc"
    assert provider_queue_lock("openai") == "openai_queue"
    assert finalize_lock("abc") == "finalize:abc"


class FakeConnection:
    def __init__(self, acquired: bool = True, fail_on: str | None = None):
        self.acquired = acquired
        self.fail_on = fail_on
        self.queries: list[tuple[str, str]] = []

    async def fetchval(self, query: str, name: str):
        self.queries.append((query, name))
        if self.fail_on and self.fail_on in query:
            raise ConnectionError("connection lost")
        if "pg_try_advisory_lock" in query:
            return self.acquired
        return True


class FakePool:
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.acquired = 0
        self.released: list[FakeConnection] = []

    async def acquire(self):
        self.acquired += 1
        return self.conn

    async def release(self, conn):
        self.released.append(conn)


def _advisory(conn: FakeConnection) -> tuple[PostgresAdvisoryLocker, FakePool]:
    pool = FakePool(conn)

    async def pool_factory():
        return pool

    return PostgresAdvisoryLocker(pool_factory), pool


class TestPostgresAdvisoryLocker:
    @pytest.mark.asyncio
    async def test_connection_stays_checked_out_while_held(self):
        locker, pool = _advisory(FakeConnection())

        async with locker.hold("session_run:1") as handle:
            assert handle is not None
            assert handle.conn is pool.conn
            assert pool.released == []

        assert pool.released == [pool.conn]
        assert "pg_advisory_unlock" in pool.conn.queries[-1][0]
        assert handle.conn is None

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        locker, pool = _advisory(FakeConnection())
        handle = await locker.try_acquire("finalize:1")

        await locker.release(handle)
        await locker.release(handle)

        assert pool.released == [pool.conn]

    @pytest.mark.asyncio
    async def test_busy_lock_returns_connection(self):
        locker, pool = _advisory(FakeConnection(acquired=False))

        assert await locker.try_acquire("openai_queue") is None
        assert pool.acquired == 1
        assert pool.released == [pool.conn]

    @pytest.mark.asyncio
    async def test_failed_try_acquire_returns_connection(self):
        locker, pool = _advisory(FakeConnection(fail_on="pg_try_advisory_lock"))

        with pytest.raises(ConnectionError):
            await locker.try_acquire("gemini_queue")
        assert pool.released == [pool.conn]

    @pytest.mark.asyncio
    async def test_unlock_error_still_returns_connection(self):
        locker, pool = _advisory(FakeConnection(fail_on="pg_advisory_unlock"))
        handle = await locker.try_acquire("session_run:2")

        await locker.release(handle)

        assert pool.released == [pool.conn]
        assert handle.conn is None
