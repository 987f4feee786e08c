"""Named, non-blocking mutual exclusion across orchestrator invocations."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from loguru import logger

from deep_research.config import settings


@dataclass(slots=True)
class LockHandle:
    name: str
    conn: Any = field(default=None, repr=False)


class Locker(Protocol):
    async def try_acquire(self, name: str) -> LockHandle | None: ...
    async def release(self, handle: LockHandle) -> None: ...


@asynccontextmanager
async def hold(locker: Locker, name: str) -> AsyncIterator[LockHandle | None]:
    """Yield the handle, or None when somebody else holds ``name``."""
    handle = await locker.try_acquire(name)
    try:
        yield handle
    finally:
        if handle is not None:
            await locker.release(handle)


class InProcessLocker:
    """Lock set shared by tasks on one event loop. Not safe across processes."""

    def __init__(self) -> None:
        self._held: set[str] = set()

    async def try_acquire(self, name: str) -> LockHandle | None:
        if name in self._held:
            return None
        self._held.add(name)
        return LockHandle(name=name)

    async def release(self, handle: LockHandle) -> None:
        self._held.discard(handle.name)

    def is_held(self, name: str) -> bool:
        return name in self._held

    def hold(self, name: str):
        return hold(self, name)


class PostgresAdvisoryLocker:
    """Session-level advisory locks. The connection stays checked out while held."""

    def __init__(self, pool_factory=None) -> None:
        if pool_factory is None:
            from deep_research.services.database import _get_pool

            pool_factory = _get_pool
        self._pool_factory = pool_factory

    async def try_acquire(self, name: str) -> LockHandle | None:
        pool = await self._pool_factory()
        conn = await pool.acquire()
        try:
            acquired = await conn.fetchval("SELECT pg_try_advisory_lock(hashtext($1))", name)
        except BaseException:
            await pool.release(conn)
            raise
        if not acquired:
            await pool.release(conn)
            return None
        return LockHandle(name=name, conn=conn)

    async def release(self, handle: LockHandle) -> None:
        if handle.conn is None:
            return
        pool = await self._pool_factory()
        try:
            await handle.conn.fetchval("SELECT pg_advisory_unlock(hashtext($1))", handle.name)
        except Exception as e:
            logger.warning(f"Advisory unlock failed for {handle.name}: {e}")
        finally:
            await pool.release(handle.conn)
            handle.conn = None

    def hold(self, name: str):
        return hold(self, name)


def build_locker() -> Locker:
    if settings.database_url:
        return PostgresAdvisoryLocker()
    logger.warning("DATABASE_URL not set; using in-process locks (single-process deployments only)")
    return InProcessLocker()


# Lock names

def session_run_lock(session_id: str) -> str:
    return f"session_run:{session_id}"


def provider_queue_lock(provider: str) -> str:
    return f"{provider}_queue"


def finalize_lock(session_id: str) -> str:
    return f"finalize:{session_id}"


def provider_step_lock(provider: str) -> str:
    return f"deep_research_provider:{provider}"
