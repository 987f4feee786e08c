"""Per-provider FIFO lanes with idempotent admission."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from deep_research.errors import LaneProviderMismatch
from deep_research.models.payloads import DeepResearchJob
from deep_research.models.states import PROVIDERS
from deep_research.services.locks import Locker, build_locker
from deep_research.services.memory_store import Store, get_store


@dataclass(frozen=True, slots=True)
class LaneTaskResult:
    terminal: bool
    did_work: bool = True
    retry_after_s: float = 0.0


LaneTask = Callable[[], Awaitable[LaneTaskResult]]


@dataclass(slots=True)
class _LaneEntry:
    job: DeepResearchJob
    task: LaneTask
    future: asyncio.Future


def lane_name(provider: str) -> str:
    return f"deep_research_queue_{provider}_lane_v1"


class LaneQueue:
    """Runs at most ``concurrency`` jobs at a time, in admission order.

    A job whose idempotency key is already pending shares the pending future
    instead of being queued again. The key is released once the job settles.
    """

    def __init__(self, name: str, provider: str, concurrency: int = 1):
        if concurrency < 1:
            raise ValueError(f"Invalid lane concurrency for {name}: {concurrency}")
        self.name = name
        self.provider = provider
        self.concurrency = concurrency
        self._queue: deque[_LaneEntry] = deque()
        self._pending: dict[str, asyncio.Future] = {}
        self._active = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def enqueue(self, job: DeepResearchJob, task: LaneTask) -> asyncio.Future:
        if job.provider != self.provider:
            raise LaneProviderMismatch(f"Lane {self.name} rejected provider {job.provider}; expected {self.provider}")

        key = job.idempotency_key or job.job_id
        existing = self._pending.get(key)
        if existing is not None:
            logger.debug(f"Lane {self.name} dedup hit for {key}")
            return existing

        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        self._queue.append(_LaneEntry(job=job, task=task, future=future))
        self._drain()
        return future

    def _drain(self) -> None:
        while self._active < self.concurrency and self._queue:
            entry = self._queue.popleft()
            self._active += 1
            worker = asyncio.create_task(self._run(entry))
            self._tasks.add(worker)
            worker.add_done_callback(self._tasks.discard)

    async def _run(self, entry: _LaneEntry) -> None:
        try:
            result = await entry.task()
        except Exception as e:
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            if not entry.future.done():
                entry.future.cancel()
            self._active -= 1
            self._pending.pop(entry.job.idempotency_key or entry.job.job_id, None)
            self._drain()


@dataclass
class OrchestratorState:
    """Process-wide lanes, locker and store. Built once and passed by reference."""

    store: Store
    locker: Locker
    lanes: dict[str, LaneQueue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for provider in PROVIDERS:
            self.lanes.setdefault(provider, LaneQueue(lane_name(provider), provider, concurrency=1))

    def lane(self, provider: str) -> LaneQueue:
        return self.lanes[provider]


def build_orchestrator_state() -> OrchestratorState:
    return OrchestratorState(store=get_store(), locker=build_locker())
