"""Tests for the per-provider lane queue."""
import asyncio

import pytest

from deep_research.errors import LaneProviderMismatch
from deep_research.models.payloads import build_deep_research_job
from deep_research.services.lane import LaneQueue, LaneTaskResult, OrchestratorState, lane_name
from deep_research.services.locks import InProcessLocker
from deep_research.services.memory_store import InMemoryStore


def job(provider="openai", run="r1", attempt=1):
    return build_deep_research_job(topic_id="s1", model_run_id=run, provider=provider, attempt=attempt)


@pytest.mark.asyncio
async def test_duplicate_idempotency_key_executes_once():
    lane = LaneQueue(lane_name("openai"), "openai")
    calls = 0
    gate = asyncio.Event()

    async def task():
        nonlocal calls
        calls += 1
        await gate.wait()
        return LaneTaskResult(terminal=True)

    first = lane.enqueue(job(), task)
    second = lane.enqueue(job(), task)
    assert first is second
    gate.set()
    results = await asyncio.gather(first, second)
    assert calls == 1
    assert all(r.terminal for r in results)
    assert lane.pending_keys == []


@pytest.mark.asyncio
async def test_lane_runs_one_job_at_a_time_in_order():
    lane = LaneQueue(lane_name("gemini"), "gemini")
    active = 0
    peak = 0
    order = []

    def make(n):
        async def task():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            order.append(n)
            await asyncio.sleep(0)
            active -= 1
            return LaneTaskResult(terminal=False)

        return task

    futures = [lane.enqueue(job("gemini", run=f"r{n}"), make(n)) for n in range(4)]
    await asyncio.gather(*futures)
    assert peak == 1
    assert order == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_different_lanes_overlap():
    state = OrchestratorState(store=InMemoryStore(), locker=InProcessLocker())
    both_running = asyncio.Event()
    running = set()

    def make(provider):
        async def task():
            running.add(provider)
            if len(running) == 2:
                both_running.set()
            await asyncio.wait_for(both_running.wait(), timeout=1)
            return LaneTaskResult(terminal=True)

        return task

    await asyncio.gather(
        state.lane("openai").enqueue(job("openai"), make("openai")),
        state.lane("gemini").enqueue(job("gemini"), make("gemini")),
    )
    assert running == {"openai", "gemini"}


@pytest.mark.asyncio
async def test_task_exception_propagates_and_frees_key():
    lane = LaneQueue(lane_name("openai"), "openai")

    async def failing():
        raise RuntimeError("provider exploded")

    with pytest.raises(RuntimeError):
        await lane.enqueue(job(), failing)
    assert lane.pending_keys == []
    assert lane.active == 0


@pytest.mark.asyncio
async def test_cancelled_task_settles_shared_future():
    lane = LaneQueue(lane_name("openai"), "openai")
    never = asyncio.Event()

    async def task():
        await never.wait()
        return LaneTaskResult(terminal=True)

    first = lane.enqueue(job(), task)
    second = lane.enqueue(job(), task)
    await asyncio.sleep(0)
    for worker in list(lane._tasks):
        worker.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(second, timeout=1)
    assert first.cancelled()
    assert lane.pending_keys == []
    assert lane.active == 0


@pytest.mark.asyncio
async def test_lane_rejects_other_provider():
    lane = LaneQueue(lane_name("openai"), "openai")

    async def task():
        return LaneTaskResult(terminal=True)

    with pytest.raises(LaneProviderMismatch):
        lane.enqueue(job("gemini"), task)


def test_invalid_concurrency():
    with pytest.raises(ValueError):
        LaneQueue("x", "openai", concurrency=0)
