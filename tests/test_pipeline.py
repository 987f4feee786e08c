"""Research run pipeline: step schedule, gap loops, transient failures and resumable steps."""
import pytest

from deep_research.errors import PermanentProviderError, TransientProviderError
from deep_research.models.states import RunState, StepStatus
from deep_research.models.user_settings import UserSettings
from deep_research.research_core.pipeline import ResearchRunPipeline, is_retryable_error
from deep_research.research_core.step_config import STEP_SEQUENCE
from deep_research.services.locks import provider_step_lock
from deep_research.tools.providers import PendingStep, StubResearchProvider


class FlakyProvider(StubResearchProvider):
    def __init__(self, name: str, failures: int, error: Exception):
        super().__init__(name)
        self.failures = failures
        self.error = error

    async def run_step(self, request):
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return await super().run_step(request)


class BackgroundProvider(StubResearchProvider):
    """Hands back a pending job for the plan step, then finishes it on resume."""

    def __init__(self, name: str):
        super().__init__(name)
        self.external_ids: list[str | None] = []

    async def run_step(self, request):
        self.external_ids.append(request.external_id)
        if request.step_type == "DEVELOP_RESEARCH_PLAN" and request.external_id is None:
            return PendingStep(external_id="resp_42", external_status="queued")
        return await super().run_step(request)


async def _start(store, locker, provider):
    user_id = await store.ensure_user("pipeline@example.com")
    session = await store.create_session(user_id, "Battery recycling economics")
    pipeline = ResearchRunPipeline(store, locker, {provider.name: provider})
    run = await pipeline.start_run(session.id, provider.name, "Battery recycling economics", UserSettings())
    return pipeline, run


async def _drive(pipeline, run_id, limit=50):
    ticks = []
    for _ in range(limit):
        result = await pipeline.tick(run_id)
        ticks.append(result)
        if result.done:
            break
    return ticks


class TestFullRun:
    @pytest.mark.asyncio
    async def test_runs_every_step_once_and_synthesizes(self, store, locker):
        provider = StubResearchProvider("openai")
        pipeline, run = await _start(store, locker, provider)
        assert run.state == RunState.PLANNED.value

        ticks = await _drive(pipeline, run.id)

        run = await store.get_research_run(run.id)
        assert ticks[-1].state == RunState.DONE.value
        assert provider.calls == list(STEP_SEQUENCE)
        assert run.state == RunState.DONE.value
        assert run.current_step_index == 8
        assert run.synthesized_report_md.startswith("# Battery recycling economics")
        assert run.research_plan["sections"]
        assert run.completed_at is not None

        steps = await store.list_research_steps(run.id)
        assert [s.step_index for s in steps] == list(range(8))
        assert all(s.status == StepStatus.DONE.value for s in steps)

        urls = {c.url for c in await store.list_research_sources(run.id)}
        assert urls == {"https://example.org/openai/source-1", "https://example.org/openai/source-2"}
        evidence = await store.list_research_evidence(run.id)
        assert any(e.claim == "Battery recycling economics has measurable outcomes" for e in evidence)

    @pytest.mark.asyncio
    async def test_terminal_run_ticks_are_no_ops(self, store, locker):
        provider = StubResearchProvider("gemini")
        pipeline, run = await _start(store, locker, provider)
        await _drive(pipeline, run.id)
        calls = len(provider.calls)

        result = await pipeline.tick(run.id)

        assert result.done
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_missing_run_reports_failure(self, store, locker):
        pipeline = ResearchRunPipeline(store, locker, {})
        result = await pipeline.tick("nope")
        assert result.done
        assert result.state == RunState.FAILED.value


@pytest.mark.asyncio
async def test_severe_gaps_grow_the_schedule_up_to_the_loop_cap(store, locker):
    provider = StubResearchProvider("openai", severe_gaps=True)
    pipeline, run = await _start(store, locker, provider)

    await _drive(pipeline, run.id)

    run = await store.get_research_run(run.id)
    assert run.state == RunState.DONE.value
    assert provider.calls.count("GAP_CHECK") == 3
    assert provider.calls.count("DISCOVER_SOURCES_WITH_PLAN") == 3
    assert provider.calls[-1] == "SECTION_SYNTHESIS"
    assert len(provider.calls) == 20
    assert run.max_steps == 20
    assert run.progress["gap_loops"] == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_errors_keep_step_queued_until_limit(self, store, locker):
        provider = FlakyProvider("openai", failures=10, error=TransientProviderError("429 rate limit"))
        pipeline, run = await _start(store, locker, provider)

        ticks = await _drive(pipeline, run.id)

        assert [t.done for t in ticks] == [False, False, False, False, True]
        run = await store.get_research_run(run.id)
        assert run.state == RunState.FAILED.value
        assert "5 transient errors" in run.error_message
        steps = await store.list_research_steps(run.id)
        assert steps[0].status == StepStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self, store, locker):
        provider = FlakyProvider("openai", failures=2, error=TransientProviderError("timeout"))
        pipeline, run = await _start(store, locker, provider)

        ticks = await _drive(pipeline, run.id)

        assert ticks[0].error == "timeout"
        run = await store.get_research_run(run.id)
        assert run.state == RunState.DONE.value
        assert "transient_failures" not in run.progress

    @pytest.mark.asyncio
    async def test_permanent_error_fails_immediately(self, store, locker):
        provider = FlakyProvider("openai", failures=1, error=PermanentProviderError("401 unauthorized key"))
        pipeline, run = await _start(store, locker, provider)

        ticks = await _drive(pipeline, run.id)

        assert len(ticks) == 1
        assert ticks[0].state == RunState.FAILED.value
        assert (await store.get_research_run(run.id)).error_message == "401 unauthorized key"

    def test_plain_errors_classified_by_message(self):
        assert is_retryable_error(RuntimeError("Connection reset by peer"))
        assert not is_retryable_error(ValueError("bad schema"))


@pytest.mark.asyncio
async def test_pending_step_resumes_with_external_id(store, locker):
    provider = BackgroundProvider("openai")
    pipeline, run = await _start(store, locker, provider)

    first = await pipeline.tick(run.id)
    assert not first.done
    assert first.external_id == "resp_42"
    assert (await store.get_research_run(run.id)).progress["pending_external_id"] == "resp_42"

    await _drive(pipeline, run.id)

    assert provider.external_ids[:3] == [None, "resp_42", None]
    run = await store.get_research_run(run.id)
    assert run.state == RunState.DONE.value


@pytest.mark.asyncio
async def test_busy_provider_step_lock_leaves_step_queued(store, locker):
    provider = StubResearchProvider("gemini")
    pipeline, run = await _start(store, locker, provider)

    async with locker.hold(provider_step_lock("gemini")):
        result = await pipeline.tick(run.id)

    assert not result.done
    assert provider.calls == []
    steps = await store.list_research_steps(run.id)
    assert steps[0].status == StepStatus.QUEUED.value
