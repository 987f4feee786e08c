"""End-to-end session orchestration on the in-memory store with offline providers."""
import asyncio
from datetime import timedelta

import pytest

from deep_research.agents.orchestrator import QUEUED_TOO_LONG, RUNNING_INTERRUPTED, RunOptions
from deep_research.agents.finalizer import NO_MATERIAL_EMAIL_ERROR
from deep_research.errors import PermanentProviderError, SessionNotFound
from deep_research.models.payloads import build_deep_research_job
from deep_research.models.records import ProviderResultWrite
from deep_research.models.states import ProviderStatus, RunState, SessionState
from deep_research.models.user_settings import UserSettings
from deep_research.services.memory_store import utcnow
from deep_research.tools.providers import StubResearchProvider


class BrokenProvider(StubResearchProvider):
    async def run_step(self, request):
        self.calls.append(request.step_type)
        raise PermanentProviderError(f"{self.name} rejected the request")


class TestRunProviders:
    @pytest.mark.asyncio
    async def test_both_providers_complete_and_report_is_sent_once(
        self, store, orchestrator, providers, email_sender, running_session
    ):
        session = await running_session()

        assert await orchestrator.run_providers(session.id) is True

        session = await store.get_session(session.id)
        assert session.state == SessionState.COMPLETED.value
        assert session.completed_at is not None

        results = await store.list_provider_results(session.id)
        assert [r.status for r in results] == ["completed", "completed"]
        assert all(r.output_text and r.output_text.startswith("# ") for r in results)
        assert len(providers["openai"].calls) == 8
        assert len(providers["gemini"].calls) == 8

        reports = await store.list_reports(session.id)
        assert len(reports) == 1
        assert reports[0].email_status == "sent"
        assert reports[0].summary_text == "OpenAI: completed | Gemini: completed"
        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["to"] == "user@example.com"
        assert email_sender.sent[0]["attachment"].startswith(b"Stub PDF")

    @pytest.mark.asyncio
    async def test_second_call_after_completion_does_nothing(self, orchestrator, email_sender, running_session):
        session = await running_session()
        await orchestrator.run_providers(session.id)

        assert await orchestrator.run_providers(session.id) is False
        assert await orchestrator.retry_session(session.id) is False
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_calls_admit_exactly_one(self, store, orchestrator, providers, email_sender, running_session):
        session = await running_session()

        outcomes = await asyncio.gather(orchestrator.run_providers(session.id), orchestrator.run_providers(session.id))

        assert sorted(outcomes) == [False, True]
        assert len(providers["openai"].calls) == 8
        assert len(email_sender.sent) == 1
        assert (await store.get_session(session.id)).state == SessionState.COMPLETED.value

    @pytest.mark.asyncio
    async def test_draft_session_is_not_run(self, store, orchestrator):
        user_id = await store.ensure_user("draft@example.com")
        session = await store.create_session(user_id, "Draft topic")
        assert await orchestrator.run_providers(session.id) is False
        assert await store.list_provider_results(session.id) == []

    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, orchestrator):
        with pytest.raises(SessionNotFound):
            await orchestrator.sync_session("missing")


class TestPartialOutcomes:
    @pytest.mark.asyncio
    async def test_skipped_provider_makes_session_partial(
        self, store, orchestrator, providers, email_sender, running_session
    ):
        session = await running_session()

        await orchestrator.run_providers(session.id, RunOptions(skip_gemini=True))

        gemini = await store.get_provider_result(session.id, "gemini")
        assert gemini.status == ProviderStatus.SKIPPED.value
        assert providers["gemini"].calls == []
        assert (await store.get_session(session.id)).state == SessionState.PARTIAL.value
        assert len(email_sender.sent) == 1
        assert email_sender.sent[0]["body"] == "OpenAI: completed | Gemini: skipped"

    @pytest.mark.asyncio
    async def test_failed_provider_makes_session_partial(self, store, make_orchestrator, email_sender, running_session):
        providers = {"openai": StubResearchProvider("openai"), "gemini": BrokenProvider("gemini")}
        orchestrator = make_orchestrator(providers)
        session = await running_session()

        await orchestrator.run_providers(session.id)

        gemini = await store.get_provider_result(session.id, "gemini")
        assert gemini.status == ProviderStatus.FAILED.value
        assert gemini.error_code == "research_failed"
        assert gemini.error_message == "gemini rejected the request"
        assert providers["gemini"].calls == ["DEVELOP_RESEARCH_PLAN"]
        assert (await store.get_session(session.id)).state == SessionState.PARTIAL.value
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_provider_is_not_rerun_on_retry(self, store, make_orchestrator, running_session):
        providers = {"openai": StubResearchProvider("openai"), "gemini": BrokenProvider("gemini")}
        orchestrator = make_orchestrator(providers)
        session = await running_session()
        await orchestrator.run_providers(session.id)

        await orchestrator.retry_session(session.id)

        assert providers["gemini"].calls == ["DEVELOP_RESEARCH_PLAN"]

    @pytest.mark.asyncio
    async def test_no_material_fails_session_without_email(self, store, orchestrator, email_sender, running_session):
        session = await running_session()

        await orchestrator.run_providers(session.id, RunOptions(skip_openai=True, skip_gemini=True))

        assert (await store.get_session(session.id)).state == SessionState.FAILED.value
        report = await store.get_latest_report(session.id)
        assert report.email_status == "failed"
        assert report.email_error == NO_MATERIAL_EMAIL_ERROR
        assert email_sender.sent == []


class TestQueueProcessing:
    @pytest.mark.asyncio
    async def test_empty_queue_is_terminal_without_work(self, orchestrator):
        outcome = await orchestrator.process_provider_queue("openai")
        assert outcome.terminal
        assert not outcome.did_work

    @pytest.mark.asyncio
    async def test_missing_refined_prompt_fails_result(self, store, orchestrator):
        user_id = await store.ensure_user("noprompt@example.com")
        session = await store.create_session(user_id, "Topic")
        await store.transition_session(session.id, "draft", "refining")
        await store.transition_session(session.id, "refining", "running_research")
        await store.upsert_provider_result(
            ProviderResultWrite(session_id=session.id, provider="openai", status="queued", queued_at=utcnow())
        )

        outcome = await orchestrator.process_provider_queue("openai")

        assert outcome.terminal
        result = await store.get_provider_result(session.id, "openai")
        assert result.status == "failed"
        assert result.error_code == "missing_prompt"

    @pytest.mark.asyncio
    async def test_job_for_another_session_fails_closed(self, store, orchestrator, running_session):
        owner = await running_session("Owner topic")
        other = await running_session("Other topic", email="other@example.com")
        run = await orchestrator.pipeline.start_run(owner.id, "openai", "Owner topic", UserSettings())
        job = build_deep_research_job(topic_id=other.id, model_run_id=run.id, provider="openai", attempt=1)

        outcome = await orchestrator.process_deep_research_job(job)

        assert outcome.terminal
        run = await store.get_research_run(run.id)
        assert run.state == RunState.FAILED.value
        assert run.error_message.startswith("Deep research job/model mismatch: topic_id mismatch")
        result = await store.get_provider_result(other.id, "openai")
        assert result.status == "failed"
        assert result.error_code == "integrity"
        assert result.model_run_id is None

    @pytest.mark.asyncio
    async def test_job_with_wrong_provider_fails_closed(self, store, orchestrator, running_session):
        session = await running_session()
        run = await orchestrator.pipeline.start_run(session.id, "openai", "q", UserSettings())
        job = build_deep_research_job(topic_id=session.id, model_run_id=run.id, provider="gemini", attempt=1)

        await orchestrator.process_deep_research_job(job)

        run = await store.get_research_run(run.id)
        assert "provider mismatch: run.provider=openai, job.provider=gemini" in run.error_message


class TestStaleRepair:
    @pytest.mark.asyncio
    async def test_old_queued_and_running_results_are_failed(self, store, orchestrator, running_session):
        session = await running_session()
        long_ago = utcnow() - timedelta(hours=3)
        await store.upsert_provider_result(
            ProviderResultWrite(session_id=session.id, provider="openai", status="queued", queued_at=long_ago)
        )
        await store.upsert_provider_result(
            ProviderResultWrite(session_id=session.id, provider="gemini", status="running", started_at=long_ago)
        )

        assert await orchestrator.repair_stale_results(session) == 2

        openai = await store.get_provider_result(session.id, "openai")
        gemini = await store.get_provider_result(session.id, "gemini")
        assert (openai.status, openai.error_message) == ("failed", QUEUED_TOO_LONG)
        assert (gemini.status, gemini.error_message) == ("failed", RUNNING_INTERRUPTED)
        assert openai.error_code == "stale"

    @pytest.mark.asyncio
    async def test_fresh_results_are_left_alone(self, store, orchestrator, running_session):
        session = await running_session()
        await store.upsert_provider_result(
            ProviderResultWrite(session_id=session.id, provider="openai", status="queued", queued_at=utcnow())
        )
        assert await orchestrator.repair_stale_results(session) == 0

    @pytest.mark.asyncio
    async def test_sync_after_repair_finalizes_as_failed(self, store, orchestrator, email_sender, running_session):
        session = await running_session()
        long_ago = utcnow() - timedelta(hours=3)
        for provider in ("openai", "gemini"):
            await store.upsert_provider_result(
                ProviderResultWrite(session_id=session.id, provider=provider, status="queued", queued_at=long_ago)
            )

        await orchestrator.sync_session(session.id, drive=False)

        assert (await store.get_session(session.id)).state == SessionState.FAILED.value
        assert email_sender.sent == []


@pytest.mark.asyncio
async def test_retry_finalizes_aggregating_session(store, orchestrator, email_sender, running_session):
    session = await running_session()
    for provider in ("openai", "gemini"):
        await store.upsert_provider_result(
            ProviderResultWrite(
                session_id=session.id,
                provider=provider,
                status="completed",
                output_text=f"{provider} says see https://example.com/{provider}.",
                completed_at=utcnow(),
            )
        )
    await store.transition_session(session.id, "running_research", "aggregating")

    assert await orchestrator.retry_session(session.id) is True

    assert (await store.get_session(session.id)).state == SessionState.COMPLETED.value
    assert len(email_sender.sent) == 1
