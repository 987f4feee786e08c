"""Session orchestration: admission, per-provider lane driving, stale repair and finalize hand-off."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable

from loguru import logger

from deep_research.config import settings
from deep_research.errors import ProviderResultWriteBlocked, SessionNotFound, StaleProviderResultWrite
from deep_research.agents.finalizer import ReportFinalizer
from deep_research.agents.transitions import move_session
from deep_research.models.payloads import DeepResearchJob, build_deep_research_job
from deep_research.models.records import ProviderResult, ProviderResultWrite, ResearchRun, SessionRecord
from deep_research.models.states import (
    PROVIDERS,
    ProviderStatus,
    RunState,
    SessionState,
    is_terminal_provider_status,
    is_terminal_run,
)
from deep_research.models.user_settings import UserSettings
from deep_research.research_core.pipeline import ResearchRunPipeline
from deep_research.services import logger as log_service
from deep_research.services.lane import LaneTaskResult, OrchestratorState
from deep_research.services.locks import hold, provider_queue_lock, session_run_lock
from deep_research.services.memory_store import utcnow
from deep_research.tools.email_sender import build_email_sender
from deep_research.tools.pdf_report import build_report_renderer
from deep_research.tools.providers import PROVIDER_LABELS, ResearchProvider

QUEUED_TOO_LONG = "Provider work was queued too long (likely interrupted). Retry to run again."
RUNNING_INTERRUPTED = "Provider work was interrupted (no progress within timeout). Retry to run again."
DRIVE_GRACE_SECONDS = 5 * 60


@dataclass(frozen=True, slots=True)
class RunOptions:
    skip_openai: bool = False
    skip_gemini: bool = False

    def skips(self, provider: str) -> bool:
        return self.skip_openai if provider == "openai" else self.skip_gemini


class SessionOrchestrator:
    """Advances sessions through research and hands finished ones to the finalizer.

    Provider work only ever executes inside a provider lane task, so each
    provider runs at most one research step at a time across all sessions.
    """

    def __init__(
        self,
        state: OrchestratorState,
        providers: dict[str, ResearchProvider],
        pipeline: ResearchRunPipeline | None = None,
        finalizer: ReportFinalizer | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state = state
        self.store = state.store
        self.locker = state.locker
        self.providers = providers
        self.pipeline = pipeline or ResearchRunPipeline(self.store, self.locker, providers)
        self.finalizer = finalizer or ReportFinalizer(
            self.store, self.locker, providers, build_report_renderer(), build_email_sender()
        )
        self._sleep = sleep

    # --- Entry points ---

    async def run_providers(self, session_id: str, options: RunOptions | None = None) -> bool:
        """Admit and drive both providers for a session.

        Returns False when another caller already holds the session or the
        session is not in a state that runs research.
        """
        options = options or RunOptions()
        async with hold(self.locker, session_run_lock(session_id)) as handle:
            if handle is None:
                logger.info(f"run_providers skipped for {session_id}: session lock busy")
                return False

            session = await self._require_session(session_id)
            if session.state == SessionState.AGGREGATING.value:
                pass
            elif session.state != SessionState.RUNNING_RESEARCH.value:
                return False
            else:
                await self.repair_stale_results(session)
                user_settings = await self.store.get_user_settings(session.user_id)
                drivers = []
                for provider in PROVIDERS:
                    if await self._admit(session, provider, options, user_settings):
                        drivers.append(self._drive(session.id, provider, user_settings))
                if drivers:
                    await asyncio.gather(*drivers)

        await self._finish_if_terminal(session_id)
        return True

    async def sync_session(self, session_id: str, drive: bool = True) -> None:
        """Bring a session up to date.

        With ``drive=False`` only stale repair and the finalize hand-off run.
        Lane tasks use that form so they never wait on their own lane.
        """
        session = await self._require_session(session_id)
        if session.state == SessionState.AGGREGATING.value:
            await self.finalizer.finalize_report(session_id)
            return
        if session.state != SessionState.RUNNING_RESEARCH.value:
            return
        await self.repair_stale_results(session)
        if drive:
            await self.run_providers(session_id)
        else:
            await self._finish_if_terminal(session_id)

    async def retry_session(self, session_id: str, options: RunOptions | None = None) -> bool:
        session = await self._require_session(session_id)
        if session.state == SessionState.AGGREGATING.value:
            await self.finalizer.finalize_report(session_id)
            return True
        return await self.run_providers(session_id, options)

    # --- Admission ---

    async def _admit(
        self, session: SessionRecord, provider: str, options: RunOptions, user_settings: UserSettings
    ) -> bool:
        result = await self.store.get_provider_result(session.id, provider)
        if result is not None and is_terminal_provider_status(result.status):
            return False

        now = utcnow()
        if options.skips(provider):
            await self._write_result(
                ProviderResultWrite(
                    session_id=session.id,
                    provider=provider,
                    status=ProviderStatus.SKIPPED.value,
                    completed_at=now,
                    error_message=f"{PROVIDER_LABELS[provider]} skipped for this session",
                )
            )
            return False

        run = await self._ensure_run(session, provider, result, user_settings)
        if result is None or result.status not in (ProviderStatus.QUEUED.value, ProviderStatus.RUNNING.value):
            await self._write_result(
                ProviderResultWrite(
                    session_id=session.id,
                    provider=provider,
                    status=ProviderStatus.QUEUED.value,
                    model_run_id=run.id,
                    queued_at=now,
                )
            )
        elif result.model_run_id is None:
            await self._write_result(
                ProviderResultWrite(session_id=session.id, provider=provider, status=result.status, model_run_id=run.id)
            )
        return True

    async def _ensure_run(
        self, session: SessionRecord, provider: str, result: ProviderResult | None, user_settings: UserSettings
    ) -> ResearchRun:
        if result is not None and result.model_run_id:
            run = await self.store.get_research_run(result.model_run_id)
            if run is not None:
                return run
        latest = await self.store.get_latest_research_run(session.id, provider)
        if latest is not None and not is_terminal_run(latest.state):
            return latest
        question = session.refined_prompt or session.topic
        return await self.pipeline.start_run(session.id, provider, question, user_settings)

    # --- Lane driving ---

    async def _drive(self, session_id: str, provider: str, user_settings: UserSettings) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + user_settings.timeout_minutes(provider) * 60 + DRIVE_GRACE_SECONDS
        lane = self.state.lane(provider)

        while True:
            result = await self.store.get_provider_result(session_id, provider)
            if result is None or is_terminal_provider_status(result.status):
                return
            if loop.time() >= deadline:
                await self._time_out(result)
                return

            run = await self.store.get_research_run(result.model_run_id) if result.model_run_id else None
            job = build_deep_research_job(
                topic_id=session_id,
                model_run_id=result.model_run_id or session_id,
                provider=provider,
                attempt=run.attempt if run else 1,
            )
            outcome = await lane.enqueue(job, lambda: self.process_provider_queue(provider))
            if not outcome.did_work or outcome.retry_after_s:
                await self._sleep(outcome.retry_after_s or settings.lane_poll_interval_seconds)

    async def _time_out(self, result: ProviderResult) -> None:
        message = f"{PROVIDER_LABELS[result.provider]} research timed out"
        logger.warning(f"{message} for session {result.session_id}")
        await self._write_result(
            ProviderResultWrite(
                session_id=result.session_id,
                provider=result.provider,
                status=ProviderStatus.FAILED.value,
                completed_at=utcnow(),
                error_code="timeout",
                error_message=message,
            )
        )
        if result.model_run_id:
            await self.store.update_research_run(
                result.model_run_id, completed=True, state=RunState.FAILED.value, error_message=message
            )

    async def process_provider_queue(self, provider: str) -> LaneTaskResult:
        """Advance the provider's oldest running result, else its oldest queued one, by one tick."""
        target: ProviderResult | None = None
        async with hold(self.locker, provider_queue_lock(provider)) as handle:
            if handle is None:
                return LaneTaskResult(terminal=False, did_work=False)

            target = await self.store.get_running_provider_result(provider)
            if target is None:
                target = await self.store.get_next_queued_provider_result(provider)
            if target is None:
                return LaneTaskResult(terminal=True, did_work=False)

            session = await self.store.get_session(target.session_id)
            if session is None or not session.refined_prompt:
                await self._fail_result(target, "Refined prompt missing", error_code="missing_prompt")
                outcome = LaneTaskResult(terminal=True)
            elif target.model_run_id is None:
                await self._fail_result(target, "Provider result has no research run", error_code="missing_run")
                outcome = LaneTaskResult(terminal=True)
            else:
                run = await self.store.get_research_run(target.model_run_id)
                job = build_deep_research_job(
                    topic_id=target.session_id,
                    model_run_id=target.model_run_id,
                    provider=provider,
                    attempt=run.attempt if run else 1,
                )
                outcome = await self.process_deep_research_job(job)

        if outcome.terminal:
            await self.sync_session(target.session_id, drive=False)
        return outcome

    async def process_deep_research_job(self, job: DeepResearchJob) -> LaneTaskResult:
        run = await self.store.get_research_run(job.model_run_id)
        if run is None:
            await self._write_result(
                ProviderResultWrite(
                    session_id=job.topic_id,
                    provider=job.provider,
                    status=ProviderStatus.FAILED.value,
                    completed_at=utcnow(),
                    error_code="missing_run",
                    error_message=f"Research run {job.model_run_id} not found",
                )
            )
            self._transition("failed", job, message="research run not found")
            return LaneTaskResult(terminal=True)

        mismatches = []
        if run.session_id != job.topic_id:
            mismatches.append(f"topic_id mismatch: run.session_id={run.session_id}, job.topic_id={job.topic_id}")
        if run.provider != job.provider:
            mismatches.append(f"provider mismatch: run.provider={run.provider}, job.provider={job.provider}")
        if mismatches:
            return await self._reject_mismatch(job, run, "Deep research job/model mismatch: " + "; ".join(mismatches))

        result = await self.store.get_provider_result(job.topic_id, job.provider)
        if result is not None and is_terminal_provider_status(result.status):
            return LaneTaskResult(terminal=True, did_work=False)

        if result is None or result.status == ProviderStatus.QUEUED.value:
            await self._write_result(
                ProviderResultWrite(
                    session_id=job.topic_id,
                    provider=job.provider,
                    status=ProviderStatus.RUNNING.value,
                    model_run_id=run.id,
                    started_at=utcnow(),
                )
            )
            self._transition("started", job)

        tick = await self.pipeline.tick(run.id)
        now = utcnow()

        if tick.done:
            if tick.state == RunState.DONE.value:
                finished = await self.store.get_research_run(run.id) or run
                await self._write_result(
                    ProviderResultWrite(
                        session_id=job.topic_id,
                        provider=job.provider,
                        status=ProviderStatus.COMPLETED.value,
                        model_run_id=run.id,
                        output_text=finished.synthesized_report_md,
                        sources_json=finished.synthesized_sources,
                        completed_at=now,
                        last_polled_at=now,
                    )
                )
                self._transition("completed", job, status=tick.state)
            else:
                await self._write_result(
                    ProviderResultWrite(
                        session_id=job.topic_id,
                        provider=job.provider,
                        status=ProviderStatus.FAILED.value,
                        model_run_id=run.id,
                        completed_at=now,
                        last_polled_at=now,
                        error_code="research_failed",
                        error_message=tick.error or "Research run failed",
                    )
                )
                self._transition("failed", job, status=tick.state, message=tick.error)
            return LaneTaskResult(terminal=True)

        await self._write_result(
            ProviderResultWrite(
                session_id=job.topic_id,
                provider=job.provider,
                status=ProviderStatus.RUNNING.value,
                model_run_id=run.id,
                last_polled_at=now,
                external_id=tick.external_id,
                external_status=tick.external_status,
            )
        )
        if tick.external_status:
            self._transition("polled", job, provider_response_id=tick.external_id, status=tick.external_status)
        retry_after = settings.lane_poll_interval_seconds if (tick.external_status or tick.error) else 0.0
        return LaneTaskResult(terminal=False, retry_after_s=retry_after)

    async def _reject_mismatch(self, job: DeepResearchJob, run: ResearchRun, message: str) -> LaneTaskResult:
        await self.store.update_research_run(run.id, completed=True, state=RunState.FAILED.value, error_message=message)
        # No model_run_id on this write: the job's run belongs to someone else.
        await self._write_result(
            ProviderResultWrite(
                session_id=job.topic_id,
                provider=job.provider,
                status=ProviderStatus.FAILED.value,
                completed_at=utcnow(),
                error_code="integrity",
                error_message=message,
            )
        )
        self._transition("guard_failed", job, message=message)
        log_service.log_integrity_error(
            "job_model_mismatch", message, topic_id=job.topic_id, model_run_id=job.model_run_id, provider=job.provider
        )
        return LaneTaskResult(terminal=True)

    # --- Stale repair ---

    async def repair_stale_results(self, session: SessionRecord) -> int:
        """Fail queued or non-resumable running results that have gone quiet for too long."""
        user_settings = await self.store.get_user_settings(session.user_id)
        threshold = timedelta(seconds=user_settings.stale_after_seconds)
        now = utcnow()
        repaired = 0

        for result in await self.store.list_provider_results(session.id):
            if result.status == ProviderStatus.QUEUED.value and result.started_at is None:
                last_seen = result.last_polled_at or result.queued_at or session.updated_at
                message = QUEUED_TOO_LONG
            elif result.status == ProviderStatus.RUNNING.value and not self.providers[result.provider].supports_resume:
                last_seen = result.last_polled_at or result.started_at or session.updated_at
                message = RUNNING_INTERRUPTED
            else:
                continue
            if last_seen is None or now - last_seen <= threshold:
                continue

            written = await self._fail_result(result, message, error_code="stale")
            if written is not None and result.model_run_id:
                await self.store.update_research_run(
                    result.model_run_id, completed=True, state=RunState.FAILED.value, error_message=message
                )
            log_service.log_event(
                "stale_repair", message, session_id=session.id, provider=result.provider, previous=result.status
            )
            repaired += 1
        return repaired

    # --- Helpers ---

    async def _finish_if_terminal(self, session_id: str) -> None:
        session = await self.store.get_session(session_id)
        if session is None:
            return
        if session.state == SessionState.RUNNING_RESEARCH.value:
            results = await self.store.list_provider_results(session_id)
            if len(results) < len(PROVIDERS) or not all(is_terminal_provider_status(r.status) for r in results):
                return
            await move_session(self.store, session, SessionState.AGGREGATING)
            session = await self.store.get_session(session_id)
            if session is None:
                return
        if session.state == SessionState.AGGREGATING.value:
            await self.finalizer.finalize_report(session_id)

    async def _fail_result(self, result: ProviderResult, message: str, *, error_code: str) -> ProviderResult | None:
        return await self._write_result(
            ProviderResultWrite(
                session_id=result.session_id,
                provider=result.provider,
                status=ProviderStatus.FAILED.value,
                completed_at=utcnow(),
                error_code=error_code,
                error_message=message,
            )
        )

    async def _write_result(self, write: ProviderResultWrite) -> ProviderResult | None:
        try:
            return await self.store.upsert_provider_result(write)
        except StaleProviderResultWrite as e:
            logger.info(str(e))
            return None
        except ProviderResultWriteBlocked as e:
            log_service.log_integrity_error(
                "provider_result_write_blocked",
                str(e),
                session_id=e.session_id,
                provider=e.provider,
                stored_run_id=e.stored_run_id,
                incoming_run_id=e.incoming_run_id,
            )
            raise

    async def _require_session(self, session_id: str) -> SessionRecord:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    @staticmethod
    def _transition(event: str, job: DeepResearchJob, **kwargs) -> None:
        log_service.log_deep_research_transition(
            event,
            topic_id=job.topic_id,
            model_run_id=job.model_run_id,
            provider=job.provider,
            job_id=job.job_id,
            attempt=job.attempt,
            **kwargs,
        )
