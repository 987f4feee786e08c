"""Tick-driven research run pipeline.

A run walks PLAN -> (DISCOVER .. GAP_CHECK) x (gap_loops + 1) -> SYNTHESIS.
Each ``tick`` executes at most one step, so callers decide how long to keep
driving a run. ``current_step_index`` only moves forward: an extra gap loop
grows the schedule instead of rewinding the cursor.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from deep_research.config import settings
from deep_research.errors import ProviderError
from deep_research.models.records import ResearchRun, ResearchStep
from deep_research.models.states import RunState, StepStatus, is_terminal_run
from deep_research.models.user_settings import UserSettings, clamp
from deep_research.research_core.citations import (
    evidence_from_json,
    evidence_from_text,
    is_http_url,
    normalize_citations,
)
from deep_research.research_core.prompts import (
    build_step_prompt,
    compact_summary,
    fallback_plan,
    parse_json_object,
    step_label,
    step_type_at,
    summarize_prior_steps,
    total_steps,
)
from deep_research.research_core.step_config import STEP_SEQUENCE, get_provider_config
from deep_research.services import logger as log_service
from deep_research.services.locks import Locker, hold, provider_step_lock
from deep_research.services.memory_store import Store
from deep_research.tools.providers import PendingStep, ResearchProvider, StepOutput, StepRequest

RETRYABLE_MARKERS = ("429", "rate limit", "timeout", "timed out", "temporary failure", "connection", "try again")


@dataclass(frozen=True, slots=True)
class TickResult:
    state: str
    done: bool
    external_id: str | None = None
    external_status: str | None = None
    error: str | None = None


def is_retryable_error(error: Exception) -> bool:
    if isinstance(error, ProviderError):
        return error.retryable
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


def build_progress(step_index: int, gap_loops: int, **extra: Any) -> dict[str, Any]:
    total = total_steps(gap_loops)
    return {
        "step_id": step_type_at(step_index, gap_loops) if step_index < total else None,
        "step_index": step_index,
        "total_steps": total,
        "step_label": step_label(step_index, gap_loops),
        "gap_loops": gap_loops,
        **extra,
    }


class ResearchRunPipeline:
    def __init__(self, store: Store, locker: Locker, providers: dict[str, ResearchProvider]):
        self.store = store
        self.locker = locker
        self.providers = providers

    async def start_run(
        self, session_id: str, provider: str, question: str, user_settings: UserSettings
    ) -> ResearchRun:
        """Create a run with clamped budgets and queue its first step."""
        cfg = get_provider_config(provider)
        run = await self.store.create_research_run(
            ResearchRun(
                id="",
                session_id=session_id,
                provider=provider,
                question=question,
                state=RunState.NEW.value,
                depth=user_settings.research_depth,
                max_steps=total_steps(0),
                target_sources_per_step=clamp(user_settings.research_target_sources_per_step, 1, 25),
                max_total_sources=clamp(user_settings.research_max_total_sources, 5, 400),
                max_tokens_per_step=clamp(user_settings.research_max_tokens_per_step, 300, 8000),
                min_word_count=user_settings.word_target,
                progress=build_progress(0, 0),
            )
        )
        first = STEP_SEQUENCE[0]
        await self.store.upsert_research_step(
            run.id,
            0,
            StepStatus.QUEUED.value,
            step_type=first,
            provider=provider,
            model=cfg.model_for(first),
        )
        updated = await self.store.update_research_run(run.id, state=RunState.PLANNED.value)
        log_service.log_research_step(run.id, first, "queued", {"session_id": session_id, "attempt": run.attempt})
        return updated or run

    async def tick(self, run_id: str) -> TickResult:
        """Execute at most one pending step of ``run_id``."""
        run = await self.store.get_research_run(run_id)
        if run is None:
            return TickResult(state=RunState.FAILED.value, done=True, error=f"Research run {run_id} not found")
        if is_terminal_run(run.state):
            return TickResult(state=run.state, done=True, error=run.error_message)

        session = await self.store.get_session(run.session_id)
        if session is None:
            return await self._fail_run(run, "Session not found for research run")

        gap_loops = int(run.progress.get("gap_loops", 0) or 0)
        index = run.current_step_index
        steps = {s.step_index: s for s in await self.store.list_research_steps(run.id)}

        if run.state != RunState.IN_PROGRESS.value:
            await self.store.update_research_run(run.id, state=RunState.IN_PROGRESS.value)

        previous = steps.get(index - 1)
        if index > 0 and (previous is None or previous.status != StepStatus.DONE.value):
            await self.store.update_research_run(
                run.id, progress={**build_progress(index, gap_loops), "blocked_on": index - 1}
            )
            return TickResult(state=RunState.IN_PROGRESS.value, done=False)

        current = steps.get(index)
        if current is not None and current.status == StepStatus.DONE.value:
            await self.store.update_research_run(
                run.id, current_step_index=index + 1, progress=build_progress(index + 1, gap_loops)
            )
            return TickResult(state=RunState.IN_PROGRESS.value, done=False)

        step_type = step_type_at(index, gap_loops)
        async with hold(self.locker, provider_step_lock(run.provider)) as handle:
            if handle is None:
                logger.debug(f"Provider step lock busy for {run.provider}; run {run.id} step {index} stays queued")
                await self._queue_step(run, index, step_type)
                return TickResult(state=RunState.IN_PROGRESS.value, done=False)
            user_settings = await self.store.get_user_settings(session.user_id)
            return await self._execute(run, index, gap_loops, step_type, steps, user_settings)

    # --- Step execution ---

    async def _queue_step(self, run: ResearchRun, index: int, step_type: str) -> ResearchStep:
        cfg = get_provider_config(run.provider)
        return await self.store.upsert_research_step(
            run.id,
            index,
            StepStatus.QUEUED.value,
            step_type=step_type,
            provider=run.provider,
            model=cfg.model_for(step_type),
        )

    async def _execute(
        self,
        run: ResearchRun,
        index: int,
        gap_loops: int,
        step_type: str,
        steps: dict[int, ResearchStep],
        user_settings: UserSettings,
    ) -> TickResult:
        cfg = get_provider_config(run.provider)
        step_cfg = cfg.steps[step_type]
        model = cfg.model_for(step_type)
        max_tokens = max(300, min(run.max_tokens_per_step, step_cfg.max_output_tokens))

        prior = [steps[i] for i in sorted(steps) if i < index and steps[i].status == StepStatus.DONE.value]
        step_prompt = build_step_prompt(
            step_type,
            question=run.question,
            prior_summary=summarize_prior_steps(prior),
            plan=run.research_plan,
            max_candidates=cfg.max_candidates,
            shortlist_size=cfg.shortlist_size,
        )
        resume_id = run.progress.get("pending_external_id")

        await self.store.upsert_research_step(
            run.id,
            index,
            StepStatus.RUNNING.value,
            started=True,
            step_type=step_type,
            provider=run.provider,
            model=model,
            step_goal=f"Execute {step_type.lower().replace('_', ' ')}",
            inputs_summary=compact_summary(
                f"{step_type} | sourceTarget={run.target_sources_per_step} | maxTokens={max_tokens}"
            ),
        )
        log_service.log_research_step(run.id, step_type, "running", {"step_index": index, "model": model})

        request = StepRequest(
            run_id=run.id,
            step_type=step_type,
            step_index=index,
            question=run.question,
            prompt=step_prompt.prompt,
            model=model,
            model_tier=step_cfg.model_tier,
            max_output_tokens=max_tokens,
            timeout_ms=user_settings.timeout_ms(run.provider),
            max_sources=user_settings.max_sources,
            plan=run.research_plan,
            external_id=resume_id,
        )

        try:
            outcome = await self.providers[run.provider].run_step(request)
        except Exception as e:
            if is_retryable_error(e):
                return await self._record_transient_failure(run, index, gap_loops, step_type, e)
            logger.error(f"Research step {step_type} failed for run {run.id}: {e}")
            return await self._fail_run(run, str(e), step_index=index)

        if isinstance(outcome, PendingStep):
            await self.store.update_research_run(
                run.id,
                progress=build_progress(
                    index,
                    gap_loops,
                    pending_external_id=outcome.external_id,
                    external_status=outcome.external_status,
                ),
            )
            log_service.log_research_step(
                run.id, step_type, "pending", {"external_id": outcome.external_id, "status": outcome.external_status}
            )
            return TickResult(
                state=RunState.IN_PROGRESS.value,
                done=False,
                external_id=outcome.external_id,
                external_status=outcome.external_status,
            )

        return await self._complete_step(run, index, gap_loops, step_type, step_prompt.expects_json, outcome)

    async def _complete_step(
        self,
        run: ResearchRun,
        index: int,
        gap_loops: int,
        step_type: str,
        expects_json: bool,
        outcome: StepOutput,
    ) -> TickResult:
        cfg = get_provider_config(run.provider)
        text = outcome.text or ""
        citations = normalize_citations(run.provider, text, outcome.raw_sources, cfg.max_candidates)
        evidence = evidence_from_text(text, citations)
        parsed = parse_json_object(text) if expects_json else None
        plan: dict[str, Any] | None = None
        next_step_proposal: str | None = None

        if step_type == "DEVELOP_RESEARCH_PLAN":
            plan = parsed or fallback_plan(run.question)
            evidence = []
        elif step_type == "SHORTLIST_RESULTS":
            shortlisted = {
                item["url"]
                for item in (parsed or {}).get("shortlist") or []
                if isinstance(item, dict) and is_http_url(item.get("url"))
            }
            if shortlisted:
                citations = [c for c in citations if c.url in shortlisted]
            evidence = []
        elif step_type == "EXTRACT_EVIDENCE":
            if parsed and isinstance(parsed.get("evidence"), list):
                evidence = evidence_from_json(parsed["evidence"], citations)
        elif step_type == "GAP_CHECK":
            follow_ups = (parsed or {}).get("follow_up_queries")
            next_step_proposal = f"follow_up_queries={len(follow_ups) if isinstance(follow_ups, list) else 0}"
            if (parsed or {}).get("severe_gaps") is True and gap_loops < cfg.max_gap_loops:
                gap_loops += 1
                logger.info(f"Run {run.id} scheduled gap loop {gap_loops} of {cfg.max_gap_loops}")
        elif step_type == "SECTION_SYNTHESIS":
            evidence = []

        existing = await self.store.list_research_sources(run.id)
        known = {c.url for c in existing}
        room = max(0, run.max_total_sources - len(known))
        fresh = [c for c in citations if c.url not in known][:room]

        step = await self.store.upsert_research_step(
            run.id,
            index,
            StepStatus.DONE.value,
            completed=True,
            step_type=step_type,
            raw_output=text,
            output_excerpt=compact_summary(text),
            sources=[asdict(c) for c in citations],
            evidence=[asdict(e) for e in evidence],
            next_step_proposal=next_step_proposal,
            token_usage=outcome.usage,
        )
        if fresh:
            await self.store.upsert_research_sources(run.id, step.id, fresh)
        if evidence:
            await self.store.upsert_research_evidence(run.id, step.id, evidence)
        log_service.log_research_step(
            run.id, step_type, "done", {"step_index": index, "sources": len(citations), "evidence": len(evidence)}
        )

        next_index = index + 1
        if step_type == "SECTION_SYNTHESIS":
            synthesized = citations or await self.store.list_research_sources(run.id)
            await self.store.update_research_run(
                run.id,
                completed=True,
                state=RunState.DONE.value,
                current_step_index=next_index,
                progress=build_progress(next_index, gap_loops),
                synthesized_report_md=text,
                synthesized_sources=[asdict(c) for c in synthesized],
            )
            return TickResult(state=RunState.DONE.value, done=True, external_id=outcome.external_id)

        next_state = RunState.PLANNED if step_type == "DEVELOP_RESEARCH_PLAN" else RunState.IN_PROGRESS
        await self.store.update_research_run(
            run.id,
            state=next_state.value,
            research_plan=plan,
            current_step_index=next_index,
            max_steps=total_steps(gap_loops),
            progress=build_progress(next_index, gap_loops),
        )
        await self._queue_step(run, next_index, step_type_at(next_index, gap_loops))
        return TickResult(state=next_state.value, done=False, external_id=outcome.external_id)

    async def _record_transient_failure(
        self, run: ResearchRun, index: int, gap_loops: int, step_type: str, error: Exception
    ) -> TickResult:
        failures = int(run.progress.get("transient_failures", 0) or 0) + 1
        if failures >= settings.max_transient_step_failures:
            message = f"{step_type} failed after {failures} transient errors: {error}"
            return await self._fail_run(run, message, step_index=index)

        logger.warning(f"Transient error on {step_type} for run {run.id} ({failures}): {error}")
        await self.store.upsert_research_step(
            run.id, index, StepStatus.QUEUED.value, step_type=step_type, error_message=str(error)
        )
        await self.store.update_research_run(
            run.id,
            error_message=str(error),
            progress=build_progress(
                index,
                gap_loops,
                transient_failures=failures,
                pending_external_id=run.progress.get("pending_external_id"),
            ),
        )
        return TickResult(state=RunState.IN_PROGRESS.value, done=False, error=str(error))

    async def _fail_run(self, run: ResearchRun, message: str, *, step_index: int | None = None) -> TickResult:
        if step_index is not None:
            await self.store.upsert_research_step(
                run.id, step_index, StepStatus.FAILED.value, completed=True, error_message=message
            )
        await self.store.update_research_run(run.id, completed=True, state=RunState.FAILED.value, error_message=message)
        log_service.log_research_step(run.id, run.progress.get("step_id") or "unknown", "failed", {"error": message})
        return TickResult(state=RunState.FAILED.value, done=True, error=message)
