from __future__ import annotations

import copy
import itertools
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from deep_research.config import settings
from deep_research.errors import ProviderResultWriteBlocked, StaleProviderResultWrite
from deep_research.models.records import (
    Citation,
    Evidence,
    ProviderResult,
    ProviderResultWrite,
    RefinementQuestion,
    Report,
    ResearchRun,
    ResearchStep,
    SessionRecord,
)
from deep_research.models.states import is_terminal_provider_status
from deep_research.models.user_settings import UserSettings, default_user_settings

RUN_UPDATE_FIELDS = {
    "state",
    "research_plan",
    "progress",
    "current_step_index",
    "max_steps",
    "synthesized_report_md",
    "synthesized_sources",
    "error_message",
}

STEP_UPDATE_FIELDS = {
    "step_type",
    "provider",
    "model",
    "step_goal",
    "inputs_summary",
    "raw_output",
    "output_excerpt",
    "sources",
    "evidence",
    "next_step_proposal",
    "token_usage",
    "error_message",
}

_PROVIDER_WRITE_FIELDS = (
    "model_run_id",
    "output_text",
    "sources_json",
    "queued_at",
    "started_at",
    "completed_at",
    "error_code",
    "error_message",
    "external_id",
    "external_status",
    "last_polled_at",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Store(Protocol):
    # --- Users / settings ---
    async def ensure_user(self, email: str, name: str | None = None) -> str: ...
    async def get_user_email(self, user_id: str) -> str | None: ...
    async def get_user_settings(self, user_id: str) -> UserSettings: ...

    # --- Sessions ---
    async def create_session(self, user_id: str, topic: str) -> SessionRecord: ...
    async def get_session(self, session_id: str) -> SessionRecord | None: ...
    async def transition_session(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
        *,
        refined_prompt: str | None = None,
        refined_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> SessionRecord | None: ...
    async def update_refined_prompt(self, session_id: str, refined_prompt: str) -> None: ...

    # --- Refinement questions ---
    async def create_questions(self, session_id: str, questions: list[str]) -> None: ...
    async def list_questions(self, session_id: str) -> list[RefinementQuestion]: ...
    async def answer_question(self, question_id: str, answer: str) -> RefinementQuestion | None: ...
    async def get_next_question(self, session_id: str) -> RefinementQuestion | None: ...

    # --- Provider results ---
    async def upsert_provider_result(self, write: ProviderResultWrite) -> ProviderResult: ...
    async def get_provider_result(self, session_id: str, provider: str) -> ProviderResult | None: ...
    async def list_provider_results(self, session_id: str) -> list[ProviderResult]: ...
    async def get_running_provider_result(self, provider: str) -> ProviderResult | None: ...
    async def get_next_queued_provider_result(self, provider: str) -> ProviderResult | None: ...

    # --- Research runs ---
    async def create_research_run(self, run: ResearchRun) -> ResearchRun: ...
    async def get_research_run(self, run_id: str) -> ResearchRun | None: ...
    async def get_latest_research_run(self, session_id: str, provider: str) -> ResearchRun | None: ...
    async def update_research_run(self, run_id: str, *, completed: bool = False, **fields: Any) -> ResearchRun | None: ...
    async def upsert_research_step(
        self,
        run_id: str,
        step_index: int,
        status: str,
        *,
        started: bool = False,
        completed: bool = False,
        **fields: Any,
    ) -> ResearchStep: ...
    async def list_research_steps(self, run_id: str) -> list[ResearchStep]: ...
    async def upsert_research_sources(self, run_id: str, step_id: str | None, citations: list[Citation]) -> None: ...
    async def list_research_sources(self, run_id: str) -> list[Citation]: ...
    async def upsert_research_evidence(self, run_id: str, step_id: str | None, evidence: list[Evidence]) -> None: ...
    async def list_research_evidence(self, run_id: str) -> list[Evidence]: ...

    # --- Reports ---
    async def get_latest_report(self, session_id: str) -> Report | None: ...
    async def list_reports(self, session_id: str) -> list[Report]: ...
    async def create_report(
        self, session_id: str, summary_text: str, pdf_bytes: bytes | None, email_status: str = "pending"
    ) -> Report: ...
    async def update_report_content(self, report_id: str, summary_text: str, pdf_bytes: bytes | None) -> Report | None: ...
    async def update_report_email(
        self,
        report_id: str,
        email_status: str,
        *,
        sent_at: datetime | None = None,
        email_error: str | None = None,
    ) -> None: ...
    async def claim_report_send(self, session_id: str) -> str | None: ...


def check_provider_write(existing: ProviderResult, write: ProviderResultWrite) -> None:
    """Apply the run-id guard, then the monotonic-status guard, to an upsert against ``existing``."""
    if (
        write.model_run_id is not None
        and existing.model_run_id is not None
        and write.model_run_id != existing.model_run_id
    ):
        raise ProviderResultWriteBlocked(
            write.session_id, write.provider, existing.model_run_id, write.model_run_id
        )
    if is_terminal_provider_status(existing.status) and write.status != existing.status:
        raise StaleProviderResultWrite(write.session_id, write.provider, existing.status, write.status)


class InMemoryStore:
    """Process-local store with the same guards as the Postgres store.

    Every method finishes its read-modify-write without awaiting, so each call
    is atomic with respect to other tasks on the event loop.
    """

    def __init__(self) -> None:
        self._users: dict[str, dict[str, Any]] = {}
        self._user_settings: dict[str, UserSettings] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._questions: dict[str, RefinementQuestion] = {}
        self._provider_results: dict[tuple[str, str], ProviderResult] = {}
        self._runs: dict[str, ResearchRun] = {}
        self._steps: dict[tuple[str, int], ResearchStep] = {}
        self._sources: dict[str, dict[str, Citation]] = {}
        self._evidence: dict[str, dict[str, Evidence]] = {}
        self._reports: dict[str, Report] = {}
        self._report_seq = itertools.count()
        self._report_order: dict[str, int] = {}

    # --- Users / settings ---

    async def ensure_user(self, email: str, name: str | None = None) -> str:
        for user_id, user in self._users.items():
            if user["email"] == email:
                return user_id
        user_id = str(uuid4())
        self._users[user_id] = {"email": email, "name": name}
        return user_id

    async def get_user_email(self, user_id: str) -> str | None:
        user = self._users.get(user_id)
        return user["email"] if user else None

    async def get_user_settings(self, user_id: str) -> UserSettings:
        return self._user_settings.get(user_id) or default_user_settings()

    def set_user_settings(self, user_id: str, user_settings: UserSettings) -> None:
        self._user_settings[user_id] = user_settings

    # --- Sessions ---

    async def create_session(self, user_id: str, topic: str) -> SessionRecord:
        now = utcnow()
        record = SessionRecord(
            id=str(uuid4()),
            user_id=user_id,
            topic=topic,
            state="draft",
            created_at=now,
            updated_at=now,
        )
        self._sessions[record.id] = record
        return replace(record)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        record = self._sessions.get(session_id)
        return replace(record) if record else None

    async def transition_session(
        self,
        session_id: str,
        from_state: str,
        to_state: str,
        *,
        refined_prompt: str | None = None,
        refined_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> SessionRecord | None:
        record = self._sessions.get(session_id)
        if record is None or record.state != from_state:
            return None
        record.state = to_state
        if refined_prompt is not None:
            record.refined_prompt = refined_prompt
        if refined_at is not None:
            record.refined_at = refined_at
        if completed_at is not None and record.completed_at is None:
            record.completed_at = completed_at
        record.updated_at = utcnow()
        return replace(record)

    async def update_refined_prompt(self, session_id: str, refined_prompt: str) -> None:
        record = self._sessions.get(session_id)
        if record is not None:
            record.refined_prompt = refined_prompt
            record.updated_at = utcnow()

    # --- Refinement questions ---

    async def create_questions(self, session_id: str, questions: list[str]) -> None:
        existing = {q.sequence for q in self._questions.values() if q.session_id == session_id}
        for index, text in enumerate(questions, start=1):
            if index in existing:
                continue
            question = RefinementQuestion(
                id=str(uuid4()), session_id=session_id, sequence=index, question_text=text
            )
            self._questions[question.id] = question

    async def list_questions(self, session_id: str) -> list[RefinementQuestion]:
        rows = [replace(q) for q in self._questions.values() if q.session_id == session_id]
        return sorted(rows, key=lambda q: q.sequence)

    async def answer_question(self, question_id: str, answer: str) -> RefinementQuestion | None:
        question = self._questions.get(question_id)
        if question is None:
            return None
        question.answer_text = answer
        question.answered_at = utcnow()
        question.is_complete = True
        return replace(question)

    async def get_next_question(self, session_id: str) -> RefinementQuestion | None:
        for question in await self.list_questions(session_id):
            if not question.is_complete:
                return question
        return None

    # --- Provider results ---

    async def upsert_provider_result(self, write: ProviderResultWrite) -> ProviderResult:
        key = (write.session_id, write.provider)
        existing = self._provider_results.get(key)
        if existing is None:
            row = ProviderResult(
                id=str(uuid4()),
                session_id=write.session_id,
                provider=write.provider,
                status=write.status,
                **{name: getattr(write, name) for name in _PROVIDER_WRITE_FIELDS},
            )
            self._provider_results[key] = row
            return replace(row)

        check_provider_write(existing, write)
        existing.status = write.status
        for name in _PROVIDER_WRITE_FIELDS:
            value = getattr(write, name)
            if value is not None:
                setattr(existing, name, copy.deepcopy(value))
        return replace(existing)

    async def get_provider_result(self, session_id: str, provider: str) -> ProviderResult | None:
        row = self._provider_results.get((session_id, provider))
        return replace(row) if row else None

    async def list_provider_results(self, session_id: str) -> list[ProviderResult]:
        rows = [replace(r) for (sid, _), r in self._provider_results.items() if sid == session_id]
        return sorted(rows, key=lambda r: r.provider)

    async def get_running_provider_result(self, provider: str) -> ProviderResult | None:
        running = [r for r in self._provider_results.values() if r.provider == provider and r.status == "running"]
        if not running:
            return None
        far_future = datetime.max.replace(tzinfo=timezone.utc)
        running.sort(key=lambda r: (r.started_at or far_future, r.id))
        return replace(running[0])

    async def get_next_queued_provider_result(self, provider: str) -> ProviderResult | None:
        queued = [r for r in self._provider_results.values() if r.provider == provider and r.status == "queued"]
        if not queued:
            return None
        # NULLS FIRST on queued_at, then id
        queued.sort(key=lambda r: (r.queued_at is not None, r.queued_at or datetime.min.replace(tzinfo=timezone.utc), r.id))
        return replace(queued[0])

    # --- Research runs ---

    async def create_research_run(self, run: ResearchRun) -> ResearchRun:
        attempts = [
            r.attempt for r in self._runs.values() if r.session_id == run.session_id and r.provider == run.provider
        ]
        now = utcnow()
        created = replace(
            run,
            id=run.id or str(uuid4()),
            attempt=max(attempts, default=0) + 1,
            created_at=now,
            updated_at=now,
        )
        self._runs[created.id] = created
        return replace(created)

    async def get_research_run(self, run_id: str) -> ResearchRun | None:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def get_latest_research_run(self, session_id: str, provider: str) -> ResearchRun | None:
        runs = [r for r in self._runs.values() if r.session_id == session_id and r.provider == provider]
        if not runs:
            return None
        runs.sort(key=lambda r: (r.attempt, r.created_at))
        return copy.deepcopy(runs[-1])

    async def update_research_run(self, run_id: str, *, completed: bool = False, **fields: Any) -> ResearchRun | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        for name, value in fields.items():
            if name not in RUN_UPDATE_FIELDS or value is None:
                continue
            if name == "current_step_index":
                value = max(run.current_step_index, int(value))
            setattr(run, name, copy.deepcopy(value))
        if completed and run.completed_at is None:
            run.completed_at = utcnow()
        run.updated_at = utcnow()
        return copy.deepcopy(run)

    async def upsert_research_step(
        self,
        run_id: str,
        step_index: int,
        status: str,
        *,
        started: bool = False,
        completed: bool = False,
        **fields: Any,
    ) -> ResearchStep:
        key = (run_id, step_index)
        step = self._steps.get(key)
        if step is None:
            step = ResearchStep(
                id=str(uuid4()),
                run_id=run_id,
                step_index=step_index,
                step_type=fields.get("step_type") or "",
                status=status,
                provider=fields.get("provider") or "",
            )
            self._steps[key] = step
        step.status = status
        for name, value in fields.items():
            if name in STEP_UPDATE_FIELDS and value is not None:
                setattr(step, name, copy.deepcopy(value))
        if status == "done":
            step.error_message = None
        if started and step.started_at is None:
            step.started_at = utcnow()
        if completed:
            step.completed_at = utcnow()
        return copy.deepcopy(step)

    async def list_research_steps(self, run_id: str) -> list[ResearchStep]:
        steps = [copy.deepcopy(s) for (rid, _), s in self._steps.items() if rid == run_id]
        return sorted(steps, key=lambda s: s.step_index)

    async def upsert_research_sources(self, run_id: str, step_id: str | None, citations: list[Citation]) -> None:
        by_url = self._sources.setdefault(run_id, {})
        for citation in citations:
            if citation.url not in by_url:
                by_url[citation.url] = replace(citation)

    async def list_research_sources(self, run_id: str) -> list[Citation]:
        return [replace(c) for c in self._sources.get(run_id, {}).values()]

    async def upsert_research_evidence(self, run_id: str, step_id: str | None, evidence: list[Evidence]) -> None:
        by_id = self._evidence.setdefault(run_id, {})
        for item in evidence:
            by_id[item.evidence_id] = replace(item)

    async def list_research_evidence(self, run_id: str) -> list[Evidence]:
        return [replace(e) for e in self._evidence.get(run_id, {}).values()]

    # --- Reports ---

    def _session_reports(self, session_id: str) -> list[Report]:
        reports = [r for r in self._reports.values() if r.session_id == session_id]
        return sorted(reports, key=lambda r: self._report_order[r.id], reverse=True)

    async def get_latest_report(self, session_id: str) -> Report | None:
        reports = self._session_reports(session_id)
        return replace(reports[0]) if reports else None

    async def list_reports(self, session_id: str) -> list[Report]:
        return [replace(r) for r in self._session_reports(session_id)]

    async def create_report(
        self, session_id: str, summary_text: str, pdf_bytes: bytes | None, email_status: str = "pending"
    ) -> Report:
        report = Report(
            id=str(uuid4()),
            session_id=session_id,
            summary_text=summary_text,
            pdf_bytes=pdf_bytes,
            email_status=email_status,
            created_at=utcnow(),
        )
        self._reports[report.id] = report
        self._report_order[report.id] = next(self._report_seq)
        return replace(report)

    async def update_report_content(self, report_id: str, summary_text: str, pdf_bytes: bytes | None) -> Report | None:
        report = self._reports.get(report_id)
        if report is None or report.email_status == "sent":
            return None
        report.summary_text = summary_text
        report.pdf_bytes = pdf_bytes
        return replace(report)

    async def update_report_email(
        self,
        report_id: str,
        email_status: str,
        *,
        sent_at: datetime | None = None,
        email_error: str | None = None,
    ) -> None:
        report = self._reports.get(report_id)
        if report is None:
            return
        report.email_status = email_status
        if sent_at is not None:
            report.sent_at = sent_at
        report.email_error = email_error

    async def claim_report_send(self, session_id: str) -> str | None:
        reports = self._session_reports(session_id)
        if any(r.email_status in ("sent", "sending") for r in reports):
            return None
        for report in reports:
            if report.email_status in ("pending", "failed"):
                report.email_status = "sending"
                return report.id
        return None

    def dump(self) -> dict[str, Any]:
        """Snapshot for debugging and CLI output."""
        return {
            "sessions": [asdict(s) for s in self._sessions.values()],
            "provider_results": [asdict(r) for r in self._provider_results.values()],
            "reports": [
                {**asdict(r), "pdf_bytes": len(r.pdf_bytes) if r.pdf_bytes else 0} for r in self._reports.values()
            ],
        }


_store: Store | None = None


def get_store() -> Store:
    global _store
    if _store is None:
        if settings.database_url:
            from deep_research.services.database import PostgresStore

            _store = PostgresStore()
        else:
            _store = InMemoryStore()
    return _store
