"""PostgreSQL store using asyncpg."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg
from loguru import logger

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
    from_row,
)
from deep_research.models.user_settings import UserSettings, default_user_settings
from deep_research.services import logger as log_service
from deep_research.services.memory_store import RUN_UPDATE_FIELDS, STEP_UPDATE_FIELDS

# Connection pool
_pool: asyncpg.Pool | None = None

_JSON_RUN_FIELDS = {"research_plan", "progress", "synthesized_sources"}
_JSON_STEP_FIELDS = {"sources", "evidence", "token_usage"}

_SESSION_COLUMNS = "id, user_id, topic, state, refined_prompt, created_at, updated_at, refined_at, completed_at"
_PROVIDER_COLUMNS = (
    "id, session_id, provider, status, model_run_id, output_text, sources_json, queued_at, started_at, "
    "completed_at, error_code, error_message, external_id, external_status, last_polled_at"
)
_REPORT_COLUMNS = "id, session_id, summary_text, email_status, pdf_bytes, sent_at, email_error, created_at"


def _db_available() -> bool:
    """Check if database is configured."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON-string fields into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _coerce_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _run_from_row(row: asyncpg.Record) -> ResearchRun:
    data = dict(row)
    data["research_plan"] = _coerce_json(data.get("research_plan"))
    data["progress"] = _coerce_json_object(data.get("progress"))
    data["synthesized_sources"] = _coerce_json(data.get("synthesized_sources"))
    return from_row(ResearchRun, data)


def _step_from_row(row: asyncpg.Record) -> ResearchStep:
    data = dict(row)
    for name in _JSON_STEP_FIELDS:
        data[name] = _coerce_json(data.get(name))
    return from_row(ResearchStep, data)


def _provider_from_row(row: asyncpg.Record) -> ProviderResult:
    data = dict(row)
    data["sources_json"] = _coerce_json(data.get("sources_json"))
    return from_row(ProviderResult, data)


class PostgresStore:
    """Store backed by the schema in ``db/schema.sql``."""

    # --- Users / settings ---

    async def ensure_user(self, email: str, name: str | None = None) -> str:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            user_id = await conn.fetchval(
                """
                INSERT INTO users (email, name)
                VALUES ($1, $2)
                ON CONFLICT (email) DO UPDATE SET name = COALESCE(EXCLUDED.name, users.name)
                RETURNING id
                """,
                email,
                name,
            )
            return str(user_id)

    async def get_user_email(self, user_id: str) -> str | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT email FROM users WHERE id = $1::uuid", user_id)

    async def get_user_settings(self, user_id: str) -> UserSettings:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM user_settings WHERE user_id = $1::uuid", user_id)
        if row is None:
            return default_user_settings()
        data = {k: v for k, v in dict(row).items() if k in UserSettings.model_fields and v is not None}
        return UserSettings(**{**default_user_settings().model_dump(), **data})

    # --- Sessions ---

    async def create_session(self, user_id: str, topic: str) -> SessionRecord:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO research_sessions (user_id, topic, state)
                VALUES ($1::uuid, $2, 'draft')
                RETURNING {_SESSION_COLUMNS}
                """,
                user_id,
                topic,
            )
            return from_row(SessionRecord, dict(row))

    async def get_session(self, session_id: str) -> SessionRecord | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_SESSION_COLUMNS} FROM research_sessions WHERE id = $1::uuid", session_id
            )
            return from_row(SessionRecord, dict(row)) if row else None

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
        """Compare-and-set on the current state. Returns None when another writer got there first."""
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE research_sessions
                SET state = $3,
                    refined_prompt = COALESCE($4, refined_prompt),
                    refined_at = COALESCE($5, refined_at),
                    completed_at = COALESCE(completed_at, $6),
                    updated_at = now()
                WHERE id = $1::uuid AND state = $2
                RETURNING {_SESSION_COLUMNS}
                """,
                session_id,
                from_state,
                to_state,
                refined_prompt,
                refined_at,
                completed_at,
            )
        log_service.log_db_operation(
            "transition_session", "research_sessions", "applied" if row else "skipped", f"{from_state}->{to_state}"
        )
        return from_row(SessionRecord, dict(row)) if row else None

    async def update_refined_prompt(self, session_id: str, refined_prompt: str) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE research_sessions SET refined_prompt = $2, updated_at = now() WHERE id = $1::uuid",
                session_id,
                refined_prompt,
            )

    # --- Refinement questions ---

    async def create_questions(self, session_id: str, questions: list[str]) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO refinement_questions (session_id, sequence, question_text)
                VALUES ($1::uuid, $2, $3)
                ON CONFLICT (session_id, sequence) DO NOTHING
                """,
                [(session_id, index, text) for index, text in enumerate(questions, start=1)],
            )

    async def list_questions(self, session_id: str) -> list[RefinementQuestion]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM refinement_questions WHERE session_id = $1::uuid ORDER BY sequence", session_id
            )
            return [from_row(RefinementQuestion, dict(r)) for r in rows]

    async def answer_question(self, question_id: str, answer: str) -> RefinementQuestion | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE refinement_questions
                SET answer_text = $2, answered_at = now(), is_complete = true
                WHERE id = $1::uuid
                RETURNING *
                """,
                question_id,
                answer,
            )
            return from_row(RefinementQuestion, dict(row)) if row else None

    async def get_next_question(self, session_id: str) -> RefinementQuestion | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM refinement_questions
                WHERE session_id = $1::uuid AND is_complete = false
                ORDER BY sequence
                LIMIT 1
                """,
                session_id,
            )
            return from_row(RefinementQuestion, dict(row)) if row else None

    # --- Provider results ---

    async def upsert_provider_result(self, write: ProviderResultWrite) -> ProviderResult:
        """Guarded upsert on (session_id, provider).

        The row is only written when the run ids agree (or one side is null) and
        a terminal status is not being replaced by a different one. A blocked
        write is diagnosed against the stored row and raised.
        """
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO provider_results (
                    session_id, provider, status, model_run_id, output_text, sources_json,
                    queued_at, started_at, completed_at, error_code, error_message,
                    external_id, external_status, last_polled_at
                )
                VALUES ($1::uuid, $2, $3, $4::uuid, $5, $6::jsonb, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (session_id, provider) DO UPDATE SET
                    status = EXCLUDED.status,
                    model_run_id = COALESCE(EXCLUDED.model_run_id, provider_results.model_run_id),
                    output_text = COALESCE(EXCLUDED.output_text, provider_results.output_text),
                    sources_json = COALESCE(EXCLUDED.sources_json, provider_results.sources_json),
                    queued_at = COALESCE(EXCLUDED.queued_at, provider_results.queued_at),
                    started_at = COALESCE(EXCLUDED.started_at, provider_results.started_at),
                    completed_at = COALESCE(EXCLUDED.completed_at, provider_results.completed_at),
                    error_code = COALESCE(EXCLUDED.error_code, provider_results.error_code),
                    error_message = COALESCE(EXCLUDED.error_message, provider_results.error_message),
                    external_id = COALESCE(EXCLUDED.external_id, provider_results.external_id),
                    external_status = COALESCE(EXCLUDED.external_status, provider_results.external_status),
                    last_polled_at = COALESCE(EXCLUDED.last_polled_at, provider_results.last_polled_at)
                WHERE (
                    EXCLUDED.model_run_id IS NULL
                    OR provider_results.model_run_id IS NULL
                    OR provider_results.model_run_id = EXCLUDED.model_run_id
                ) AND (
                    provider_results.status NOT IN ('completed', 'failed', 'skipped')
                    OR provider_results.status = EXCLUDED.status
                )
                RETURNING {_PROVIDER_COLUMNS}
                """,
                write.session_id,
                write.provider,
                write.status,
                write.model_run_id,
                write.output_text,
                _dump(write.sources_json),
                write.queued_at,
                write.started_at,
                write.completed_at,
                write.error_code,
                write.error_message,
                write.external_id,
                write.external_status,
                write.last_polled_at,
            )
            if row is not None:
                return _provider_from_row(row)

            stored = await conn.fetchrow(
                "SELECT status, model_run_id FROM provider_results WHERE session_id = $1::uuid AND provider = $2",
                write.session_id,
                write.provider,
            )

        stored_run_id = str(stored["model_run_id"]) if stored and stored["model_run_id"] else None
        stored_status = stored["status"] if stored else "unknown"
        if write.model_run_id is not None and stored_run_id is not None and stored_run_id != write.model_run_id:
            raise ProviderResultWriteBlocked(write.session_id, write.provider, stored_run_id, write.model_run_id)
        raise StaleProviderResultWrite(write.session_id, write.provider, stored_status, write.status)

    async def get_provider_result(self, session_id: str, provider: str) -> ProviderResult | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_PROVIDER_COLUMNS} FROM provider_results WHERE session_id = $1::uuid AND provider = $2",
                session_id,
                provider,
            )
            return _provider_from_row(row) if row else None

    async def list_provider_results(self, session_id: str) -> list[ProviderResult]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_PROVIDER_COLUMNS} FROM provider_results WHERE session_id = $1::uuid ORDER BY provider",
                session_id,
            )
            return [_provider_from_row(r) for r in rows]

    async def get_running_provider_result(self, provider: str) -> ProviderResult | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_PROVIDER_COLUMNS} FROM provider_results
                WHERE provider = $1 AND status = 'running'
                ORDER BY started_at ASC NULLS LAST, id ASC
                LIMIT 1
                """,
                provider,
            )
            return _provider_from_row(row) if row else None

    async def get_next_queued_provider_result(self, provider: str) -> ProviderResult | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_PROVIDER_COLUMNS} FROM provider_results
                WHERE provider = $1 AND status = 'queued'
                ORDER BY queued_at ASC NULLS FIRST, id ASC
                LIMIT 1
                """,
                provider,
            )
            return _provider_from_row(row) if row else None

    # --- Research runs ---

    async def create_research_run(self, run: ResearchRun) -> ResearchRun:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO research_runs (
                    session_id, provider, question, state, attempt, mode, depth, research_plan, progress,
                    current_step_index, max_steps, target_sources_per_step, max_total_sources,
                    max_tokens_per_step, min_word_count
                )
                VALUES (
                    $1::uuid, $2, $3, $4,
                    (SELECT COALESCE(MAX(attempt), 0) + 1 FROM research_runs WHERE session_id = $1::uuid AND provider = $2),
                    $5, $6, $7::jsonb, $8::jsonb, $9, $10, $11, $12, $13, $14
                )
                RETURNING *
                """,
                run.session_id,
                run.provider,
                run.question,
                run.state,
                run.mode,
                run.depth,
                _dump(run.research_plan),
                json.dumps(run.progress or {}),
                run.current_step_index,
                run.max_steps,
                run.target_sources_per_step,
                run.max_total_sources,
                run.max_tokens_per_step,
                run.min_word_count,
            )
            return _run_from_row(row)

    async def get_research_run(self, run_id: str) -> ResearchRun | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM research_runs WHERE id = $1::uuid", run_id)
            return _run_from_row(row) if row else None

    async def get_latest_research_run(self, session_id: str, provider: str) -> ResearchRun | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM research_runs
                WHERE session_id = $1::uuid AND provider = $2
                ORDER BY attempt DESC, created_at DESC
                LIMIT 1
                """,
                session_id,
                provider,
            )
            return _run_from_row(row) if row else None

    async def update_research_run(self, run_id: str, *, completed: bool = False, **fields: Any) -> ResearchRun | None:
        updates = {k: v for k, v in fields.items() if k in RUN_UPDATE_FIELDS and v is not None}
        clauses = []
        values: list[Any] = [run_id]
        for name, value in updates.items():
            values.append(_dump(value) if name in _JSON_RUN_FIELDS else value)
            placeholder = f"${len(values)}"
            if name in _JSON_RUN_FIELDS:
                clauses.append(f"{name} = {placeholder}::jsonb")
            elif name == "current_step_index":
                # The step cursor never moves backwards.
                clauses.append(f"{name} = GREATEST(current_step_index, {placeholder})")
            else:
                clauses.append(f"{name} = {placeholder}")
        if completed:
            clauses.append("completed_at = COALESCE(completed_at, now())")
        clauses.append("updated_at = now()")

        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE research_runs SET {', '.join(clauses)} WHERE id = $1::uuid RETURNING *",
                *values,
            )
            return _run_from_row(row) if row else None

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
        updates = {k: v for k, v in fields.items() if k in STEP_UPDATE_FIELDS and v is not None}
        updates.setdefault("step_type", "")
        updates.setdefault("provider", "")
        names = list(updates)
        values: list[Any] = [run_id, step_index, status]
        placeholders = []
        for name in names:
            values.append(_dump(updates[name]) if name in _JSON_STEP_FIELDS else updates[name])
            cast = "::jsonb" if name in _JSON_STEP_FIELDS else ""
            placeholders.append(f"${len(values)}{cast}")

        set_clauses = ["status = EXCLUDED.status"]
        for name in names:
            if name == "error_message":
                continue
            if name in ("step_type", "provider"):
                set_clauses.append(f"{name} = COALESCE(NULLIF(EXCLUDED.{name}, ''), research_steps.{name})")
            else:
                set_clauses.append(f"{name} = EXCLUDED.{name}")
        set_clauses.append(
            "error_message = CASE WHEN EXCLUDED.status = 'done' THEN NULL "
            "ELSE COALESCE(EXCLUDED.error_message, research_steps.error_message) END"
        )
        if started:
            set_clauses.append("started_at = COALESCE(research_steps.started_at, now())")
        if completed:
            set_clauses.append("completed_at = now()")

        started_value = "now()" if started else "NULL"
        completed_value = "now()" if completed else "NULL"
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO research_steps (run_id, step_index, status, {', '.join(names)}, started_at, completed_at)
                VALUES ($1::uuid, $2, $3, {', '.join(placeholders)}, {started_value}, {completed_value})
                ON CONFLICT (run_id, step_index) DO UPDATE SET {', '.join(set_clauses)}
                RETURNING *
                """,
                *values,
            )
            return _step_from_row(row)

    async def list_research_steps(self, run_id: str) -> list[ResearchStep]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM research_steps WHERE run_id = $1::uuid ORDER BY step_index", run_id
            )
            return [_step_from_row(r) for r in rows]

    async def upsert_research_sources(self, run_id: str, step_id: str | None, citations: list[Citation]) -> None:
        if not citations:
            return
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO research_sources (
                    run_id, step_id, citation_id, url, title, publisher, accessed_at,
                    reliability_tags, provider_metadata
                )
                VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb)
                ON CONFLICT (run_id, url) DO NOTHING
                """,
                [
                    (
                        run_id,
                        step_id,
                        c.citation_id,
                        c.url,
                        c.title,
                        c.publisher,
                        c.accessed_at,
                        json.dumps(c.reliability_tags),
                        _dump(c.provider_metadata),
                    )
                    for c in citations
                ],
            )

    async def list_research_sources(self, run_id: str) -> list[Citation]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM research_sources WHERE run_id = $1::uuid ORDER BY created_at, id", run_id
            )
        out = []
        for r in rows:
            data = dict(r)
            data["reliability_tags"] = _coerce_json(data.get("reliability_tags")) or []
            data["provider_metadata"] = _coerce_json(data.get("provider_metadata"))
            out.append(from_row(Citation, data))
        return out

    async def upsert_research_evidence(self, run_id: str, step_id: str | None, evidence: list[Evidence]) -> None:
        if not evidence:
            return
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                """
                INSERT INTO research_evidence (
                    run_id, step_id, evidence_id, claim, supporting_snippet,
                    source_citation_ids, confidence, notes
                )
                VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6::jsonb, $7, $8)
                ON CONFLICT (run_id, evidence_id) DO UPDATE SET
                    claim = EXCLUDED.claim,
                    supporting_snippet = EXCLUDED.supporting_snippet,
                    source_citation_ids = EXCLUDED.source_citation_ids,
                    confidence = EXCLUDED.confidence,
                    notes = EXCLUDED.notes
                """,
                [
                    (
                        run_id,
                        step_id,
                        e.evidence_id,
                        e.claim,
                        e.supporting_snippet,
                        json.dumps(e.source_citation_ids),
                        e.confidence,
                        e.notes,
                    )
                    for e in evidence
                ],
            )

    async def list_research_evidence(self, run_id: str) -> list[Evidence]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM research_evidence WHERE run_id = $1::uuid ORDER BY created_at, id", run_id
            )
        out = []
        for r in rows:
            data = dict(r)
            data["source_citation_ids"] = _coerce_json(data.get("source_citation_ids")) or []
            out.append(from_row(Evidence, data))
        return out

    # --- Reports ---

    async def get_latest_report(self, session_id: str) -> Report | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_REPORT_COLUMNS} FROM reports
                WHERE session_id = $1::uuid
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                session_id,
            )
            return from_row(Report, dict(row)) if row else None

    async def list_reports(self, session_id: str) -> list[Report]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_REPORT_COLUMNS} FROM reports WHERE session_id = $1::uuid ORDER BY created_at DESC, id DESC",
                session_id,
            )
            return [from_row(Report, dict(r)) for r in rows]

    async def create_report(
        self, session_id: str, summary_text: str, pdf_bytes: bytes | None, email_status: str = "pending"
    ) -> Report:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO reports (session_id, summary_text, pdf_bytes, email_status)
                VALUES ($1::uuid, $2, $3, $4)
                RETURNING {_REPORT_COLUMNS}
                """,
                session_id,
                summary_text,
                pdf_bytes,
                email_status,
            )
            return from_row(Report, dict(row))

    async def update_report_content(self, report_id: str, summary_text: str, pdf_bytes: bytes | None) -> Report | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE reports
                SET summary_text = $2, pdf_bytes = $3
                WHERE id = $1::uuid AND email_status <> 'sent'
                RETURNING {_REPORT_COLUMNS}
                """,
                report_id,
                summary_text,
                pdf_bytes,
            )
            return from_row(Report, dict(row)) if row else None

    async def update_report_email(
        self,
        report_id: str,
        email_status: str,
        *,
        sent_at: datetime | None = None,
        email_error: str | None = None,
    ) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE reports
                SET email_status = $2, sent_at = COALESCE($3, sent_at), email_error = $4
                WHERE id = $1::uuid
                """,
                report_id,
                email_status,
                sent_at,
                email_error,
            )

    async def claim_report_send(self, session_id: str) -> str | None:
        """Move the newest pending/failed report to 'sending' unless one is already sent or sending."""
        pool = await _get_pool()
        async with pool.acquire() as conn:
            claimed = await conn.fetchval(
                """
                WITH candidate AS (
                    SELECT id FROM reports
                    WHERE session_id = $1::uuid
                      AND email_status IN ('pending', 'failed')
                      AND NOT EXISTS (
                          SELECT 1 FROM reports r2
                          WHERE r2.session_id = $1::uuid AND r2.email_status IN ('sent', 'sending')
                      )
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE reports
                SET email_status = 'sending'
                FROM candidate
                WHERE reports.id = candidate.id
                RETURNING reports.id
                """,
                session_id,
            )
        if claimed is None:
            logger.debug(f"Report send claim skipped for session {session_id}")
        return str(claimed) if claimed else None
