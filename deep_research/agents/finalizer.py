"""Aggregated report: reference tables, unified markdown, PDF and send-once email."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from deep_research.config import settings
from deep_research.errors import ReportRegenerationNotAllowed, SessionNotFound
from deep_research.agents.transitions import settle_session
from deep_research.models.records import ProviderResult, Report, SessionRecord
from deep_research.models.states import (
    EmailStatus,
    ProviderStatus,
    SessionState,
    final_session_state,
)
from deep_research.models.user_settings import UserSettings
from deep_research.services import logger as log_service
from deep_research.services.locks import Locker, hold, finalize_lock
from deep_research.services.memory_store import Store, utcnow
from deep_research.tools.email_sender import EmailSender
from deep_research.tools.pdf_report import ReportDocument, ReportReference, ReportRenderer
from deep_research.tools.providers import ResearchProvider

REPORT_SUBJECT = "Your Research Report"
NO_MATERIAL_SUMMARY = "Research failed before any usable output was generated."
NO_MATERIAL_EMAIL_ERROR = "No research output generated; report email skipped."

_TRAILING_RE = re.compile(r"^(.*?)([)\],.?!:;\"']+)?$", re.DOTALL)
_LINK_RE = re.compile(r"https?://[^\s<>\"']+")
_MARKDOWN_LINK_RE = re.compile(r"\[[^\]]+\]\((https?://[^\s<>\"')]+)\)")
_BRACKETED_URL_RE = re.compile(r"\[(https?://[^\s<>\"'\]]+)\]")


# --- Link helpers ---


def strip_trailing_punctuation(url: str) -> tuple[str, str]:
    """Split ``url`` into the URL proper and any trailing punctuation glued to it."""
    match = _TRAILING_RE.match(url)
    if not match:
        return url, ""
    return match.group(1) or url, match.group(2) or ""


def extract_links_from_text(text: str, max_items: int = 40) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    seen: set[str] = set()
    for raw in _LINK_RE.findall(text or ""):
        url, _ = strip_trailing_punctuation(raw)
        if not url.lower().startswith(("http://", "https://")) or url in seen:
            continue
        seen.add(url)
        out.append({"url": url, "title": None})
        if len(out) >= max_items:
            break
    return out


def replace_links_with_refs(text: str, ref_map: dict[str, int]) -> str:
    """Rewrite markdown links, bracketed URLs and bare URLs to ``[n]`` references."""

    def markdown_link(match: re.Match) -> str:
        url, _ = strip_trailing_punctuation(match.group(1))
        n = ref_map.get(url)
        return f"[{n}]" if n else match.group(0)

    def bracketed(match: re.Match) -> str:
        url, _ = strip_trailing_punctuation(match.group(1))
        n = ref_map.get(url)
        return f"[{n}]" if n else f"[{url}]"

    def bare(match: re.Match) -> str:
        url, suffix = strip_trailing_punctuation(match.group(0))
        n = ref_map.get(url)
        return f"[{n}]{suffix}" if n else match.group(0)

    text = _MARKDOWN_LINK_RE.sub(markdown_link, text)
    text = _BRACKETED_URL_RE.sub(bracketed, text)
    return _LINK_RE.sub(bare, text)


# --- Reference table ---


@dataclass(slots=True)
class ReferenceTable:
    openai_refs: list[ReportReference] = field(default_factory=list)
    gemini_refs: list[ReportReference] = field(default_factory=list)
    ref_map: dict[str, int] = field(default_factory=dict)
    openai_text: str | None = None
    gemini_text: str | None = None
    has_run_reports: bool = False

    @property
    def has_material(self) -> bool:
        return bool((self.openai_text or "").strip() or (self.gemini_text or "").strip())


def build_reference_table(
    openai_run_report: str | None,
    gemini_run_report: str | None,
    openai_run_sources: list[dict[str, Any]],
    gemini_run_sources: list[dict[str, Any]],
    openai_output: str | None,
    gemini_output: str | None,
) -> ReferenceTable:
    """Number OpenAI sources first, then Gemini sources not already seen."""
    openai_sources = openai_run_sources if openai_run_report else extract_links_from_text(openai_output or "")
    gemini_sources = gemini_run_sources if gemini_run_report else extract_links_from_text(gemini_output or "")

    table = ReferenceTable(has_run_reports=bool(openai_run_report or gemini_run_report))
    for source in openai_sources:
        url = source.get("url")
        if not url or url in table.ref_map:
            continue
        table.ref_map[url] = len(table.ref_map) + 1
        table.openai_refs.append(ReportReference(n=table.ref_map[url], url=url, title=source.get("title")))
    for source in gemini_sources:
        url = source.get("url")
        if not url or url in table.ref_map:
            continue
        table.ref_map[url] = len(table.ref_map) + 1
        table.gemini_refs.append(ReportReference(n=table.ref_map[url], url=url, title=source.get("title")))

    openai_body = openai_run_report or openai_output
    gemini_body = gemini_run_report or gemini_output
    table.openai_text = replace_links_with_refs(openai_body, table.ref_map) if openai_body else None
    table.gemini_text = replace_links_with_refs(gemini_body, table.ref_map) if gemini_body else None
    return table


def build_unified_report(table: ReferenceTable, openai_status: str, gemini_status: str) -> str:
    toc = "\n".join(
        [
            "## Table of Contents",
            "1. OpenAI Provider Report",
            "2. Gemini Provider Report",
            "3. Provider Comparison",
            "4. Unified Sources",
        ]
    )
    comparison = "\n".join(
        [
            "## Provider Comparison",
            f"- OpenAI status: {openai_status}",
            f"- Gemini status: {gemini_status}",
            "- Agreement: Both provider reports were merged and sources were deduplicated by URL.",
            "- Disagreement handling: Differences are preserved in separate provider sections for transparency.",
        ]
    )
    sources = "\n".join(["## Unified Sources", *(f"[{n}] {url}" for url, n in table.ref_map.items())])
    return "\n\n".join(
        [
            "# Aggregated Deep Research Report",
            toc,
            "## OpenAI Provider Report",
            table.openai_text or "No OpenAI report available.",
            "## Gemini Provider Report",
            table.gemini_text or "No Gemini report available.",
            comparison,
            sources,
        ]
    )


def status_line(openai: ProviderResult | None, gemini: ProviderResult | None) -> str:
    return f"OpenAI: {openai.status if openai else 'unknown'} | Gemini: {gemini.status if gemini else 'unknown'}"


def provider_failed(result: ProviderResult | None) -> bool:
    return result is None or result.status in (ProviderStatus.FAILED.value, ProviderStatus.SKIPPED.value)


@dataclass(slots=True)
class _Assembled:
    session: SessionRecord
    user_settings: UserSettings
    openai: ProviderResult | None
    gemini: ProviderResult | None
    table: ReferenceTable
    summary: str
    unified_report: str


class ReportFinalizer:
    def __init__(
        self,
        store: Store,
        locker: Locker,
        providers: dict[str, ResearchProvider],
        renderer: ReportRenderer,
        email_sender: EmailSender,
    ):
        self.store = store
        self.locker = locker
        self.providers = providers
        self.renderer = renderer
        self.email_sender = email_sender

    async def finalize_report(self, session_id: str) -> Report | None:
        """Build, persist and send the session report at most once.

        Returns None when another finalizer holds the lock.
        """
        async with hold(self.locker, finalize_lock(session_id)) as handle:
            if handle is None:
                logger.info(f"Finalize already in progress for session {session_id}")
                return None
            return await self._finalize(session_id)

    async def _finalize(self, session_id: str) -> Report | None:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")

        existing = await self.store.get_latest_report(session_id)
        if existing is not None and existing.email_status == EmailStatus.SENT.value:
            results = {r.provider: r for r in await self.store.list_provider_results(session_id)}
            final_state = final_session_state(provider_failed(results.get("openai")), provider_failed(results.get("gemini")))
            await settle_session(self.store, session, final_state, utcnow())
            return existing

        assembled = await self._assemble(session)
        final_state = final_session_state(provider_failed(assembled.openai), provider_failed(assembled.gemini))

        if not assembled.table.has_material:
            report = await self._persist(existing, session_id, NO_MATERIAL_SUMMARY, None, EmailStatus.FAILED.value)
            await settle_session(self.store, session, SessionState.FAILED, utcnow())
            await self.store.update_report_email(
                report.id, EmailStatus.FAILED.value, email_error=NO_MATERIAL_EMAIL_ERROR
            )
            log_service.log_event("report_skipped", NO_MATERIAL_EMAIL_ERROR, session_id=session_id)
            return report

        pdf_bytes: bytes | None = None
        pdf_error: str | None = None
        try:
            pdf_bytes = await self._render(assembled)
        except Exception as e:
            logger.error(f"PDF generation failed for session {session_id}: {e}")
            pdf_error = str(e) or type(e).__name__
            if final_state == SessionState.COMPLETED:
                final_state = SessionState.PARTIAL

        report = await self._persist(existing, session_id, assembled.summary, pdf_bytes, EmailStatus.PENDING.value)
        await settle_session(self.store, session, final_state, utcnow())
        await self.check_report_timing(session_id)

        if pdf_bytes is None:
            await self.store.update_report_email(
                report.id, EmailStatus.FAILED.value, email_error=f"PDF generation failed: {pdf_error}"
            )
            return report

        await self._claim_and_send(session, report, assembled.summary, pdf_bytes)
        return report

    async def _persist(
        self, existing: Report | None, session_id: str, summary: str, pdf_bytes: bytes | None, email_status: str
    ) -> Report:
        if existing is not None and existing.email_status != EmailStatus.SENT.value:
            updated = await self.store.update_report_content(existing.id, summary, pdf_bytes)
            if updated is not None:
                return updated
        return await self.store.create_report(session_id, summary, pdf_bytes, email_status)

    async def _claim_and_send(self, session: SessionRecord, report: Report, summary: str, pdf_bytes: bytes) -> None:
        email = await self.store.get_user_email(session.user_id)
        if not email:
            await self.store.update_report_email(report.id, EmailStatus.FAILED.value, email_error="User email not found")
            return

        claimed_id = await self.store.claim_report_send(session.id)
        if claimed_id is None:
            logger.info(f"Report for session {session.id} already sent or being sent")
            return
        if claimed_id != report.id:
            await self.store.update_report_content(claimed_id, summary, pdf_bytes)

        try:
            await self.email_sender.send(email, REPORT_SUBJECT, report.summary_text or summary, pdf_bytes)
        except Exception as e:
            logger.error(f"Email send failed for session {session.id}: {e}")
            await self.store.update_report_email(claimed_id, EmailStatus.FAILED.value, email_error=str(e))
            return
        await self.store.update_report_email(claimed_id, EmailStatus.SENT.value, sent_at=utcnow())
        log_service.log_event("report_sent", "Report email sent", session_id=session.id, report_id=claimed_id)

    # --- Assembly ---

    async def _assemble(self, session: SessionRecord) -> _Assembled:
        user_settings = await self.store.get_user_settings(session.user_id)
        results = {r.provider: r for r in await self.store.list_provider_results(session.id)}
        openai, gemini = results.get("openai"), results.get("gemini")
        openai_run = await self.store.get_latest_research_run(session.id, "openai")
        gemini_run = await self.store.get_latest_research_run(session.id, "gemini")
        openai_report = openai_run.synthesized_report_md if openai_run else None
        gemini_report = gemini_run.synthesized_report_md if gemini_run else None

        table = build_reference_table(
            openai_report,
            gemini_report,
            await self._run_sources(openai_run.id) if openai_report else [],
            await self._run_sources(gemini_run.id) if gemini_report else [],
            openai.output_text if openai else None,
            gemini.output_text if gemini else None,
        )
        return _Assembled(
            session=session,
            user_settings=user_settings,
            openai=openai,
            gemini=gemini,
            table=table,
            summary=status_line(openai, gemini),
            unified_report=build_unified_report(
                table, openai.status if openai else "unknown", gemini.status if gemini else "unknown"
            ),
        )

    async def _run_sources(self, run_id: str) -> list[dict[str, Any]]:
        return [{"url": c.url, "title": c.title} for c in await self.store.list_research_sources(run_id)]

    async def _summaries(self, assembled: _Assembled) -> tuple[str | None, str | None]:
        table = assembled.table
        if table.has_run_reports:
            return None, None

        user_settings = assembled.user_settings
        provider = self.providers[user_settings.summarize_provider]
        include_refs = user_settings.report_include_refs_in_summary

        async def summarize(label: str, text: str, refs: list[ReportReference], fallback: str) -> str:
            try:
                return await provider.summarize(label, text, refs, include_refs)
            except Exception as e:
                logger.warning(f"{label} summary failed, using fallback text: {e}")
                return fallback

        if user_settings.report_summary_mode == "one":
            combined = "\n\n".join(t for t in (table.openai_text, table.gemini_text) if t)
            return (
                await summarize("Combined", combined, table.openai_refs + table.gemini_refs, "No research result available."),
                None,
            )
        openai_summary = (
            await summarize("OpenAI", table.openai_text, table.openai_refs, "No OpenAI result available.")
            if table.openai_text
            else "No OpenAI result available."
        )
        gemini_summary = (
            await summarize("Gemini", table.gemini_text, table.gemini_refs, "No Gemini result available.")
            if table.gemini_text
            else "No Gemini result available."
        )
        return openai_summary, gemini_summary

    async def _render(self, assembled: _Assembled) -> bytes:
        openai_summary, gemini_summary = await self._summaries(assembled)
        session = assembled.session
        document = ReportDocument(
            session_id=session.id,
            topic=session.topic,
            refined_prompt=session.refined_prompt,
            created_at=session.created_at or utcnow(),
            report_markdown=assembled.unified_report,
            summary_mode=assembled.user_settings.report_summary_mode,
            openai_summary=openai_summary,
            gemini_summary=gemini_summary,
            openai_started_at=assembled.openai.started_at if assembled.openai else None,
            openai_completed_at=assembled.openai.completed_at if assembled.openai else None,
            gemini_started_at=assembled.gemini.started_at if assembled.gemini else None,
            gemini_completed_at=assembled.gemini.completed_at if assembled.gemini else None,
            references=assembled.table.openai_refs + assembled.table.gemini_refs,
        )
        return await asyncio.to_thread(self.renderer.build_report, document)

    # --- Regeneration / timing ---

    async def regenerate_report_for_session(self, session_id: str) -> Report:
        """Rebuild and resend the report as a new row. Sent reports are never overwritten."""
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.state not in (SessionState.COMPLETED.value, SessionState.PARTIAL.value):
            raise ReportRegenerationNotAllowed("Report regeneration is only available for completed sessions.")

        assembled = await self._assemble(session)
        pdf_bytes = await self._render(assembled)
        report = await self.store.create_report(session_id, assembled.summary, pdf_bytes, EmailStatus.PENDING.value)

        email = await self.store.get_user_email(session.user_id)
        try:
            if not email:
                raise SessionNotFound(f"User email not found for session {session_id}")
            await self.email_sender.send(email, REPORT_SUBJECT, report.summary_text or assembled.summary, pdf_bytes)
        except Exception as e:
            logger.error(f"Regenerated report email send failed for session {session_id}: {e}")
            await self.store.update_report_email(report.id, EmailStatus.FAILED.value, email_error=str(e))
            raise
        sent_at = utcnow()
        await self.store.update_report_email(report.id, EmailStatus.SENT.value, sent_at=sent_at)
        return replace(report, email_status=EmailStatus.SENT.value, sent_at=sent_at)

    async def check_report_timing(self, session_id: str) -> dict[str, Any] | None:
        """Minutes from prompt approval to completion, against the report timing budget."""
        session = await self.store.get_session(session_id)
        if session is None or session.refined_at is None or session.completed_at is None:
            return None
        duration_minutes = (session.completed_at - session.refined_at).total_seconds() / 60
        timing = {
            "duration_minutes": round(duration_minutes, 2),
            "within_budget": duration_minutes <= settings.report_timing_budget_minutes,
        }
        log_service.log_event("report_timing", f"report timing minutes={timing['duration_minutes']}", **timing)
        return timing
