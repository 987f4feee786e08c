"""PDF rendering of the aggregated report: markdown -> HTML -> PDF."""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from loguru import logger
from markdown_it import MarkdownIt

from deep_research.config import settings

_MD_PARSER = MarkdownIt("commonmark").enable("table")

_PDF_CSS = """
@page { size: A4; margin: 2cm; }
body { font-family: 'Noto Sans', Helvetica, sans-serif; font-size: 11pt; line-height: 1.5; color: #111827; }
.banner { background: #4f46e5; color: #fff; padding: 10pt 14pt; font-size: 18pt; font-weight: bold; }
.meta { font-size: 9pt; color: #6b7280; margin: 6pt 0 12pt; }
h1 { font-size: 18pt; border-bottom: 2px solid #333; padding-bottom: 4pt; }
h2 { font-size: 15pt; color: #1a5276; margin-top: 16pt; }
h3 { font-size: 13pt; color: #2e4053; }
.summary h3.openai { color: #10b981; }
.summary h3.gemini { color: #3b82f6; }
table { border-collapse: collapse; width: 100%; margin: 8pt 0; font-size: 9pt; }
th, td { border: 1px solid #999; padding: 4pt 6pt; text-align: left; }
code { font-family: monospace; background: #eee; padding: 1pt 3pt; }
a { color: #1d4ed8; word-break: break-all; }
"""


@dataclass(slots=True)
class ReportReference:
    n: int
    url: str
    title: str | None = None


@dataclass(slots=True)
class ReportDocument:
    session_id: str
    topic: str
    refined_prompt: str | None
    created_at: datetime
    report_markdown: str
    summary_mode: str = "two"
    openai_summary: str | None = None
    gemini_summary: str | None = None
    openai_started_at: datetime | None = None
    openai_completed_at: datetime | None = None
    gemini_started_at: datetime | None = None
    gemini_completed_at: datetime | None = None
    references: list[ReportReference] = field(default_factory=list)


class ReportRenderer(Protocol):
    def build_report(self, document: ReportDocument) -> bytes: ...


def format_duration(started: datetime | None, completed: datetime | None) -> str:
    if started is None or completed is None or completed < started:
        return "N/A"
    total = max(0, round((completed - started).total_seconds()))
    minutes, seconds = divmod(total, 60)
    return f"{minutes}m {seconds}s" if minutes else f"{seconds}s"


def _timing_line(label: str, started: datetime | None, completed: datetime | None) -> str:
    start = started.isoformat(timespec="seconds") if started else "N/A"
    end = completed.isoformat(timespec="seconds") if completed else "N/A"
    return f"<p class='meta'>{label}: started {start}, finished {end}, duration {format_duration(started, completed)}</p>"


def render_html(document: ReportDocument) -> str:
    esc = html.escape
    if document.openai_summary is None and document.gemini_summary is None:
        summary_block = ""
    elif document.summary_mode == "one":
        summary_block = f"<h2>Executive Summary</h2><div class='summary'><p>{esc(document.openai_summary or 'No result available.')}</p></div>"
    else:
        summary_block = (
            "<h2>Executive Summary</h2><div class='summary'>"
            f"<h3 class='openai'>OpenAI summary</h3><p>{esc(document.openai_summary or 'No OpenAI result available.')}</p>"
            f"<h3 class='gemini'>Gemini summary</h3><p>{esc(document.gemini_summary or 'No Gemini result available.')}</p>"
            "</div>"
        )
    return f"""<!DOCTYPE html>
<html><head><meta charset="utf-8"><style>{_PDF_CSS}</style></head>
<body>
<div class="banner">Multi-API Research Report</div>
<div class="meta">Created: {esc(document.created_at.isoformat(timespec="seconds"))} | Session: {esc(document.session_id)}</div>
<h2>Topic</h2><p>{esc(document.topic)}</p>
<h2>Refined Prompt</h2><p>{esc(document.refined_prompt or "N/A")}</p>
{summary_block}
{_timing_line("OpenAI", document.openai_started_at, document.openai_completed_at)}
{_timing_line("Gemini", document.gemini_started_at, document.gemini_completed_at)}
{_MD_PARSER.render(document.report_markdown)}
</body></html>"""


class WeasyprintReportRenderer:
    def build_report(self, document: ReportDocument) -> bytes:
        import weasyprint

        pdf = weasyprint.HTML(string=render_html(document)).write_pdf()
        logger.info(f"PDF generated for session {document.session_id} ({len(pdf)} bytes)")
        return pdf


class StubReportRenderer:
    def build_report(self, document: ReportDocument) -> bytes:
        return f"Stub PDF for {document.topic}".encode()


def build_report_renderer() -> ReportRenderer:
    return StubReportRenderer() if settings.stub_pdf else WeasyprintReportRenderer()
