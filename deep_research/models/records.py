"""Row types shared by the Postgres and in-memory stores."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

T = TypeVar("T")


def from_row(cls: type[T], row: dict[str, Any]) -> T:
    """Build a record from a DB row, dropping unknown columns and stringifying UUIDs."""
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    data = {}
    for key, value in row.items():
        if key not in names:
            continue
        data[key] = str(value) if isinstance(value, UUID) else value
    return cls(**data)


@dataclass(slots=True)
class SessionRecord:
    id: str
    user_id: str
    topic: str
    state: str
    refined_prompt: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    refined_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class RefinementQuestion:
    id: str
    session_id: str
    sequence: int
    question_text: str
    answer_text: str | None = None
    answered_at: datetime | None = None
    is_complete: bool = False


@dataclass(slots=True)
class ProviderResult:
    id: str
    session_id: str
    provider: str
    status: str
    model_run_id: str | None = None
    output_text: str | None = None
    sources_json: Any = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    external_id: str | None = None
    external_status: str | None = None
    last_polled_at: datetime | None = None


@dataclass(slots=True)
class ProviderResultWrite:
    """One guarded upsert. ``None`` fields keep whatever the row already holds."""

    session_id: str
    provider: str
    status: str
    model_run_id: str | None = None
    output_text: str | None = None
    sources_json: Any = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    external_id: str | None = None
    external_status: str | None = None
    last_polled_at: datetime | None = None


@dataclass(slots=True)
class ResearchRun:
    id: str
    session_id: str
    provider: str
    question: str
    state: str = "NEW"
    attempt: int = 1
    mode: str = "custom"
    depth: str = "standard"
    research_plan: dict[str, Any] | None = None
    progress: dict[str, Any] = field(default_factory=dict)
    current_step_index: int = 0
    max_steps: int = 8
    target_sources_per_step: int = 5
    max_total_sources: int = 40
    max_tokens_per_step: int = 1800
    min_word_count: int = 2500
    synthesized_report_md: str | None = None
    synthesized_sources: list[dict[str, Any]] | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class ResearchStep:
    id: str
    run_id: str
    step_index: int
    step_type: str
    status: str
    provider: str
    model: str | None = None
    step_goal: str | None = None
    inputs_summary: str | None = None
    raw_output: str | None = None
    output_excerpt: str | None = None
    sources: list[dict[str, Any]] | None = None
    evidence: list[dict[str, Any]] | None = None
    next_step_proposal: str | None = None
    token_usage: dict[str, Any] | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class Citation:
    citation_id: str
    url: str
    title: str | None = None
    publisher: str | None = None
    accessed_at: str | None = None
    reliability_tags: list[str] = field(default_factory=list)
    provider_metadata: dict[str, Any] | None = None


@dataclass(slots=True)
class Evidence:
    evidence_id: str
    claim: str
    supporting_snippet: str
    source_citation_ids: list[str] = field(default_factory=list)
    confidence: str = "med"
    notes: str | None = None


@dataclass(slots=True)
class Report:
    id: str
    session_id: str
    summary_text: str
    email_status: str = "pending"
    pdf_bytes: bytes | None = None
    sent_at: datetime | None = None
    email_error: str | None = None
    created_at: datetime | None = None
