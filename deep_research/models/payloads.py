"""Validated provider response shapes and the lane job payload.

Provider JSON is parsed into these models at the client boundary so nothing
past the adapters handles raw dictionaries of unknown shape.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from deep_research.errors import InvalidJobPayload


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# --- Gemini generateContent ---


class GroundingWeb(_CamelModel):
    uri: str | None = None
    title: str | None = None


class GroundingChunk(_CamelModel):
    web: GroundingWeb | None = None


class GroundingSegment(_CamelModel):
    start_index: int | None = None
    end_index: int | None = None
    text: str | None = None


class GroundingSupport(_CamelModel):
    segment: GroundingSegment | None = None
    grounding_chunk_indices: list[int] = Field(default_factory=list)
    confidence_scores: list[float] = Field(default_factory=list)


class SearchEntryPoint(_CamelModel):
    rendered_content: str | None = None
    sdk_blob: str | None = None


class GroundingMetadata(_CamelModel):
    web_search_queries: list[str] = Field(default_factory=list)
    grounding_chunks: list[GroundingChunk] = Field(default_factory=list)
    grounding_supports: list[GroundingSupport] = Field(default_factory=list)
    search_entry_point: SearchEntryPoint | None = None

    def chunk_urls(self) -> list[tuple[str, str | None]]:
        out: list[tuple[str, str | None]] = []
        for chunk in self.grounding_chunks:
            if chunk.web and chunk.web.uri:
                out.append((chunk.web.uri, chunk.web.title))
        return out


class ContentPart(_CamelModel):
    text: str | None = None


class Content(_CamelModel):
    role: str | None = None
    parts: list[ContentPart] = Field(default_factory=list)


class GeminiCandidate(_CamelModel):
    content: Content | None = None
    finish_reason: str | None = None
    finish_message: str | None = None
    grounding_metadata: GroundingMetadata | None = None
    citation_metadata: dict[str, Any] | None = None


class GeminiResponse(_CamelModel):
    candidates: list[GeminiCandidate] = Field(default_factory=list)
    usage_metadata: dict[str, Any] | None = None

    @property
    def first(self) -> GeminiCandidate | None:
        return self.candidates[0] if self.candidates else None

    @property
    def text(self) -> str:
        candidate = self.first
        if candidate is None or candidate.content is None:
            return ""
        return "".join(part.text or "" for part in candidate.content.parts)

    @property
    def finish_reason(self) -> str | None:
        return self.first.finish_reason if self.first else None

    @property
    def grounding(self) -> GroundingMetadata | None:
        return self.first.grounding_metadata if self.first else None


# --- OpenAI Responses API ---


class UrlCitation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "url_citation"
    url: str | None = None
    title: str | None = None
    start_index: int | None = None
    end_index: int | None = None


class OutputContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str | None = None
    text: str | None = None
    annotations: list[UrlCitation] = Field(default_factory=list)


class OutputItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str | None = None
    content: list[OutputContent] | None = None


class OpenAIResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    status: str | None = None
    output: list[OutputItem] = Field(default_factory=list)
    output_text: str | None = None
    usage: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        if self.output_text:
            return self.output_text
        chunks = [
            content.text or ""
            for item in self.output
            for content in (item.content or [])
            if content.type in (None, "output_text", "text")
        ]
        return "".join(chunks)

    @property
    def annotations(self) -> list[UrlCitation]:
        return [
            annotation
            for item in self.output
            for content in (item.content or [])
            for annotation in content.annotations
            if annotation.type == "url_citation" and annotation.url
        ]

    @property
    def is_finished(self) -> bool:
        return self.status in {"completed", "failed", "cancelled", "incomplete"}


# --- Lane job ---


ResearchProviderName = Literal["openai", "gemini"]


@dataclass(frozen=True, slots=True)
class DeepResearchJob:
    topic_id: str
    model_run_id: str
    provider: str
    attempt: int
    job_id: str
    idempotency_key: str


def build_idempotency_key(provider: str, topic_id: str, model_run_id: str, attempt: int) -> str:
    return f"{provider}:{topic_id}:{model_run_id}:{attempt}"


def _require_str(record: dict[str, Any], name: str) -> str:
    value = record.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidJobPayload(f'Deep research job payload "{name}" must be a non-empty string')
    return value.strip()


def parse_deep_research_job_payload(raw: Any) -> DeepResearchJob:
    if not isinstance(raw, dict):
        raise InvalidJobPayload("Deep research job payload must be an object")
    topic_id = _require_str(raw, "topic_id")
    model_run_id = _require_str(raw, "model_run_id")
    provider = _require_str(raw, "provider")
    if provider not in ("openai", "gemini"):
        raise InvalidJobPayload('Deep research job payload "provider" must be "openai" or "gemini"')

    job_id_raw = raw.get("job_id")
    job_id = job_id_raw.strip() if isinstance(job_id_raw, str) else ""
    key_raw = raw.get("idempotency_key")
    idempotency_key = (key_raw.strip() if isinstance(key_raw, str) else "") or job_id
    if not idempotency_key:
        raise InvalidJobPayload('Deep research job payload requires non-empty "job_id" or "idempotency_key"')

    attempt = raw.get("attempt")
    if isinstance(attempt, bool) or not isinstance(attempt, int) or attempt < 1:
        raise InvalidJobPayload('Deep research job payload "attempt" must be a positive integer')

    return DeepResearchJob(
        topic_id=topic_id,
        model_run_id=model_run_id,
        provider=provider,
        attempt=attempt,
        job_id=job_id or idempotency_key,
        idempotency_key=idempotency_key,
    )


def build_deep_research_job(*, topic_id: str, model_run_id: str, provider: str, attempt: int) -> DeepResearchJob:
    return parse_deep_research_job_payload(
        {
            "topic_id": topic_id,
            "model_run_id": model_run_id,
            "provider": provider,
            "attempt": attempt,
            "idempotency_key": build_idempotency_key(provider, topic_id, model_run_id, attempt),
        }
    )
