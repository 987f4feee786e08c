"""Research provider adapters.

Each adapter exposes the same surface to the pipeline and orchestrator:
refinement questions, prompt rewrite, one research step, and a report summary.
``run_step`` returns either a finished ``StepOutput`` or a ``PendingStep``
when the provider accepted the work as a background job that the next tick
should resume.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from deep_research.config import settings
from deep_research.errors import PermanentProviderError, TransientProviderError
from deep_research.models.payloads import OpenAIResponse
from deep_research.research_core.citations import normalize_openai_citations
from deep_research.research_core.fanout import FanOutEngine
from deep_research.research_core.prompts import fallback_plan, plan_query_pack
from deep_research.tools.gemini_client import GeminiClient
from deep_research.tools.openai_client import OpenAIClient

PROVIDER_LABELS = {"openai": "OpenAI", "gemini": "Gemini"}

# Steps that benefit from live web search
SEARCH_STEPS = frozenset({"DISCOVER_SOURCES_WITH_PLAN", "DEEP_READ", "COUNTERPOINTS"})


@dataclass(slots=True)
class StepRequest:
    run_id: str
    step_type: str
    step_index: int
    question: str
    prompt: str
    model: str
    model_tier: str
    max_output_tokens: int
    timeout_ms: int
    max_sources: int = 15
    plan: dict[str, Any] | None = None
    external_id: str | None = None


@dataclass(slots=True)
class StepOutput:
    text: str
    raw_sources: Any = None
    usage: dict[str, Any] | None = None
    model: str | None = None
    external_id: str | None = None


@dataclass(slots=True)
class PendingStep:
    external_id: str
    external_status: str | None = None


class ResearchProvider(Protocol):
    name: str
    supports_resume: bool

    async def start_refinement(self, topic: str) -> list[str]: ...

    async def rewrite_prompt(self, topic: str, draft: str, clarifications: list[tuple[str, str]]) -> str: ...

    async def run_step(self, request: StepRequest) -> StepOutput | PendingStep: ...

    async def summarize(
        self, provider_label: str, text: str, references: list[Any], include_refs: bool = True
    ) -> str: ...


# --- OpenAI ---


def _annotation_sources(response: OpenAIResponse) -> list[dict[str, Any]]:
    return [{"url": a.url, "title": a.title} for a in response.annotations]


def _text_with_refs(response: OpenAIResponse) -> str:
    if not response.annotations:
        return response.text
    return normalize_openai_citations(response.text, response.annotations).text_with_refs


class OpenAIResearchProvider:
    """Reasoning steps run inline; full/pro tier steps run as background responses."""

    name = "openai"
    supports_resume = True

    def __init__(self, client: OpenAIClient | None = None):
        self.client = client or OpenAIClient()

    async def start_refinement(self, topic: str) -> list[str]:
        return await self.client.start_refinement(topic)

    async def rewrite_prompt(self, topic: str, draft: str, clarifications: list[tuple[str, str]]) -> str:
        return await self.client.rewrite_prompt(topic, draft, clarifications)

    async def summarize(
        self, provider_label: str, text: str, references: list[Any], include_refs: bool = True
    ) -> str:
        return await self.client.summarize_for_report(provider_label, text, references, include_refs=include_refs)

    async def run_step(self, request: StepRequest) -> StepOutput | PendingStep:
        timeout_s = request.timeout_ms / 1000
        if request.external_id:
            response = await self.client.poll_deep_research(request.external_id, timeout_s=timeout_s)
            return self._settle(response, request)

        if request.model_tier in ("full", "pro"):
            response = await self.client.start_deep_research(
                request.prompt, model=request.model, max_sources=request.max_sources, timeout_s=timeout_s
            )
            if not response.id:
                raise PermanentProviderError("OpenAI background response has no id")
            if not response.is_finished:
                poll_window = min(timeout_s, float(settings.openai_poll_timeout_seconds))
                try:
                    response = await self.client.wait_deep_research(response.id, timeout_s=poll_window)
                except TransientProviderError as e:
                    logger.info(f"OpenAI step {request.step_type} still pending after poll window: {e}")
                    return PendingStep(external_id=response.id, external_status=response.status or "queued")
            return self._settle(response, request)

        response = await self.client.reasoning_step(
            request.prompt,
            model=request.model,
            max_output_tokens=request.max_output_tokens,
            timeout_s=timeout_s,
            use_web_search=request.step_type == "DISCOVER_SOURCES_WITH_PLAN",
        )
        return StepOutput(
            text=_text_with_refs(response),
            raw_sources=_annotation_sources(response),
            usage=response.usage,
            model=request.model,
            external_id=response.id,
        )

    def _settle(self, response: OpenAIResponse, request: StepRequest) -> StepOutput | PendingStep:
        if not response.is_finished:
            return PendingStep(external_id=response.id or request.external_id or "", external_status=response.status)
        text = _text_with_refs(response)
        if response.status == "completed" or (response.status == "incomplete" and text.strip()):
            return StepOutput(
                text=text,
                raw_sources=_annotation_sources(response),
                usage=response.usage,
                model=request.model,
                external_id=response.id,
            )
        detail = (response.error or {}).get("message") or "no output"
        raise PermanentProviderError(f"OpenAI research {response.status}: {detail}")


# --- Gemini ---


class GeminiResearchProvider:
    """generateContent with Google Search grounding; discovery fans out over the plan's queries."""

    name = "gemini"
    supports_resume = False

    def __init__(self, client: GeminiClient | None = None, fanout: FanOutEngine | None = None):
        self.client = client or GeminiClient()
        self.fanout = fanout or FanOutEngine(self.client)

    async def start_refinement(self, topic: str) -> list[str]:
        return await self.client.start_refinement(topic)

    async def rewrite_prompt(self, topic: str, draft: str, clarifications: list[tuple[str, str]]) -> str:
        return await self.client.rewrite_prompt(topic, draft, clarifications)

    async def summarize(
        self, provider_label: str, text: str, references: list[Any], include_refs: bool = True
    ) -> str:
        return await self.client.summarize_for_report(provider_label, text, references, include_refs=include_refs)

    async def run_step(self, request: StepRequest) -> StepOutput | PendingStep:
        if request.step_type == "DISCOVER_SOURCES_WITH_PLAN":
            result = await self.fanout.run(
                request.prompt,
                plan_query_pack(request.plan, request.question, limit=settings.fanout_max_subcalls),
                model=request.model,
                max_output_tokens=request.max_output_tokens,
                timeout_ms=request.timeout_ms,
                max_parallel=settings.fanout_max_parallel,
                max_subcalls=settings.fanout_max_subcalls,
            )
            usage = dict(result.usage or {})
            if result.coverage is not None:
                usage["coverage"] = {
                    "subcalls_planned": result.coverage.subcalls_planned,
                    "subcalls_completed": result.coverage.subcalls_completed,
                    "unique_sources": result.coverage.unique_sources,
                    "unique_domains": result.coverage.unique_domains,
                }
            return StepOutput(text=result.text, raw_sources=result.sources, usage=usage, model=request.model)

        reasoning = await self.client.reasoning_step(
            request.prompt,
            model=request.model,
            max_output_tokens=request.max_output_tokens,
            timeout_s=request.timeout_ms / 1000,
            use_search=request.step_type in SEARCH_STEPS,
        )
        sources = (
            [{"url": url, "title": title} for url, title in reasoning.grounding.chunk_urls()]
            if reasoning.grounding
            else []
        )
        return StepOutput(text=reasoning.text, raw_sources=sources, usage=reasoning.usage, model=request.model)


# --- Stub ---


class StubResearchProvider:
    """Deterministic offline provider for local runs and tests."""

    supports_resume = False

    def __init__(self, name: str, *, questions: list[str] | None = None, severe_gaps: bool = False):
        self.name = name
        self.questions = list(questions or [])
        self.severe_gaps = severe_gaps
        self.calls: list[str] = []

    async def start_refinement(self, topic: str) -> list[str]:
        return list(self.questions)

    async def rewrite_prompt(self, topic: str, draft: str, clarifications: list[tuple[str, str]]) -> str:
        if not clarifications:
            return draft
        constraints = "; ".join(f"{q} {a}" for q, a in clarifications)
        return f"{draft}\n\nConstraints: {constraints}"

    async def summarize(
        self, provider_label: str, text: str, references: list[Any], include_refs: bool = True
    ) -> str:
        first = " ".join(text.split())[:400]
        suffix = " [1]" if include_refs and references else ""
        return f"{provider_label} findings: {first}{suffix}"

    async def run_step(self, request: StepRequest) -> StepOutput | PendingStep:
        self.calls.append(request.step_type)
        base = f"https://example.org/{self.name}"
        if request.step_type == "DEVELOP_RESEARCH_PLAN":
            text = json.dumps(fallback_plan(request.question))
        elif request.step_type == "SHORTLIST_RESULTS":
            text = json.dumps(
                {"shortlist": [{"url": f"{base}/source-1", "title": "Source 1", "read_priority": "high"}]}
            )
        elif request.step_type == "EXTRACT_EVIDENCE":
            text = json.dumps(
                {
                    "evidence": [
                        {
                            "claim": f"{request.question} has measurable outcomes",
                            "supporting_snippet": "Reported outcomes from source 1.",
                            "confidence": "med",
                        }
                    ]
                }
            )
        elif request.step_type == "GAP_CHECK":
            text = json.dumps({"follow_up_queries": [], "severe_gaps": self.severe_gaps})
        elif request.step_type == "SECTION_SYNTHESIS":
            text = (
                f"# {request.question}\n\n## Findings\n\n"
                f"The {self.name} research found consistent evidence [1].\n\n"
                f"## Sources\n\n1. {base}/source-1\n2. {base}/source-2\n"
            )
        else:
            text = (
                f"{request.step_type} notes for {request.question}. "
                f"See {base}/source-1 and {base}/source-2 for details."
            )
        return StepOutput(
            text=text,
            raw_sources=[{"url": f"{base}/source-1", "title": "Source 1"}],
            usage={"output_tokens": len(text.split())},
            model=request.model,
        )


def build_providers() -> dict[str, ResearchProvider]:
    if settings.stub_providers:
        logger.info("STUB_PROVIDERS enabled; research runs use deterministic offline providers")
        return {name: StubResearchProvider(name) for name in PROVIDER_LABELS}
    return {"openai": OpenAIResearchProvider(), "gemini": GeminiResearchProvider()}
