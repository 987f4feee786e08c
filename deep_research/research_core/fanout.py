"""Parallel grounded sub-calls merged into one consolidated, citation-preserving text."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlparse

from loguru import logger

from deep_research.models.payloads import GroundingChunk, GroundingMetadata, GroundingSupport, GroundingWeb
from deep_research.research_core.citations import canonicalize_url, is_http_url
from deep_research.research_core.prompts import looks_truncated
from deep_research.tools.gemini_client import GeminiClient

SUBCALL_MAX_TOKENS = 800
SUBCALL_TEXT_CHAR_LIMIT = 1200
FULL_TEXT_SCOUTS = 4
MAX_CONTINUATIONS = 3
NO_FINDINGS_TEXT = "No grounded subcall findings were completed within the time budget."

CONSOLIDATION_SYSTEM_INSTRUCTION = (
    "You are a senior research analyst. Your job is to synthesize web research findings into a "
    "comprehensive, citation-rich report section. Never drop source URLs - every URL present in "
    "the scout reports must appear as an inline citation [URL] in your output. Never truncate or "
    "stop early. Cover all findings completely before writing the Sources section."
)


def scout_prompt(master_prompt: str, subquestion: str) -> str:
    return (
        "You are a web research scout. Your ONLY job is to find as many DISTINCT, HIGH-QUALITY sources "
        "as possible on the subquestion below.\n\n"
        f"MASTER RESEARCH QUESTION: {master_prompt[:800]}\n\n"
        f"SUBQUESTION FOR THIS SCOUT CALL: {subquestion}\n\n"
        "MANDATORY REQUIREMENTS - you will be penalized for missing any of these:\n"
        "1. You MUST search and cite at least 5 different sources from at least 4 different domains.\n"
        "2. Each cited source must be from a DIFFERENT website (no two citations from the same domain).\n"
        "3. Preferred source types IN ORDER: peer-reviewed papers, .gov/.edu sites, official institutional "
        "reports, major news outlets, reputable industry analysis.\n"
        "4. For EACH source you cite: state the specific fact or finding it supports, and include its URL "
        "inline as [URL].\n"
        "5. If a supporting and a contradicting source exist, cite BOTH.\n\n"
        "OUTPUT FORMAT (strictly follow this):\n"
        "- Write 1 short paragraph per source (3-4 sentences max per paragraph).\n"
        "- Each paragraph: state the finding, cite the URL inline as [URL], note source type and date if known.\n"
        "- Do NOT write a long narrative. Short, dense, citation-rich paragraphs only.\n"
        '- End with a one-line summary: "Found X sources across Y domains."'
    )


def consolidation_prompt(step_goal: str, findings: str, completed: int, planned: int) -> str:
    return (
        f"RESEARCH STEP GOAL: {step_goal}\n\n"
        f"SCOUT FINDINGS ({completed} of {planned} scouts completed):\n"
        f"{findings}\n\n"
        "SYNTHESIS INSTRUCTIONS:\n"
        "1. Write a comprehensive synthesis organized by THEME. Do NOT organize by scout number.\n"
        "2. For every claim, include its source URL inline as [URL] immediately after the claim.\n"
        '3. Every URL listed in any "SOURCES FROM THIS SUBCALL" line MUST appear somewhere in your output.\n'
        "4. When scouts contradict each other, present both sides with their respective citations.\n"
        "5. Include all statistics, dates, named organizations, and quantitative data from the scouts.\n"
        "6. Do NOT add any information not present in the scout reports.\n"
        "7. Write until all findings are covered - do not stop early.\n"
        '8. After the synthesis prose, write a "## Sources" section listing every unique URL on its own line '
        "formatted as: [URL] - Title (if known)."
    )


def continuation_prompt(tail: str, base_prompt: str) -> str:
    return (
        "Continue the synthesis exactly where it stopped. Do not repeat earlier text. "
        "Keep every remaining URL as an inline [URL] citation and finish with the Sources section.\n\n"
        f"TEXT SO FAR (ends here):\n{tail}\n\n{base_prompt}"
    )


def domain_of(url: str) -> str | None:
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or None


@dataclass(slots=True)
class SubcallResult:
    subquestion: str
    status: str
    response_text: str | None = None
    grounding: GroundingMetadata | None = None
    web_search_queries: list[str] = field(default_factory=list)
    chunks: list[tuple[str, str | None]] = field(default_factory=list)
    supports: list[GroundingSupport] = field(default_factory=list)
    usage: dict[str, Any] | None = None
    error: str | None = None


@dataclass(slots=True)
class RankedSource:
    url: str
    canonical_url: str
    title: str | None
    domain: str | None
    support_count: int
    avg_confidence: float | None


@dataclass(slots=True)
class CoverageMetrics:
    subcalls_planned: int
    subcalls_completed: int
    subcalls_failed: int
    unique_sources: int
    unique_domains: int
    web_search_query_count: int
    grounded_segments: int
    avg_confidence: float | None


@dataclass(slots=True)
class FanOutResult:
    text: str
    grounding: GroundingMetadata
    sources: list[dict[str, Any]]
    usage: dict[str, Any]
    subcall_results: list[SubcallResult]
    coverage: CoverageMetrics
    ranked_sources: list[RankedSource]


@dataclass(slots=True)
class _Merged:
    chunks: list[GroundingChunk] = field(default_factory=list)
    supports: list[GroundingSupport] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)
    stats: dict[int, list[float]] = field(default_factory=dict)
    support_counts: dict[int, int] = field(default_factory=dict)
    confidences: list[float] = field(default_factory=list)


def merge_subcalls(completed: list[SubcallResult]) -> _Merged:
    """Merge chunks by canonical URL and remap each support onto the merged indices."""
    merged = _Merged()
    index_by_canonical: dict[str, int] = {}
    for result in completed:
        merged.queries.extend(result.web_search_queries)
        local_to_merged: dict[int, int] = {}
        for local_idx, (uri, title) in enumerate(result.chunks):
            canonical = canonicalize_url(uri)
            if canonical not in index_by_canonical:
                index_by_canonical[canonical] = len(merged.chunks)
                merged.chunks.append(GroundingChunk(web=GroundingWeb(uri=uri, title=title)))
            local_to_merged[local_idx] = index_by_canonical[canonical]

        for support in result.supports:
            mapped = list(
                dict.fromkeys(local_to_merged[i] for i in support.grounding_chunk_indices if i in local_to_merged)
            )
            if not mapped:
                continue
            scores = [s for s in support.confidence_scores if 0 <= s <= 1]
            merged.confidences.extend(scores)
            for idx in mapped:
                merged.support_counts[idx] = merged.support_counts.get(idx, 0) + 1
                merged.stats.setdefault(idx, []).extend(scores)
            merged.supports.append(support.model_copy(update={"grounding_chunk_indices": mapped}))
    return merged


def rank_sources(merged: _Merged) -> list[RankedSource]:
    ranked = []
    for idx, chunk in enumerate(merged.chunks):
        url = chunk.web.uri or ""
        canonical = canonicalize_url(url)
        scores = merged.stats.get(idx, [])
        ranked.append(
            RankedSource(
                url=url,
                canonical_url=canonical,
                title=chunk.web.title,
                domain=domain_of(canonical),
                support_count=merged.support_counts.get(idx, 0),
                avg_confidence=sum(scores) / len(scores) if scores else None,
            )
        )
    ranked.sort(
        key=lambda s: (s.support_count, s.avg_confidence if s.avg_confidence is not None else -1),
        reverse=True,
    )
    return ranked


def format_findings(completed: list[SubcallResult]) -> str:
    blocks = []
    for idx, item in enumerate([r for r in completed if r.response_text]):
        text = item.response_text or ""
        if idx >= FULL_TEXT_SCOUTS and len(text) > SUBCALL_TEXT_CHAR_LIMIT:
            text = text[:SUBCALL_TEXT_CHAR_LIMIT] + "... [truncated]"
        url_list = " ".join(f"[{uri}]" for uri, _ in item.chunks if uri)
        appendix = f"\nSOURCES FROM THIS SUBCALL: {url_list}" if url_list else ""
        blocks.append(f"---\n[SCOUT {idx + 1} | subquestion: {item.subquestion}]\n{text}{appendix}\n---")
    return "\n".join(blocks)


def fallback_text(completed: list[SubcallResult], merged: _Merged) -> str:
    body = "\n\n".join(f"### {r.subquestion}\n{r.response_text}" for r in completed if r.response_text)
    urls = "\n".join(f"[{c.web.uri}]" for c in merged.chunks if c.web and c.web.uri)
    return body + (f"\n\n## Sources\n{urls}" if urls else "")


def append_missing_urls(text: str, urls: list[str]) -> str:
    missing = [u for u in dict.fromkeys(urls) if u not in text]
    if not missing:
        return text
    listing = "\n".join(f"[{u}]" for u in missing)
    if "## Sources" in text:
        return f"{text.rstrip()}\n{listing}"
    return f"{text.rstrip()}\n\n## Sources\n{listing}"


class FanOutEngine:
    def __init__(self, client: GeminiClient, *, clock: Callable[[], float] = time.monotonic):
        self.client = client
        self._clock = clock

    async def run(
        self,
        prompt: str,
        query_pack: list[str],
        *,
        model: str,
        max_output_tokens: int,
        timeout_ms: int,
        max_parallel: int = 6,
        max_subcalls: int = 30,
    ) -> FanOutResult:
        total_s = (timeout_ms if timeout_ms > 0 else 8 * 60_000) / 1000
        start = self._clock()
        consolidation_budget_s = max(15.0, total_s * 0.3)
        subcall_deadline = start + max(15.0, total_s - consolidation_budget_s)
        max_parallel = max(1, min(10, int(max_parallel)))
        max_subcalls = max(1, min(30, int(max_subcalls)))

        cleaned = [q.strip() for q in query_pack if isinstance(q, str) and q.strip()][:max_subcalls]
        subquestions = cleaned or [prompt[:300]]
        per_subcall_base_s = max(8.0, total_s * 0.8 / max_parallel)

        results: list[SubcallResult] = []
        next_index = 0

        async def worker() -> None:
            nonlocal next_index
            while True:
                if self._clock() >= subcall_deadline:
                    return
                idx = next_index
                next_index += 1
                if idx >= len(subquestions):
                    return
                subquestion = subquestions[idx]
                remaining = max(0.0, subcall_deadline - self._clock())
                timeout_s = max(5.0, min(per_subcall_base_s, remaining))
                try:
                    response = await self.client.grounded_subcall(
                        scout_prompt(prompt, subquestion),
                        model=model,
                        max_output_tokens=SUBCALL_MAX_TOKENS,
                        timeout_s=timeout_s,
                    )
                except Exception as e:
                    logger.warning(f"Fan-out subcall failed for '{subquestion[:80]}': {e}")
                    results.append(SubcallResult(subquestion=subquestion, status="failed", error=str(e)))
                    continue
                grounding = response.grounding
                results.append(
                    SubcallResult(
                        subquestion=subquestion,
                        status="completed",
                        response_text=response.text.strip(),
                        grounding=grounding,
                        web_search_queries=list(grounding.web_search_queries) if grounding else [],
                        chunks=[(u, t) for u, t in grounding.chunk_urls() if is_http_url(u)] if grounding else [],
                        supports=list(grounding.grounding_supports) if grounding else [],
                        usage=response.usage_metadata,
                    )
                )

        await asyncio.gather(*(worker() for _ in range(min(max_parallel, len(subquestions)))))

        completed = [r for r in results if r.status == "completed"]
        merged = merge_subcalls(completed)
        ranked = rank_sources(merged)
        coverage = CoverageMetrics(
            subcalls_planned=len(subquestions),
            subcalls_completed=len(completed),
            subcalls_failed=len(subquestions) - len(completed),
            unique_sources=len({s.canonical_url for s in ranked}),
            unique_domains=len({s.domain for s in ranked if s.domain}),
            web_search_query_count=len(merged.queries),
            grounded_segments=len(merged.supports),
            avg_confidence=sum(merged.confidences) / len(merged.confidences) if merged.confidences else None,
        )

        findings = format_findings(completed)
        all_urls = [c.web.uri for c in merged.chunks if c.web and c.web.uri]
        if not findings.strip():
            text = NO_FINDINGS_TEXT
        else:
            text = await self._consolidate(
                prompt,
                findings,
                completed,
                merged,
                planned=len(subquestions),
                model=model,
                start=start,
                total_s=total_s,
                consolidation_budget_s=consolidation_budget_s,
            )
            text = append_missing_urls(text, all_urls)

        grounding = GroundingMetadata(
            web_search_queries=merged.queries,
            grounding_chunks=merged.chunks,
            grounding_supports=merged.supports,
        )
        return FanOutResult(
            text=text,
            grounding=grounding,
            sources=[{"url": c.web.uri, "title": c.web.title} for c in merged.chunks if c.web],
            usage={
                "subcall_usage": [r.usage for r in results],
                "subcalls_completed": coverage.subcalls_completed,
                "subcalls_failed": coverage.subcalls_failed,
            },
            subcall_results=results,
            coverage=coverage,
            ranked_sources=ranked,
        )

    async def _consolidate(
        self,
        prompt: str,
        findings: str,
        completed: list[SubcallResult],
        merged: _Merged,
        *,
        planned: int,
        model: str,
        start: float,
        total_s: float,
        consolidation_budget_s: float,
    ) -> str:
        step_goal = next((line.strip() for line in prompt.split("\n") if line.strip()), "Research step synthesis")
        base = consolidation_prompt(step_goal[:240], findings, len(completed), planned)
        output_tokens = min(8000, max(4000, len(completed) * 300))

        def remaining_s() -> float:
            return start + total_s - self._clock()

        try:
            timeout_s = max(15.0, min(consolidation_budget_s, max(5.0, remaining_s())))
            response = await self.client.consolidate(
                base,
                system_instruction=CONSOLIDATION_SYSTEM_INSTRUCTION,
                model=model,
                max_output_tokens=output_tokens,
                timeout_s=timeout_s,
            )
        except Exception as e:
            logger.warning(f"Fan-out consolidation failed, falling back to scout text: {e}")
            return fallback_text(completed, merged)

        text = response.text.strip()
        finish = response.finish_reason
        for _ in range(MAX_CONTINUATIONS):
            if not (finish == "MAX_TOKENS" or looks_truncated(text)):
                break
            if remaining_s() <= 5.0:
                break
            try:
                more = await self.client.consolidate(
                    continuation_prompt(text[-900:], base),
                    system_instruction=CONSOLIDATION_SYSTEM_INSTRUCTION,
                    model=model,
                    max_output_tokens=output_tokens,
                    timeout_s=max(5.0, remaining_s()),
                )
            except Exception as e:
                logger.warning(f"Fan-out continuation failed: {e}")
                break
            addition = more.text.strip()
            if not addition:
                break
            text = f"{text}\n{addition}"
            finish = more.finish_reason
        return text
