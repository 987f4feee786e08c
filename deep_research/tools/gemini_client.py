"""Gemini generateContent client over httpx."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from deep_research.config import settings
from deep_research.errors import PermanentProviderError, ProviderError, TransientProviderError
from deep_research.models.payloads import GeminiResponse, GroundingMetadata
from deep_research.research_core.prompts import (
    looks_truncated,
    parse_refinement_output,
    refinement_prompt,
    rewrite_prompt_text,
    summary_continuation_prompt,
    summary_prompt,
)
from deep_research.services import logger as log_service
from deep_research.tools.rate_limiter import SlidingWindowRateLimiter, backoff_delay_ms, parse_retry_after_ms

RETRY_STATUSES = {429, 500, 503}
GOOGLE_SEARCH_TOOL = {"google_search": {}}

_shared_limiter: SlidingWindowRateLimiter | None = None


def shared_rate_limiter() -> SlidingWindowRateLimiter:
    """One limiter per process so every Gemini caller shares the RPM budget."""
    global _shared_limiter
    if _shared_limiter is None:
        _shared_limiter = SlidingWindowRateLimiter(rpm=settings.gemini_rpm)
    return _shared_limiter


def user_content(text: str) -> list[dict[str, Any]]:
    return [{"role": "user", "parts": [{"text": text}]}]


def _is_invalid_argument(message: str) -> bool:
    text = message.lower()
    return "invalid_argument" in text or ('"code": 400' in text and "invalid argument" in text)


def add_inline_url_citations_from_grounding(text: str, metadata: GroundingMetadata | None) -> str:
    """Insert ``[url]`` markers at grounded segment ends, working backwards from the end.

    Without usable supports, the chunk URLs are appended as a ``SOURCES:`` list.
    """
    if metadata is None:
        return text
    chunks = metadata.grounding_chunks
    insertions: list[tuple[int, str]] = []
    for support in metadata.grounding_supports:
        end_index = support.segment.end_index if support.segment else None
        if end_index is None or end_index <= 0:
            continue
        urls: list[str] = []
        for idx in support.grounding_chunk_indices[:10]:
            if 0 <= idx < len(chunks):
                web = chunks[idx].web
                if web and web.uri and web.uri.lower().startswith(("http://", "https://")) and web.uri not in urls:
                    urls.append(web.uri)
        if not urls:
            continue
        insertions.append((end_index, " ".join(f"[{u}]" for u in urls[:3])))

    if not insertions:
        unique: list[str] = []
        for uri, _ in metadata.chunk_urls():
            if uri.lower().startswith(("http://", "https://")) and uri not in unique:
                unique.append(uri)
        if not unique:
            return text
        return f"{text.strip()}\n\nSOURCES:\n" + "\n".join(f"[{u}]" for u in unique[:10])

    out = text
    for at, citation in sorted(insertions, key=lambda ins: ins[0], reverse=True):
        at = max(0, min(len(out), at))
        needs_space = at > 0 and not out[at - 1].isspace()
        out = f"{out[:at]}{' ' if needs_space else ''}{citation}{out[at:]}"
    return out


@dataclass(slots=True)
class ReasoningResult:
    text: str
    grounding: GroundingMetadata | None = None
    usage: dict[str, Any] | None = None


class GeminiClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.rate_limiter = rate_limiter or shared_rate_limiter()
        self.max_retries = max(1, max_retries or settings.gemini_max_retries)
        self._transport = transport
        self._sleep = sleep

    async def generate(
        self, model: str, body: dict[str, Any], *, timeout_s: float | None = None, caller: str = "generate"
    ) -> GeminiResponse:
        """One generateContent request. HTTP failures map onto the provider error taxonomy."""
        if not self.api_key:
            raise PermanentProviderError("GEMINI_API_KEY is not set")

        url = f"{self.base_url}/models/{model}:generateContent"
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=timeout_s or 120.0) as client:
                response = await client.post(url, params={"key": self.api_key}, json=body)
        except httpx.TimeoutException as e:
            log_service.log_provider_call("gemini", model, caller, status="error", error="timeout")
            raise TransientProviderError(f"Gemini request timeout: {e}") from e
        except httpx.TransportError as e:
            log_service.log_provider_call("gemini", model, caller, status="error", error=str(e))
            raise TransientProviderError(f"Gemini connection error: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        if response.status_code >= 400:
            message = f"Gemini request failed ({response.status_code}): {response.text}"
            retry_after = parse_retry_after_ms(response.headers.get("retry-after"))
            log_service.log_provider_call(
                "gemini", model, caller, duration_ms, status="error", error=f"HTTP {response.status_code}"
            )
            error_cls = (
                TransientProviderError
                if response.status_code in (408, 429) or response.status_code >= 500
                else PermanentProviderError
            )
            raise error_cls(message, status_code=response.status_code, retry_after_ms=retry_after)

        log_service.log_provider_call("gemini", model, caller, duration_ms)
        return GeminiResponse.model_validate(response.json())

    async def generate_with_retry(
        self, model: str, body: dict[str, Any], *, timeout_s: float | None = None, caller: str = "generate"
    ) -> GeminiResponse:
        """Rate-limited request retried on 429/500/503 with backoff that honors Retry-After."""
        for attempt in range(1, self.max_retries + 1):
            await self.rate_limiter.acquire(self._sleep)
            try:
                return await self.generate(model, body, timeout_s=timeout_s, caller=caller)
            except ProviderError as e:
                retryable = e.status_code in RETRY_STATUSES if e.status_code else e.retryable
                if not retryable or attempt >= self.max_retries:
                    raise
                delay_ms = backoff_delay_ms(attempt, e.retry_after_ms)
                logger.warning(f"Gemini {caller} attempt {attempt} failed ({e}); retrying in {delay_ms}ms")
                await self._sleep(delay_ms / 1000)
        raise RuntimeError("unreachable")

    # --- Refinement ---

    async def start_refinement(self, topic: str, *, timeout_s: float | None = None) -> list[str]:
        response = await self.generate_with_retry(
            settings.gemini_fast_model,
            {"contents": user_content(refinement_prompt(topic))},
            timeout_s=timeout_s,
            caller="start_refinement",
        )
        return parse_refinement_output(response.text)

    async def rewrite_prompt(
        self, topic: str, draft: str, clarifications: list[tuple[str, str]], *, timeout_s: float | None = None
    ) -> str:
        response = await self.generate_with_retry(
            settings.gemini_fast_model,
            {"contents": user_content(rewrite_prompt_text(topic, draft, clarifications))},
            timeout_s=timeout_s,
            caller="rewrite_prompt",
        )
        return response.text.strip()

    async def summarize_for_report(
        self,
        provider_label: str,
        research_text: str,
        references: list[Any],
        *,
        include_refs: bool = True,
        timeout_s: float | None = None,
    ) -> str:
        base = summary_prompt(
            provider_label, research_text, references, include_refs=include_refs, single_paragraph=False
        )
        first = await self.generate_with_retry(
            settings.gemini_fast_model,
            {"contents": user_content(base), "generationConfig": {"maxOutputTokens": 2000}},
            timeout_s=timeout_s,
            caller="summarize_for_report",
        )
        text = first.text.strip()
        finish = (first.finish_reason or "").lower()
        if "max" not in finish and not looks_truncated(text):
            return text

        second = await self.generate_with_retry(
            settings.gemini_fast_model,
            {
                "contents": user_content(summary_continuation_prompt(text, base)),
                "generationConfig": {"maxOutputTokens": 1200},
            },
            timeout_s=timeout_s,
            caller="summarize_for_report",
        )
        return f"{text}\n\n{second.text.strip()}".strip()

    # --- Research steps ---

    async def reasoning_step(
        self,
        prompt: str,
        *,
        model: str,
        max_output_tokens: int,
        timeout_s: float | None = None,
        use_search: bool = True,
    ) -> ReasoningResult:
        tokens = max(200, min(8000, int(max_output_tokens)))

        def body(search: bool) -> dict[str, Any]:
            payload: dict[str, Any] = {
                "contents": user_content(prompt),
                "generationConfig": {"maxOutputTokens": tokens},
            }
            if search:
                payload["tools"] = [GOOGLE_SEARCH_TOOL]
            return payload

        try:
            response = await self.generate_with_retry(
                model, body(use_search), timeout_s=timeout_s, caller="reasoning_step"
            )
        except PermanentProviderError as e:
            if not use_search or not _is_invalid_argument(str(e)):
                raise
            logger.warning("Gemini rejected the search tool; retrying reasoning step without it")
            response = await self.generate_with_retry(model, body(False), timeout_s=timeout_s, caller="reasoning_step")

        text = response.text.strip()
        grounding = response.grounding
        return ReasoningResult(
            text=add_inline_url_citations_from_grounding(text, grounding) if grounding else text,
            grounding=grounding,
            usage=response.usage_metadata,
        )

    async def grounded_subcall(
        self, prompt: str, *, model: str, max_output_tokens: int, timeout_s: float
    ) -> GeminiResponse:
        return await self.generate_with_retry(
            model,
            {
                "tools": [GOOGLE_SEARCH_TOOL],
                "contents": user_content(prompt),
                "generationConfig": {"maxOutputTokens": max_output_tokens},
            },
            timeout_s=timeout_s,
            caller="fanout_subcall",
        )

    async def consolidate(
        self, prompt: str, *, system_instruction: str, model: str, max_output_tokens: int, timeout_s: float
    ) -> GeminiResponse:
        return await self.generate_with_retry(
            model,
            {
                "system_instruction": {"parts": [{"text": system_instruction}]},
                "contents": user_content(prompt),
                "generationConfig": {"maxOutputTokens": max_output_tokens},
            },
            timeout_s=timeout_s,
            caller="fanout_consolidate",
        )
