"""OpenAI Responses API client: refinement, reasoning steps and background deep research."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

import openai
from loguru import logger

from deep_research.config import settings
from deep_research.errors import PermanentProviderError, TransientProviderError
from deep_research.models.payloads import OpenAIResponse
from deep_research.research_core.prompts import (
    parse_refinement_output,
    refinement_prompt,
    rewrite_prompt_text,
    summary_prompt,
)
from deep_research.services import logger as log_service
from deep_research.tools.rate_limiter import parse_retry_after_ms

RETRYABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}
FINISHED_STATUSES = {"completed", "failed", "cancelled", "incomplete"}


def get_sdk_client() -> Any:
    return openai.AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url.strip() or "https://api.openai.com/v1",
        max_retries=3,
    )


def source_budget_text(max_sources: int | None) -> str | None:
    if max_sources is None:
        return None
    n = max(1, min(20, int(max_sources)))
    return (
        f"SOURCE BUDGET: Use at most {n} distinct sources. "
        "Prefer primary sources and highly reputable secondary sources."
    )


def _map_sdk_error(error: Exception) -> Exception:
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransientProviderError(f"OpenAI connection error: {error}")
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        retry_after = error.response.headers.get("retry-after") if error.response is not None else None
        error_cls = TransientProviderError if status in RETRYABLE_STATUSES else PermanentProviderError
        return error_cls(
            f"OpenAI request failed ({status}): {error.message}",
            status_code=status,
            retry_after_ms=parse_retry_after_ms(retry_after),
        )
    return error


class OpenAIClient:
    def __init__(
        self,
        sdk_client: Any | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._sdk = sdk_client
        self._sleep = sleep

    @property
    def sdk(self) -> Any:
        if self._sdk is None:
            if not settings.openai_api_key:
                raise PermanentProviderError("OPENAI_API_KEY is not set")
            self._sdk = get_sdk_client()
        return self._sdk

    async def _call(self, caller: str, model: str, /, method: str = "create", **kwargs: Any) -> OpenAIResponse:
        start = time.monotonic()
        try:
            fn = getattr(self.sdk.responses, method)
            raw = await fn(**kwargs) if method == "create" else await fn(kwargs.pop("response_id"), **kwargs)
        except (TransientProviderError, PermanentProviderError):
            raise
        except Exception as e:
            mapped = _map_sdk_error(e)
            log_service.log_provider_call(
                "openai", model, caller, int((time.monotonic() - start) * 1000), status="error", error=str(mapped)
            )
            if mapped is e:
                raise
            raise mapped from e

        log_service.log_provider_call("openai", model, caller, int((time.monotonic() - start) * 1000))
        data = raw.model_dump() if hasattr(raw, "model_dump") else raw
        return OpenAIResponse.model_validate(data)

    # --- Refinement ---

    async def start_refinement(self, topic: str, *, timeout_s: float | None = None) -> list[str]:
        response = await self._call(
            "start_refinement",
            settings.openai_refiner_model,
            model=settings.openai_refiner_model,
            input=refinement_prompt(topic),
            timeout=timeout_s,
        )
        return parse_refinement_output(response.text)

    async def rewrite_prompt(
        self, topic: str, draft: str, clarifications: list[tuple[str, str]], *, timeout_s: float | None = None
    ) -> str:
        response = await self._call(
            "rewrite_prompt",
            settings.openai_refiner_model,
            model=settings.openai_refiner_model,
            input=rewrite_prompt_text(topic, draft, clarifications),
            timeout=timeout_s,
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
        response = await self._call(
            "summarize_for_report",
            settings.openai_summary_model,
            model=settings.openai_summary_model,
            input=summary_prompt(provider_label, research_text, references, include_refs=include_refs),
            timeout=timeout_s,
        )
        return response.text.strip()

    # --- Research steps ---

    async def reasoning_step(
        self,
        prompt: str,
        *,
        model: str,
        max_output_tokens: int,
        timeout_s: float | None = None,
        use_web_search: bool = False,
    ) -> OpenAIResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "input": prompt,
            "max_output_tokens": max(300, int(max_output_tokens)),
            "timeout": timeout_s,
        }
        if use_web_search:
            kwargs["tools"] = [{"type": "web_search_preview"}]
        return await self._call("reasoning_step", model, **kwargs)

    async def start_deep_research(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_sources: int | None = None,
        timeout_s: float | None = None,
    ) -> OpenAIResponse:
        """Create a background deep-research response. Returns the initial (usually queued) state."""
        model = model or settings.openai_deep_research_model
        budget = source_budget_text(max_sources)
        return await self._call(
            "start_deep_research",
            model,
            model=model,
            input=f"{budget}\n\n{prompt}" if budget else prompt,
            tools=[{"type": "web_search_preview"}],
            tool_choice="auto",
            max_tool_calls=settings.openai_max_tool_calls,
            background=True,
            timeout=min(60.0, timeout_s) if timeout_s else 60.0,
        )

    async def poll_deep_research(self, response_id: str, *, timeout_s: float | None = None) -> OpenAIResponse:
        return await self._call(
            "poll_deep_research",
            settings.openai_deep_research_model,
            method="retrieve",
            response_id=response_id,
            timeout=min(60.0, timeout_s) if timeout_s else 60.0,
        )

    async def wait_deep_research(self, response_id: str, *, timeout_s: float) -> OpenAIResponse:
        """Poll until the response finishes or ``timeout_s`` elapses."""
        start = time.monotonic()
        delay = 1.5
        last_status: str | None = None
        while time.monotonic() - start < timeout_s:
            response = await self.poll_deep_research(response_id, timeout_s=timeout_s)
            last_status = response.status
            if response.is_finished:
                return response
            await self._sleep(delay)
            delay = min(8.0, delay * 1.15)
        logger.warning(f"OpenAI research polling timed out response_id={response_id} status={last_status}")
        raise TransientProviderError(
            f"OpenAI research polling timed out response_id={response_id} status={last_status or 'unknown'}"
        )
