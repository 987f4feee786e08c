"""OpenAI client tests with a fake SDK object."""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from deep_research.errors import TransientProviderError
from deep_research.tools.openai_client import OpenAIClient, source_budget_text


async def _no_sleep(seconds: float) -> None:
    return None


def _sdk(create=None, retrieve=None):
    return SimpleNamespace(responses=SimpleNamespace(create=create or AsyncMock(), retrieve=retrieve or AsyncMock()))


def _response(status: str, text: str = "", **extra) -> dict:
    return {"id": "resp_1", "status": status, "output_text": text, **extra}


@pytest.mark.asyncio
async def test_refinement_parses_questions():
    create = AsyncMock(return_value=_response("completed", "CLARIFICATION REQUIRED:\n1. Which market?"))
    client = OpenAIClient(_sdk(create=create))

    assert await client.start_refinement("EV batteries") == ["Which market?"]
    assert "EV batteries" in create.call_args.kwargs["input"]


@pytest.mark.asyncio
async def test_start_deep_research_runs_in_background_with_budget():
    create = AsyncMock(return_value=_response("queued"))
    client = OpenAIClient(_sdk(create=create))

    response = await client.start_deep_research("Study X", model="o3-deep-research", max_sources=50)

    kwargs = create.call_args.kwargs
    assert response.status == "queued"
    assert kwargs["background"] is True
    assert kwargs["input"].startswith(source_budget_text(20))
    assert kwargs["tools"] == [{"type": "web_search_preview"}]


@pytest.mark.asyncio
async def test_wait_deep_research_polls_until_finished():
    retrieve = AsyncMock(side_effect=[_response("in_progress"), _response("completed", "final")])
    client = OpenAIClient(_sdk(retrieve=retrieve), sleep=_no_sleep)

    response = await client.wait_deep_research("resp_1", timeout_s=30)

    assert response.text == "final"
    assert retrieve.await_count == 2
    assert retrieve.call_args.args == ("resp_1",)


@pytest.mark.asyncio
async def test_wait_deep_research_times_out_as_transient():
    client = OpenAIClient(_sdk(), sleep=_no_sleep)
    with pytest.raises(TransientProviderError, match="timed out"):
        await client.wait_deep_research("resp_1", timeout_s=0)


@pytest.mark.asyncio
async def test_sdk_rate_limit_maps_to_transient():
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    error = openai.RateLimitError(
        "rate limited", response=httpx.Response(429, headers={"retry-after": "2"}, request=request), body=None
    )
    client = OpenAIClient(_sdk(create=AsyncMock(side_effect=error)))

    with pytest.raises(TransientProviderError) as exc:
        await client.reasoning_step("q", model="gpt-x", max_output_tokens=10)
    assert exc.value.status_code == 429
    assert exc.value.retry_after_ms == 2000


@pytest.mark.asyncio
async def test_output_text_is_read_from_output_items():
    create = AsyncMock(
        return_value={
            "id": "resp_2",
            "status": "completed",
            "output": [
                {
                    "type": "message",
                    "content": [
                        {
                            "type": "output_text",
                            "text": "Cited claim.",
                            "annotations": [{"type": "url_citation", "url": "https://a.example", "end_index": 12}],
                        }
                    ],
                }
            ],
        }
    )
    response = await OpenAIClient(_sdk(create=create)).reasoning_step("q", model="gpt-x", max_output_tokens=10)

    assert response.text == "Cited claim."
    assert [a.url for a in response.annotations] == ["https://a.example"]
