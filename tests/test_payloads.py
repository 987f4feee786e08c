"""Tests for lane job payload validation and provider response parsing."""
import pytest

from deep_research.errors import InvalidJobPayload
from deep_research.models.payloads import (
    GeminiResponse,
    OpenAIResponse,
    build_deep_research_job,
    build_idempotency_key,
    parse_deep_research_job_payload,
)


def test_build_job_uses_composite_idempotency_key():
    job = build_deep_research_job(topic_id="s1", model_run_id="r1", provider="openai", attempt=2)
    assert job.idempotency_key == "openai:s1:r1:2"
    assert job.job_id == job.idempotency_key
    assert build_idempotency_key("gemini", "s", "r", 1) == "gemini:s:r:1"


def test_parse_trims_values_and_falls_back_to_job_id():
    job = parse_deep_research_job_payload(
        {"topic_id": " s1 ", "model_run_id": "r1", "provider": "gemini", "attempt": 1, "job_id": " j-1 "}
    )
    assert job.topic_id == "s1"
    assert job.idempotency_key == "j-1"


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {"model_run_id": "r", "provider": "openai", "attempt": 1, "job_id": "j"},
        {"topic_id": "s", "model_run_id": "r", "provider": "anthropic", "attempt": 1, "job_id": "j"},
        {"topic_id": "s", "model_run_id": "r", "provider": "openai", "attempt": 0, "job_id": "j"},
        {"topic_id": "s", "model_run_id": "r", "provider": "openai", "attempt": True, "job_id": "j"},
        {"topic_id": "s", "model_run_id": "r", "provider": "openai", "attempt": 1},
    ],
)
def test_parse_rejects_invalid_payloads(payload):
    with pytest.raises(InvalidJobPayload):
        parse_deep_research_job_payload(payload)


def test_gemini_response_parses_camel_case_grounding():
    response = GeminiResponse.model_validate(
        {
            "candidates": [
                {
                    "content": {"parts": [{"text": "Hello "}, {"text": "world."}]},
                    "finishReason": "STOP",
                    "groundingMetadata": {
                        "webSearchQueries": ["q1"],
                        "groundingChunks": [
                            {"web": {"uri": "https://a.example/1", "title": "A"}},
                            {"web": {"title": "no uri"}},
                        ],
                        "groundingSupports": [
                            {"segment": {"endIndex": 5}, "groundingChunkIndices": [0], "confidenceScores": [0.9]}
                        ],
                    },
                }
            ],
            "usageMetadata": {"totalTokenCount": 12},
        }
    )
    assert response.text == "Hello world."
    assert response.finish_reason == "STOP"
    assert response.grounding.web_search_queries == ["q1"]
    assert response.grounding.chunk_urls() == [("https://a.example/1", "A")]
    assert response.grounding.grounding_supports[0].segment.end_index == 5


def test_gemini_response_without_candidates():
    response = GeminiResponse.model_validate({})
    assert response.text == ""
    assert response.grounding is None


def test_openai_response_text_and_annotations():
    response = OpenAIResponse.model_validate(
        {
            "id": "resp_1",
            "status": "completed",
            "output": [
                {"type": "web_search_call"},
                {
                    "type": "message",
                    "content": [
                        {
                            "type": "output_text",
                            "text": "Answer.",
                            "annotations": [
                                {"type": "url_citation", "url": "https://b.example", "end_index": 7},
                                {"type": "file_citation"},
                            ],
                        }
                    ],
                },
            ],
        }
    )
    assert response.text == "Answer."
    assert [a.url for a in response.annotations] == ["https://b.example"]
    assert response.is_finished


def test_openai_queued_response_is_not_finished():
    assert not OpenAIResponse(id="r", status="queued").is_finished
