"""Tests for step configuration, the step schedule, prompt parsing and citation handling."""
import json

from deep_research.models.payloads import UrlCitation
from deep_research.research_core.citations import (
    canonicalize_url,
    citation_id_for,
    evidence_from_json,
    normalize_citations,
    normalize_openai_citations,
    reliability_tags,
)
from deep_research.research_core.prompts import (
    build_step_prompt,
    looks_truncated,
    parse_json_object,
    parse_refinement_output,
    plan_query_pack,
    step_label,
    step_type_at,
    total_steps,
)
from deep_research.research_core.step_config import STEP_SEQUENCE, get_provider_config, load_provider_configs


class TestStepConfig:
    def test_defaults_map_tiers_to_provider_models(self):
        configs = load_provider_configs("")
        openai = configs["openai"]
        assert openai.steps["SECTION_SYNTHESIS"].model_tier == "pro"
        assert openai.model_for("SHORTLIST_RESULTS") == openai.nano_model
        assert configs["gemini"].model_for("DEEP_READ") == configs["gemini"].full_model

    def test_overrides_are_clamped_and_aliases_applied(self):
        raw = json.dumps(
            {
                "gemini": {
                    "deep_model": "gemini-custom-deep",
                    "max_gap_loops": 9,
                    "shortlist_size": 2,
                    "steps": {"GAP_CHECK": {"model_tier": "deep", "max_output_tokens": 10}},
                }
            }
        )
        gemini = load_provider_configs(raw)["gemini"]
        assert gemini.full_model == "gemini-custom-deep"
        assert gemini.pro_model == "gemini-custom-deep"
        assert gemini.max_gap_loops == 3
        assert gemini.shortlist_size == 8
        assert gemini.steps["GAP_CHECK"].model_tier == "full"
        assert gemini.steps["GAP_CHECK"].max_output_tokens == 300

    def test_invalid_json_falls_back_to_defaults(self):
        assert load_provider_configs("{not json")["openai"].max_gap_loops == 2

    def test_cached_lookup(self):
        assert get_provider_config("openai") is get_provider_config("openai")


class TestStepSchedule:
    def test_schedule_without_gap_loops(self):
        assert total_steps(0) == 8
        assert [step_type_at(i, 0) for i in range(8)] == list(STEP_SEQUENCE)

    def test_gap_loop_repeats_the_loop_body(self):
        assert total_steps(1) == 14
        assert step_type_at(7, 1) == "DISCOVER_SOURCES_WITH_PLAN"
        assert step_type_at(12, 1) == "GAP_CHECK"
        assert step_type_at(13, 1) == "SECTION_SYNTHESIS"
        assert step_label(14, 1) is None

    def test_json_steps_expect_json(self):
        prompt = build_step_prompt(
            "GAP_CHECK", question="q", prior_summary="", plan=None, max_candidates=40, shortlist_size=18
        )
        assert prompt.expects_json
        assert not build_step_prompt(
            "DEEP_READ", question="q", prior_summary="", plan=None, max_candidates=40, shortlist_size=18
        ).expects_json


class TestPromptParsing:
    def test_parse_json_object_from_wrapped_text(self):
        assert parse_json_object('Here you go:\n{"a": 1}\nThanks') == {"a": 1}
        assert parse_json_object("[1, 2]") is None
        assert parse_json_object("") is None

    def test_refinement_questions(self):
        text = "CLARIFICATION REQUIRED:\n1. Which region?\n2. Which time frame?\n- Which industry?"
        assert parse_refinement_output(text) == ["Which region?", "Which time frame?", "Which industry?"]
        assert parse_refinement_output("NONE") == []
        assert parse_refinement_output("A refined question without the marker") == []

    def test_plan_query_pack_dedupes_and_falls_back(self):
        plan = {"sections": [{"query_pack": ["a", "b"]}, {"query_pack": ["b", " c "]}, "junk"]}
        assert plan_query_pack(plan, "q") == ["a", "b", "c"]
        assert plan_query_pack(None, "q") == ["q"]

    def test_looks_truncated(self):
        assert looks_truncated("The sentence stops mid")
        assert not looks_truncated("Complete sentence.")
        assert not looks_truncated("")


class TestCitations:
    def test_canonicalize_drops_fragment_and_tracking(self):
        url = "https://example.com/a?utm_source=x&id=3#section"
        assert canonicalize_url(url) == "https://example.com/a?id=3"

    def test_normalize_walks_nested_sources_then_text(self):
        raw = {"items": [{"uri": "https://data.gov/x", "title": "Gov"}, {"href": "ftp://nope"}]}
        citations = normalize_citations("gemini", "See https://nature.com/article.", raw)
        assert [c.url for c in citations] == ["https://data.gov/x", "https://nature.com/article"]
        assert citations[0].reliability_tags == ["gov", "primary"]
        assert citations[0].citation_id == citation_id_for("https://data.gov/x")

    def test_reliability_tags(self):
        assert reliability_tags("https://www.reuters.com/x") == ["press"]
        assert reliability_tags("https://someone.substack.com/p") == ["blog"]
        assert reliability_tags("not a url") == ["unknown"]

    def test_evidence_from_json_skips_rows_without_claims(self):
        citations = normalize_citations("openai", "", [{"url": "https://a.example"}])
        evidence = evidence_from_json(
            [{"claim": "Claim one", "confidence": "high"}, {"claim": ""}, "junk", {"claim": "Two", "confidence": "x"}],
            citations,
        )
        assert [e.claim for e in evidence] == ["Claim one", "Two"]
        assert evidence[0].confidence == "high"
        assert evidence[1].confidence == "med"
        assert evidence[0].source_citation_ids == [citations[0].citation_id]

    def test_openai_annotations_become_numbered_refs(self):
        text = "First claim. Second claim."
        annotations = [
            UrlCitation(url="https://a.example/1", end_index=12),
            UrlCitation(url="https://b.example/2.", end_index=26),
            UrlCitation(url="https://a.example/1", end_index=26),
        ]
        result = normalize_openai_citations(text, annotations)
        assert [r.url for r in result.references] == ["https://a.example/1", "https://b.example/2"]
        assert result.text_with_refs.startswith("First claim. [1](https://a.example/1)")
        assert result.text_with_refs.endswith("[2](https://b.example/2) [1](https://a.example/1)")
