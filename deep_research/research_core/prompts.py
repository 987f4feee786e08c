"""Step scheduling and prompt construction for the research pipeline."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from deep_research.research_core.step_config import STEP_SEQUENCE

STEP_LABELS: dict[str, str] = {
    "DEVELOP_RESEARCH_PLAN": "Develop Research Plan",
    "DISCOVER_SOURCES_WITH_PLAN": "Discover Sources",
    "SHORTLIST_RESULTS": "Shortlist Results",
    "DEEP_READ": "Deep Read",
    "EXTRACT_EVIDENCE": "Extract Evidence",
    "COUNTERPOINTS": "Counterpoints",
    "GAP_CHECK": "Gap Check",
    "SECTION_SYNTHESIS": "Section Synthesis",
}

JSON_STEPS = frozenset({"DEVELOP_RESEARCH_PLAN", "SHORTLIST_RESULTS", "EXTRACT_EVIDENCE", "GAP_CHECK"})

# DISCOVER_SOURCES_WITH_PLAN .. GAP_CHECK, repeated once per gap loop
LOOP_BODY: tuple[str, ...] = STEP_SEQUENCE[1:7]


def total_steps(gap_loops: int) -> int:
    return len(LOOP_BODY) * (gap_loops + 1) + 2


def step_type_at(index: int, gap_loops: int) -> str:
    """Step type at ``index`` once ``gap_loops`` extra gap blocks have been scheduled."""
    if index <= 0:
        return STEP_SEQUENCE[0]
    if index >= total_steps(gap_loops) - 1:
        return STEP_SEQUENCE[-1]
    return LOOP_BODY[(index - 1) % len(LOOP_BODY)]


def step_label(index: int, gap_loops: int) -> str | None:
    if index >= total_steps(gap_loops):
        return None
    return STEP_LABELS[step_type_at(index, gap_loops)]


@dataclass(frozen=True, slots=True)
class StepPrompt:
    prompt: str
    expects_json: bool


def compact_summary(text: str, max_chars: int = 800) -> str:
    t = re.sub(r"\s+", " ", text).strip()
    if len(t) <= max_chars:
        return t
    return f"{t[:max_chars]}..."


def summarize_prior_steps(steps: list[Any]) -> str:
    lines = []
    for step in steps[-4:]:
        body = (step.output_excerpt or step.raw_output or "")[:320]
        lines.append(f"Step {step.step_index + 1} {step.step_type}: {body}")
    return "\n".join(lines)


def build_step_prompt(
    step_type: str,
    *,
    question: str,
    prior_summary: str,
    plan: dict[str, Any] | None,
    max_candidates: int,
    shortlist_size: int,
) -> StepPrompt:
    plan_text = json.dumps(plan)[:6000] if plan else "null"
    base = f"Question:\n{question}\n\nPrior step summary:\n{prior_summary or 'None yet.'}\n\nCurrent plan:\n{plan_text}"

    if step_type == "DEVELOP_RESEARCH_PLAN":
        return StepPrompt(
            prompt=(
                f"{base}\n\nReturn ONLY JSON with schema:\n"
                '{"objectives":string[],"outline":string[],"sections":[{"section":string,"objectives":string[],'
                '"query_pack":string[],"acceptance_criteria":string[]}],'
                '"source_quality_requirements":{"primary_sources_required":boolean,"recency":string,'
                '"geography":string,"secondary_sources_allowed":boolean},'
                '"token_budgets":object,"output_budgets":object}'
            ),
            expects_json=True,
        )
    if step_type == "SHORTLIST_RESULTS":
        return StepPrompt(
            prompt=(
                f"{base}\n\nReturn ONLY JSON with schema:\n"
                '{"shortlist":[{"url":string,"title":string,"publisher":string,"reason":string,'
                '"section":string,"read_priority":"high|med|low"}]}'
                f"\nKeep {shortlist_size} items max, diverse viewpoints, include primary sources where possible."
            ),
            expects_json=True,
        )
    if step_type == "EXTRACT_EVIDENCE":
        return StepPrompt(
            prompt=(
                f"{base}\n\nReturn ONLY JSON with schema:\n"
                '{"evidence":[{"claim":string,"supporting_snippet":string,"confidence":"low|med|high","notes":string}]}'
                "\nFocus on metrics, definitions, timelines, and contradictions."
            ),
            expects_json=True,
        )
    if step_type == "GAP_CHECK":
        return StepPrompt(
            prompt=(
                f"{base}\n\nReturn ONLY JSON with schema:\n"
                '{"missing_sections":string[],"weak_claims":string[],"missing_primary_sources":string[],'
                '"follow_up_queries":string[],"severe_gaps":boolean}'
            ),
            expects_json=True,
        )
    if step_type == "SECTION_SYNTHESIS":
        return StepPrompt(
            prompt=(
                f"{base}\n\nProduce final provider report in markdown with:\n"
                "- Title\n- Table of Contents\n- Section/subsection hierarchy\n"
                "- Inline citations [#] mapped to sources\n"
                "- What we know / what we do not know in each section\n"
                "- Summary and implications\n- Full Sources list with URLs"
            ),
            expects_json=False,
        )
    if step_type == "DISCOVER_SOURCES_WITH_PLAN":
        return StepPrompt(
            prompt=(
                f"{base}\n\nDiscover and list {max_candidates} candidate sources with URL, title, publisher, "
                "section fit, and 1-2 line rationale."
            ),
            expects_json=False,
        )
    if step_type == "DEEP_READ":
        return StepPrompt(
            prompt=(
                f"{base}\n\nDeep-read shortlisted sources by section. For each source provide key takeaways, "
                "critical datapoints, and limitations."
            ),
            expects_json=False,
        )
    return StepPrompt(
        prompt=(
            f"{base}\n\nGenerate strongest counterarguments, disagreements among sources, "
            "and bias/limitation analysis with citations."
        ),
        expects_json=False,
    )


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Parse model output as a JSON object, falling back to the outermost braces."""
    trimmed = (text or "").strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        first = trimmed.find("{")
        last = trimmed.rfind("}")
        if first < 0 or last <= first:
            return None
        try:
            parsed = json.loads(trimmed[first : last + 1])
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def fallback_plan(question: str) -> dict[str, Any]:
    return {
        "objectives": ["Answer the user question with evidence-backed findings and explicit uncertainty."],
        "outline": ["Context", "Current Evidence", "Counterpoints", "Gaps", "Implications"],
        "sections": [
            {
                "section": "Context",
                "objectives": ["Define scope and key terms"],
                "query_pack": [question, f"{question} definitions"],
                "acceptance_criteria": ["Clear scope and definitions"],
            },
            {
                "section": "Evidence",
                "objectives": ["Collect primary and secondary sources"],
                "query_pack": [f"{question} data", f"{question} primary sources"],
                "acceptance_criteria": ["At least one primary source", "Cross-source corroboration"],
            },
            {
                "section": "Counterpoints",
                "objectives": ["Capture strongest disagreements and limits"],
                "query_pack": [f"{question} criticism", f"{question} limitations"],
                "acceptance_criteria": ["At least two meaningful counterarguments"],
            },
        ],
        "source_quality_requirements": {
            "primary_sources_required": True,
            "recency": "Prioritize last 24 months unless foundational history is required.",
            "geography": "Global unless the question specifies geography.",
            "secondary_sources_allowed": True,
        },
        "token_budgets": {},
        "output_budgets": {},
    }


def plan_query_pack(plan: dict[str, Any] | None, question: str, limit: int = 30) -> list[str]:
    """Flatten every section's query_pack, deduplicated, in plan order."""
    queries: list[str] = []
    sections = (plan or {}).get("sections") or []
    for section in sections:
        if not isinstance(section, dict):
            continue
        for query in section.get("query_pack") or []:
            if isinstance(query, str) and query.strip() and query.strip() not in queries:
                queries.append(query.strip())
    return queries[:limit] or [question]


# --- Refinement / rewrite / summary prompts ---

REFINEMENT_INSTRUCTIONS = (
    "You are a Research Question Refinement Assistant.\n"
    "Your task is to improve the clarity, specificity, and research-readiness of a user's research question "
    "before it is sent to a deep research model.\n\n"
    "Your Responsibilities\n\n"
    "1. Assess the Input Question\n"
    " - Determine whether the question is:\n"
    " - Clear and specific\n"
    " - Too broad\n"
    " - Ambiguous\n"
    " - Missing important constraints (timeframe, geography, population, context, definitions, etc.)\n\n"
    "2. If Clarification Is Needed\n"
    " - Ask concise, targeted clarifying questions.\n"
    " - Only ask questions that materially improve research quality.\n"
    " - Limit to 1-5 high-impact clarifying questions.\n"
    " - Do NOT explain why you are asking.\n"
    " - Do NOT attempt to answer the research question yet.\n\n"
    "3. If No Clarification Is Needed\n"
    " - Output NONE.\n\n"
    "Output Rules\n"
    "You must output in ONE of the following two formats:\n\n"
    "Format A: Clarification Needed\n"
    "CLARIFICATION REQUIRED:\n"
    "1. [Question]\n"
    "2. [Question]\n"
    "3. [Question]\n\n"
    "Format B: No Clarification Needed\n"
    "NONE\n\n"
    "Do not output anything else.\n"
    "Do not include explanations.\n"
    "Do not include commentary.\n"
    "Do not answer the research question.\n\n"
    "If the user input is not a research question, reformulate it into one when possible.\n\n"
)

_CLARIFICATION_MARKER = "CLARIFICATION REQUIRED:"


def refinement_prompt(topic: str) -> str:
    return f"{REFINEMENT_INSTRUCTIONS}USER INPUT:\n{topic}"


def parse_refinement_output(text: str) -> list[str]:
    """Questions from a "CLARIFICATION REQUIRED:" block; anything else means none."""
    normalized = (text or "").strip().replace("\r\n", "\n")
    if not normalized:
        return []
    upper = normalized.upper()
    if upper == "NONE" or upper.startswith("NONE\n") or upper.startswith("NONE "):
        return []
    marker = upper.find(_CLARIFICATION_MARKER)
    if marker < 0:
        return []
    after = normalized[marker + len(_CLARIFICATION_MARKER) :].strip()
    questions = []
    for line in after.split("\n"):
        line = re.sub(r"^\s*\d+\.\s*", "", line)
        line = re.sub(r"^[\-\*\s]+", "", line).strip()
        if line:
            questions.append(line)
    return questions[:5]


def rewrite_prompt_text(topic: str, draft: str, clarifications: list[tuple[str, str]]) -> str:
    if clarifications:
        clarifications_text = "\n".join(
            f"{index}. {question} → {answer}" for index, (question, answer) in enumerate(clarifications, start=1)
        )
    else:
        clarifications_text = "None."
    return (
        "Rewrite the user prompt into a clear, detailed research prompt. "
        "Include constraints from clarifications. Return only the rewritten prompt.\n\n"
        f"Original topic: {topic}\n"
        f"Draft prompt: {draft}\n"
        f"Clarifications:\n{clarifications_text}"
    )


def truncate_for_summary(text: str, max_chars: int = 12000) -> str:
    trimmed = (text or "").strip()
    if len(trimmed) <= max_chars:
        return trimmed
    return f"{trimmed[:max_chars]}\n\n[truncated]"


def summary_prompt(
    provider_label: str,
    research_text: str,
    references: list[Any],
    *,
    include_refs: bool,
    single_paragraph: bool = True,
) -> str:
    if references:
        refs_text = "\n".join(
            f"[{ref.n}] {f'{ref.title} - ' if ref.title else ''}{ref.url}" for ref in references
        )
    else:
        refs_text = "None."
    if single_paragraph:
        header = (
            f"Write exactly ONE paragraph summarizing the following {provider_label} research output.\n"
            "- Use neutral, factual language.\n"
        )
    else:
        header = (
            f"Write a thorough summary of the following {provider_label} research output.\n"
            "- Use neutral, factual language.\n"
            "- Aim for 2-4 paragraphs and complete sentences.\n"
            "- Do NOT cut off mid-sentence.\n"
        )
    if include_refs:
        cite_rules = (
            "- If you make a factual claim that is supported by a reference, add a citation like [3].\n"
            "- Use ONLY the reference numbers provided below.\n"
            "- Do NOT invent citations.\n"
        )
    else:
        cite_rules = "- Do NOT include citations.\n"
    return (
        f"{header}{cite_rules}- Do NOT include a title or bullet points.\n\n"
        f"REFERENCES:\n{refs_text}\n\n"
        f"RESEARCH OUTPUT:\n{truncate_for_summary(research_text)}"
    )


def summary_continuation_prompt(previous: str, base_prompt: str) -> str:
    return (
        "Continue the summary without repeating any sentences.\n"
        "- Return ONLY the continuation text.\n"
        "- Ensure the final output ends with a complete sentence.\n\n"
        f"PREVIOUS SUMMARY (do not repeat):\n{previous[-900:]}\n\n"
        f"{base_prompt}"
    )


def looks_truncated(text: str) -> bool:
    trimmed = (text or "").strip()
    if not trimmed:
        return False
    return trimmed[-1] not in ".?!)]}\"'"
