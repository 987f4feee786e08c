from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from deep_research.config import settings

STEP_SEQUENCE: tuple[str, ...] = (
    "DEVELOP_RESEARCH_PLAN",
    "DISCOVER_SOURCES_WITH_PLAN",
    "SHORTLIST_RESULTS",
    "DEEP_READ",
    "EXTRACT_EVIDENCE",
    "COUNTERPOINTS",
    "GAP_CHECK",
    "SECTION_SYNTHESIS",
)

MODEL_TIERS = ("nano", "mini", "full", "pro")

_DEFAULT_STEPS: dict[str, tuple[str, int]] = {
    "DEVELOP_RESEARCH_PLAN": ("mini", 4000),
    "DISCOVER_SOURCES_WITH_PLAN": ("full", 12000),
    "SHORTLIST_RESULTS": ("nano", 4000),
    "DEEP_READ": ("full", 16000),
    "EXTRACT_EVIDENCE": ("nano", 8000),
    "COUNTERPOINTS": ("pro", 12000),
    "GAP_CHECK": ("nano", 4000),
    "SECTION_SYNTHESIS": ("pro", 32768),
}


@dataclass(frozen=True, slots=True)
class StepConfig:
    model_tier: str
    max_output_tokens: int


@dataclass(slots=True)
class ProviderResearchConfig:
    nano_model: str
    mini_model: str
    full_model: str
    pro_model: str
    steps: dict[str, StepConfig] = field(default_factory=dict)
    max_candidates: int = 40
    shortlist_size: int = 18
    max_gap_loops: int = 2

    def model_for(self, step_type: str) -> str:
        tier = self.steps[step_type].model_tier
        return getattr(self, f"{tier}_model")


def _as_int(value: Any, fallback: int, low: int, high: int) -> int:
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, n))


def _normalize_tier(raw: Any) -> str:
    if raw == "fast":
        return "mini"
    if raw == "deep":
        return "full"
    return raw if raw in MODEL_TIERS else "mini"


def default_provider_configs() -> dict[str, ProviderResearchConfig]:
    steps = {name: StepConfig(tier, tokens) for name, (tier, tokens) in _DEFAULT_STEPS.items()}
    return {
        "openai": ProviderResearchConfig(
            nano_model=settings.openai_nano_model,
            mini_model=settings.openai_mini_model,
            full_model=settings.openai_full_model,
            pro_model=settings.openai_pro_model,
            steps=dict(steps),
        ),
        "gemini": ProviderResearchConfig(
            nano_model=settings.gemini_fast_model,
            mini_model=settings.gemini_fast_model,
            full_model=settings.gemini_deep_model,
            pro_model=settings.gemini_deep_model,
            steps=dict(steps),
        ),
    }


def merge_provider_config(base: ProviderResearchConfig, raw: Any) -> ProviderResearchConfig:
    """Overlay one provider's JSON overrides onto ``base``; every number is clamped."""
    if not isinstance(raw, dict):
        return base
    merged = copy.deepcopy(base)

    raw_steps = raw.get("steps")
    if isinstance(raw_steps, dict):
        for step, cfg in raw_steps.items():
            if step not in merged.steps or not isinstance(cfg, dict):
                continue
            current = merged.steps[step]
            merged.steps[step] = StepConfig(
                model_tier=_normalize_tier(cfg.get("model_tier")),
                max_output_tokens=_as_int(cfg.get("max_output_tokens"), current.max_output_tokens, 300, 32768),
            )

    # fast_model/deep_model are older aliases for the tier pairs
    fast = raw.get("fast_model") if isinstance(raw.get("fast_model"), str) and raw.get("fast_model") else None
    deep = raw.get("deep_model") if isinstance(raw.get("deep_model"), str) and raw.get("deep_model") else None
    for tier, alias in (("nano", fast), ("mini", fast), ("full", deep), ("pro", deep)):
        value = raw.get(f"{tier}_model")
        if isinstance(value, str) and value:
            setattr(merged, f"{tier}_model", value)
        elif alias:
            setattr(merged, f"{tier}_model", alias)

    merged.max_candidates = _as_int(raw.get("max_candidates"), base.max_candidates, 10, 80)
    merged.shortlist_size = _as_int(raw.get("shortlist_size"), base.shortlist_size, 8, 40)
    merged.max_gap_loops = _as_int(raw.get("max_gap_loops"), base.max_gap_loops, 0, 3)
    return merged


def load_provider_configs(raw_json: str | None = None) -> dict[str, ProviderResearchConfig]:
    defaults = default_provider_configs()
    raw_json = settings.research_step_config_json if raw_json is None else raw_json
    if not raw_json:
        return defaults
    try:
        parsed = json.loads(raw_json)
    except json.JSONDecodeError as e:
        logger.warning(f"RESEARCH_STEP_CONFIG_JSON is not valid JSON, using defaults: {e}")
        return defaults
    if not isinstance(parsed, dict):
        return defaults
    return {provider: merge_provider_config(cfg, parsed.get(provider)) for provider, cfg in defaults.items()}


_cached: dict[str, ProviderResearchConfig] | None = None


def get_provider_config(provider: str) -> ProviderResearchConfig:
    global _cached
    if _cached is None:
        _cached = load_provider_configs()
    return _cached[provider]
