from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, field_validator

from deep_research.config import settings

ProviderName = Literal["openai", "gemini"]

WORD_TARGET_BY_DEPTH = {"light": 1200, "standard": 2500, "deep": 6000}


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class UserSettings(BaseModel):
    """Per-user options read by the orchestrator before each run."""

    refine_provider: ProviderName = "openai"
    summarize_provider: ProviderName = "openai"
    max_sources: int = 15
    openai_timeout_minutes: int = 10
    gemini_timeout_minutes: int = 10
    reasoning_level: Literal["low", "high"] = "low"
    report_summary_mode: Literal["one", "two"] = "two"
    report_include_refs_in_summary: bool = True
    research_depth: Literal["light", "standard", "deep"] = "standard"
    research_max_steps: int = 8
    research_target_sources_per_step: int = 5
    research_max_total_sources: int = 40
    research_max_tokens_per_step: int = 1800

    @field_validator("max_sources")
    @classmethod
    def _clamp_max_sources(cls, v: int) -> int:
        return clamp(v, 1, 50)

    @field_validator("openai_timeout_minutes", "gemini_timeout_minutes")
    @classmethod
    def _clamp_timeouts(cls, v: int) -> int:
        return clamp(v, 1, 20)

    @field_validator("research_target_sources_per_step")
    @classmethod
    def _clamp_sources_per_step(cls, v: int) -> int:
        return clamp(v, 1, 25)

    @field_validator("research_max_total_sources")
    @classmethod
    def _clamp_total_sources(cls, v: int) -> int:
        return clamp(v, 5, 400)

    @field_validator("research_max_tokens_per_step")
    @classmethod
    def _clamp_tokens_per_step(cls, v: int) -> int:
        return clamp(v, 300, 8000)

    def timeout_minutes(self, provider: str) -> int:
        return self.openai_timeout_minutes if provider == "openai" else self.gemini_timeout_minutes

    def timeout_ms(self, provider: str) -> int:
        return self.timeout_minutes(provider) * 60_000

    @property
    def stale_after_seconds(self) -> int:
        """How long queued work may sit untouched before it counts as interrupted."""
        return max(self.openai_timeout_minutes, self.gemini_timeout_minutes) * 60 + 5 * 60

    @property
    def word_target(self) -> int:
        return WORD_TARGET_BY_DEPTH.get(self.research_depth, 2500)


def default_user_settings() -> UserSettings:
    return UserSettings(
        refine_provider=settings.default_refine_provider,
        summarize_provider=settings.default_summarize_provider,
        max_sources=settings.default_max_sources,
        openai_timeout_minutes=settings.default_openai_timeout_minutes,
        gemini_timeout_minutes=settings.default_gemini_timeout_minutes,
        reasoning_level=settings.default_reasoning_level,
        report_summary_mode=settings.default_report_summary_mode,
        research_depth=settings.default_research_depth,
    )
