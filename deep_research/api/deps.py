from __future__ import annotations

from deep_research.agents.orchestrator import SessionOrchestrator
from deep_research.agents.refinement import RefinementAgent
from deep_research.services.lane import build_orchestrator_state
from deep_research.tools.providers import build_providers

_orchestrator: SessionOrchestrator | None = None


def get_orchestrator() -> SessionOrchestrator:
    """Process-wide orchestrator; lanes and locks must be shared by every request."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SessionOrchestrator(build_orchestrator_state(), build_providers())
    return _orchestrator


def get_refinement_agent() -> RefinementAgent:
    return RefinementAgent(get_orchestrator())
