"""Shared fixtures: in-memory store, in-process locks and offline providers."""
import pytest

from deep_research.agents.finalizer import ReportFinalizer
from deep_research.agents.orchestrator import SessionOrchestrator
from deep_research.models.states import SessionState
from deep_research.research_core import step_config
from deep_research.services.lane import OrchestratorState
from deep_research.services.locks import InProcessLocker
from deep_research.services.memory_store import InMemoryStore
from deep_research.tools.email_sender import StubEmailSender
from deep_research.tools.pdf_report import StubReportRenderer
from deep_research.tools.providers import StubResearchProvider


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def reset_step_config(monkeypatch):
    monkeypatch.setattr(step_config, "_cached", None)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def locker():
    return InProcessLocker()


@pytest.fixture
def providers():
    return {"openai": StubResearchProvider("openai"), "gemini": StubResearchProvider("gemini")}


@pytest.fixture
def email_sender():
    return StubEmailSender()


@pytest.fixture
def make_orchestrator(store, locker, email_sender):
    def build(providers, renderer=None, sender=None):
        state = OrchestratorState(store=store, locker=locker)
        finalizer = ReportFinalizer(store, locker, providers, renderer or StubReportRenderer(), sender or email_sender)
        return SessionOrchestrator(state, providers, finalizer=finalizer, sleep=no_sleep)

    return build


@pytest.fixture
def orchestrator(make_orchestrator, providers):
    return make_orchestrator(providers)


@pytest.fixture
def running_session(store):
    """Factory for a session already approved into running_research."""

    async def build(topic: str = "Impact of remote work on productivity", email: str = "user@example.com"):
        user_id = await store.ensure_user(email)
        session = await store.create_session(user_id, topic)
        await store.transition_session(session.id, "draft", SessionState.REFINING.value)
        return await store.transition_session(
            session.id,
            SessionState.REFINING.value,
            SessionState.RUNNING_RESEARCH.value,
            refined_prompt=f"{topic} (refined)",
            refined_at=session.created_at,
        )

    return build
