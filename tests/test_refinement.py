"""Refinement agent: clarifying questions, prompt rewrite and approval."""
import pytest

from deep_research.agents.refinement import RefinementAgent
from deep_research.errors import InvalidStateTransition, SessionNotFound
from deep_research.models.states import SessionState
from deep_research.tools.providers import StubResearchProvider


async def _draft(store, topic="Urban heat islands"):
    user_id = await store.ensure_user("refine@example.com")
    return await store.create_session(user_id, topic)


@pytest.mark.asyncio
async def test_questions_move_session_to_refining(store, make_orchestrator):
    providers = {
        "openai": StubResearchProvider("openai", questions=["Which cities?", "Which years?"]),
        "gemini": StubResearchProvider("gemini"),
    }
    agent = RefinementAgent(make_orchestrator(providers))
    session = await _draft(store)

    questions = await agent.run_refinement(session.id)

    assert [q.question_text for q in questions] == ["Which cities?", "Which years?"]
    assert [q.sequence for q in questions] == [1, 2]
    session = await store.get_session(session.id)
    assert session.state == SessionState.REFINING.value
    assert session.refined_prompt is None


@pytest.mark.asyncio
async def test_no_questions_sets_refined_prompt(store, orchestrator):
    agent = RefinementAgent(orchestrator)
    session = await _draft(store)

    assert await agent.run_refinement(session.id) == []

    session = await store.get_session(session.id)
    assert session.state == SessionState.REFINING.value
    assert session.refined_prompt == "Urban heat islands"


@pytest.mark.asyncio
async def test_refinement_only_from_draft(store, orchestrator):
    agent = RefinementAgent(orchestrator)
    session = await _draft(store)
    await agent.run_refinement(session.id)

    with pytest.raises(InvalidStateTransition):
        await agent.run_refinement(session.id)


@pytest.mark.asyncio
async def test_answer_unknown_question(orchestrator):
    with pytest.raises(SessionNotFound):
        await RefinementAgent(orchestrator).answer_question("missing", "yes")


@pytest.mark.asyncio
async def test_approval_folds_answers_into_prompt_and_runs_research(store, make_orchestrator, email_sender):
    providers = {
        "openai": StubResearchProvider("openai", questions=["Which cities?"]),
        "gemini": StubResearchProvider("gemini"),
    }
    agent = RefinementAgent(make_orchestrator(providers))
    session = await _draft(store)
    [question] = await agent.run_refinement(session.id)
    await agent.answer_question(question.id, "  Phoenix and Madrid ")

    assert await agent.handle_refinement_approval(session.id) is True

    session = await store.get_session(session.id)
    assert session.refined_prompt == "Urban heat islands\n\nConstraints: Which cities? Phoenix and Madrid"
    assert session.refined_at is not None
    assert session.state == SessionState.COMPLETED.value
    assert len(email_sender.sent) == 1
