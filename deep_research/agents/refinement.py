from __future__ import annotations

from loguru import logger

from deep_research.errors import InvalidStateTransition, SessionNotFound
from deep_research.agents.orchestrator import RunOptions, SessionOrchestrator
from deep_research.agents.transitions import move_session
from deep_research.models.records import RefinementQuestion, SessionRecord
from deep_research.models.states import SessionState
from deep_research.services.memory_store import utcnow


class RefinementAgent:
    """Clarifying questions, prompt rewrite and approval into research."""

    def __init__(self, orchestrator: SessionOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.providers = orchestrator.providers

    async def _session(self, session_id: str) -> SessionRecord:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def run_refinement(self, session_id: str) -> list[RefinementQuestion]:
        session = await self._session(session_id)
        if session.state != SessionState.DRAFT.value:
            raise InvalidStateTransition(session.state, SessionState.REFINING.value)

        user_settings = await self.store.get_user_settings(session.user_id)
        provider = self.providers[user_settings.refine_provider]
        questions = await provider.start_refinement(session.topic)

        if questions:
            await self.store.create_questions(session.id, questions)
            await move_session(self.store, session, SessionState.REFINING)
            logger.info(f"Refinement for {session.id}: {len(questions)} clarifying questions")
            return await self.store.list_questions(session.id)

        try:
            refined = await provider.rewrite_prompt(session.topic, session.topic, [])
        except Exception as e:
            logger.warning(f"Prompt rewrite failed for {session.id}, keeping topic: {e}")
            refined = session.topic
        await move_session(self.store, session, SessionState.REFINING, refined_prompt=refined.strip() or session.topic)
        return []

    async def answer_question(self, question_id: str, answer: str) -> RefinementQuestion:
        question = await self.store.answer_question(question_id, answer.strip())
        if question is None:
            raise SessionNotFound(f"Refinement question {question_id} not found")
        return question

    async def handle_refinement_approval(
        self, session_id: str, refined_prompt: str | None = None, options: RunOptions | None = None
    ) -> bool:
        """Finalize the prompt, enter running_research and start both providers."""
        session = await self._session(session_id)
        draft = (refined_prompt or session.refined_prompt or session.topic).strip()
        clarifications = [
            (q.question_text, q.answer_text)
            for q in await self.store.list_questions(session.id)
            if q.answer_text
        ]

        final_prompt = draft
        if clarifications:
            user_settings = await self.store.get_user_settings(session.user_id)
            provider = self.providers[user_settings.refine_provider]
            try:
                final_prompt = (await provider.rewrite_prompt(session.topic, draft, clarifications)).strip() or draft
            except Exception as e:
                logger.warning(f"Prompt rewrite with clarifications failed for {session.id}, keeping draft: {e}")

        moved = await move_session(
            self.store, session, SessionState.RUNNING_RESEARCH, refined_prompt=final_prompt, refined_at=utcnow()
        )
        if moved is None:
            return False
        return await self.orchestrator.run_providers(session.id, options)
