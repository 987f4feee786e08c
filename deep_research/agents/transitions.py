from __future__ import annotations

from datetime import datetime

from loguru import logger

from deep_research.models.records import SessionRecord
from deep_research.models.states import SessionState, can_transition, ensure_transition, is_terminal_session
from deep_research.services import logger as log_service
from deep_research.services.memory_store import Store


async def move_session(
    store: Store,
    session: SessionRecord,
    to_state: SessionState,
    *,
    refined_prompt: str | None = None,
    refined_at: datetime | None = None,
    completed_at: datetime | None = None,
) -> SessionRecord | None:
    """Compare-and-set ``session`` from its current state to ``to_state``.

    Returns None when another writer moved the session first.
    """
    if session.state == to_state.value:
        return session
    ensure_transition(session.state, to_state)
    updated = await store.transition_session(
        session.id,
        session.state,
        to_state.value,
        refined_prompt=refined_prompt,
        refined_at=refined_at,
        completed_at=completed_at,
    )
    if updated is None:
        logger.info(f"Session {session.id} left {session.state} concurrently; skipped move to {to_state.value}")
        return None
    log_service.log_event("session_transition", f"{session.state} -> {to_state.value}", session_id=session.id)
    return updated


async def settle_session(
    store: Store, session: SessionRecord, final_state: SessionState, completed_at: datetime
) -> SessionRecord | None:
    """Move a session into a terminal state, passing through aggregating when the table requires it.

    A session that already settled is returned unchanged.
    """
    if is_terminal_session(session.state):
        return session
    current: SessionRecord | None = session
    if not can_transition(session.state, final_state) and session.state == SessionState.RUNNING_RESEARCH.value:
        current = await move_session(store, session, SessionState.AGGREGATING)
    if current is None:
        return None
    return await move_session(store, current, final_state, completed_at=completed_at)
