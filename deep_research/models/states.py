from __future__ import annotations

from enum import Enum

from deep_research.errors import InvalidStateTransition


class SessionState(str, Enum):
    DRAFT = "draft"
    REFINING = "refining"
    RUNNING_RESEARCH = "running_research"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ProviderStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, Enum):
    NEW = "NEW"
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"


class StepStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class EmailStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


PROVIDERS: tuple[str, ...] = ("openai", "gemini")

TERMINAL_SESSION_STATES = frozenset({SessionState.COMPLETED, SessionState.PARTIAL, SessionState.FAILED})
TERMINAL_PROVIDER_STATUSES = frozenset({ProviderStatus.COMPLETED, ProviderStatus.FAILED, ProviderStatus.SKIPPED})
TERMINAL_RUN_STATES = frozenset({RunState.DONE, RunState.FAILED})

_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DRAFT: frozenset({SessionState.REFINING}),
    SessionState.REFINING: frozenset({SessionState.RUNNING_RESEARCH, SessionState.FAILED}),
    SessionState.RUNNING_RESEARCH: frozenset(
        {SessionState.AGGREGATING, SessionState.PARTIAL, SessionState.FAILED}
    ),
    SessionState.AGGREGATING: frozenset({SessionState.COMPLETED, SessionState.PARTIAL, SessionState.FAILED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.PARTIAL: frozenset(),
    SessionState.FAILED: frozenset(),
}


def can_transition(from_state: str | SessionState, to_state: str | SessionState) -> bool:
    try:
        src = SessionState(from_state)
        dst = SessionState(to_state)
    except ValueError:
        return False
    return dst in _ALLOWED[src]


def ensure_transition(from_state: str | SessionState, to_state: str | SessionState) -> None:
    """Raise when a write would move a session along an edge outside the table."""
    if not can_transition(from_state, to_state):
        raise InvalidStateTransition(str(getattr(from_state, "value", from_state)), str(getattr(to_state, "value", to_state)))


def is_terminal_session(state: str | SessionState) -> bool:
    return SessionState(state) in TERMINAL_SESSION_STATES


def is_terminal_provider_status(status: str | ProviderStatus) -> bool:
    return ProviderStatus(status) in TERMINAL_PROVIDER_STATUSES


def is_terminal_run(state: str | RunState) -> bool:
    return RunState(state) in TERMINAL_RUN_STATES


def final_session_state(openai_failed: bool, gemini_failed: bool) -> SessionState:
    if openai_failed and gemini_failed:
        return SessionState.FAILED
    if openai_failed or gemini_failed:
        return SessionState.PARTIAL
    return SessionState.COMPLETED
