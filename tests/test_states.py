"""Tests for the session lifecycle table and terminal-state helpers."""
import pytest

from deep_research.errors import InvalidStateTransition
from deep_research.models.states import (
    SessionState,
    can_transition,
    ensure_transition,
    final_session_state,
    is_terminal_provider_status,
    is_terminal_run,
    is_terminal_session,
)


@pytest.mark.parametrize(
    "src,dst",
    [
        ("draft", "refining"),
        ("refining", "running_research"),
        ("refining", "failed"),
        ("running_research", "aggregating"),
        ("running_research", "partial"),
        ("running_research", "failed"),
        ("aggregating", "completed"),
        ("aggregating", "partial"),
        ("aggregating", "failed"),
    ],
)
def test_allowed_transitions(src, dst):
    assert can_transition(src, dst)
    ensure_transition(src, dst)


@pytest.mark.parametrize(
    "src,dst",
    [
        ("draft", "running_research"),
        ("running_research", "completed"),
        ("completed", "aggregating"),
        ("failed", "refining"),
        ("partial", "completed"),
        ("refining", "draft"),
    ],
)
def test_rejected_transitions(src, dst):
    assert not can_transition(src, dst)
    with pytest.raises(InvalidStateTransition):
        ensure_transition(src, dst)


def test_unknown_state_is_never_a_valid_edge():
    assert not can_transition("draft", "archived")


def test_terminal_helpers():
    assert is_terminal_session(SessionState.PARTIAL)
    assert not is_terminal_session("aggregating")
    assert is_terminal_provider_status("skipped")
    assert not is_terminal_provider_status("running")
    assert is_terminal_run("DONE")
    assert not is_terminal_run("PLANNED")


def test_final_session_state():
    assert final_session_state(False, False) == SessionState.COMPLETED
    assert final_session_state(True, False) == SessionState.PARTIAL
    assert final_session_state(False, True) == SessionState.PARTIAL
    assert final_session_state(True, True) == SessionState.FAILED
