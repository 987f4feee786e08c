"""Exception taxonomy for the orchestration engine."""
from __future__ import annotations


class DeepResearchError(Exception):
    """Base class for engine errors."""


class ProviderError(DeepResearchError):
    """An external provider call failed."""

    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, retry_after_ms: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms


class TransientProviderError(ProviderError):
    """Rate limit, 5xx or timeout. Safe to retry."""

    retryable = True


class PermanentProviderError(ProviderError):
    """Auth failure or malformed request. Never retried."""


class IntegrityError(DeepResearchError):
    """Session/provider/run identifiers disagree. Always fatal to the run."""


class ProviderResultWriteBlocked(IntegrityError):
    def __init__(self, session_id: str, provider: str, stored_run_id: str | None, incoming_run_id: str | None):
        super().__init__(
            f"Provider result write blocked: model_run_id mismatch for {provider} session {session_id} "
            f"(stored={stored_run_id}, incoming={incoming_run_id})"
        )
        self.session_id = session_id
        self.provider = provider
        self.stored_run_id = stored_run_id
        self.incoming_run_id = incoming_run_id


class JobIdentityMismatch(IntegrityError):
    """A lane job does not match the research run it points at."""


class StaleProviderResultWrite(DeepResearchError):
    """A late write tried to move a terminal provider result to another status."""

    def __init__(self, session_id: str, provider: str, stored_status: str, incoming_status: str):
        super().__init__(
            f"Ignored {incoming_status} write for {provider} session {session_id}: "
            f"result is already {stored_status}"
        )
        self.stored_status = stored_status
        self.incoming_status = incoming_status


class InvalidStateTransition(DeepResearchError):
    def __init__(self, from_state: str, to_state: str):
        super().__init__(f"Invalid session state transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class InvalidJobPayload(DeepResearchError, ValueError):
    pass


class LaneProviderMismatch(DeepResearchError):
    pass


class SessionNotFound(DeepResearchError, LookupError):
    pass


class ReportRegenerationNotAllowed(DeepResearchError):
    pass
