"""
Session Orchestrator — Error Taxonomy

Every runtime condition a caller can recover from derives from SessionError
and carries a stable ``code``. Programmer faults (malformed commands and
results, broken workflow tables) are deliberately outside that hierarchy so
they are never caught by a blanket ``except SessionError``.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base class for recoverable orchestration errors."""
    code = "session_error"


# ─── Domain transition errors ───────────────────────────────────────

class TransitionError(SessionError):
    """The session cannot proceed to another step."""
    code = "transition_error"


class SessionComplete(TransitionError):
    code = "session_complete"


class InvalidState(TransitionError):
    """A known step reported a status its workflow does not route."""
    code = "invalid_state"


class InvalidInteraction(TransitionError):
    """The last interaction names a step outside the workflow."""
    code = "invalid_interaction"


class RetryLimitExceeded(TransitionError):
    code = "retry_limit_exceeded"

    def __init__(self, step_id: str, attempts: int):
        super().__init__(
            f"Step {step_id} reached its attempt limit ({attempts})"
        )
        self.step_id = step_id
        self.attempts = attempts


class InvalidStatusTransition(SessionError):
    code = "invalid_status_transition"


# ─── Step-local failures ────────────────────────────────────────────

class StepError(SessionError):
    """A step cannot build its command from the current session."""
    code = "step_error"


# ─── Lookup and persistence ─────────────────────────────────────────

class SessionNotFound(SessionError):
    code = "not_found"


class InteractionNotFound(SessionError):
    code = "not_found"


class InteractionAlreadyCompleted(SessionError):
    code = "interaction_completed"


class ConcurrentUpdateError(SessionError):
    """Another writer advanced the session first."""
    code = "conflict"


class UnknownWorkflow(SessionError):
    code = "unknown_workflow"


# ─── Programmer faults ──────────────────────────────────────────────

class MalformedCommand(TypeError):
    pass


class MalformedResult(ValueError):
    pass


class WorkflowDefinitionError(Exception):
    """Raised at registration when a transition table is inconsistent."""
    pass
