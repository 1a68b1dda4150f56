"""
Session Orchestrator — Sessions

Persisted, resumable state machines for multi-step, agent-assisted
development workflows. The engine never executes anything: it hands out one
command at a time and decides the next step from the recorded result.

Usage:
    from sessions import Scope, SessionManager

    manager = SessionManager(db_path="sessions.db", catalog=catalog)
    session = manager.start(scope, "component_coding", {"component_id": "cmp_users"})
    interaction = manager.next_command(scope, session.session_id)
    # ... run interaction.command somewhere ...
    manager.submit_result(scope, session.session_id, interaction.interaction_id,
                          {"status": "ok", "data": {...}})
"""

from sessions.errors import (
    SessionError,
    TransitionError,
    SessionComplete,
    InvalidState,
    InvalidInteraction,
    RetryLimitExceeded,
    StepError,
    SessionNotFound,
    InteractionNotFound,
    InteractionAlreadyCompleted,
    ConcurrentUpdateError,
    UnknownWorkflow,
)
from sessions.types import (
    Scope,
    Session,
    SessionStatus,
    Interaction,
    Command,
    CommandMode,
    Result,
    ResultStatus,
    ExecutionMode,
    EventType,
    SessionEvent,
    SpawnRequest,
)
from sessions.catalog import Catalog, InMemoryCatalog, Project, Component, ProjectLayout
from sessions.orchestrator import Orchestrator, COMPLETE, pipeline, loop
from sessions.registry import WorkflowRegistry
from sessions.steps import Step, StepContext, StepOutcome
from sessions.store import SessionStore
from sessions.runtime import SessionManager
