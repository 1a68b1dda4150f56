"""
Session Orchestrator — Type Definitions

Value types and aggregates for the orchestration engine:
scopes, commands, results, interactions, sessions, and session events.

Command and Result are immutable once built. Interaction and Session are
mutable aggregates, but only the façade (sessions.runtime) mutates them, and
only inside a store transaction.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from sessions.errors import InvalidStatusTransition, MalformedCommand, MalformedResult


# ─── Scope ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Scope:
    """Tenant context for every façade call."""
    account_id: str
    user_id: str = ""
    project_id: str = ""

    def owns(self, session: Session) -> bool:
        if session.account_id != self.account_id:
            return False
        if self.project_id and session.project_id and session.project_id != self.project_id:
            return False
        return True


# ─── Enums ──────────────────────────────────────────────────────────

class SessionStatus(str, enum.Enum):
    """Lifecycle states for a session."""
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"


_STATUS_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.ACTIVE:   {SessionStatus.COMPLETE, SessionStatus.FAILED},
    SessionStatus.COMPLETE: set(),
    SessionStatus.FAILED:   set(),
}

_TERMINAL_STATUSES = {SessionStatus.COMPLETE, SessionStatus.FAILED}


class ResultStatus(str, enum.Enum):
    """Outcome reported by the driver for one command."""
    OK = "ok"
    ERROR = "error"
    WARNING = "warning"


class ExecutionMode(str, enum.Enum):
    """How much autonomy the driver grants the agent."""
    MANUAL = "manual"
    AUTO = "auto"
    AGENTIC = "agentic"

    def options(self) -> dict[str, Any]:
        if self == ExecutionMode.AUTO:
            return {"auto": True}
        if self == ExecutionMode.AGENTIC:
            return {"agentic": True}
        return {}


class CommandMode(str, enum.Enum):
    """How the driver should interpret a command payload."""
    SHELL = "shell"      # opaque command line
    AGENT = "agent"      # structured agent invocation
    SPAWN = "spawn"      # drive the child sessions in metadata


class EventType(str, enum.Enum):
    """Driver-reported session events."""
    CONVERSATION_STARTED = "conversation_started"
    CONVERSATION_ENDED = "conversation_ended"
    TOOL_CALLED = "tool_called"
    TOOL_RESULT = "tool_result"
    COMMAND_STARTED = "command_started"
    COMMAND_FINISHED = "command_finished"
    NOTIFICATION = "notification"
    SESSION_STATUS_CHANGED = "session_status_changed"
    ERROR_OCCURRED = "error_occurred"


# ─── Commands ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class SpawnRequest:
    """A child session the façade must create alongside a command."""
    workflow_type: str
    subject: dict[str, Any]
    execution_mode: ExecutionMode = ExecutionMode.MANUAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_type": self.workflow_type,
            "subject": dict(self.subject),
            "execution_mode": self.execution_mode.value,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> SpawnRequest:
        return SpawnRequest(
            workflow_type=d["workflow_type"],
            subject=dict(d.get("subject") or {}),
            execution_mode=ExecutionMode(d.get("execution_mode", "manual")),
        )


@dataclass(frozen=True)
class Command:
    """What the driver should run next."""
    step_id: str
    payload: str | dict[str, Any]
    mode: CommandMode = CommandMode.SHELL
    metadata: dict[str, Any] = field(default_factory=dict)
    spawn: tuple[SpawnRequest, ...] = ()
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.step_id or not isinstance(self.step_id, str):
            raise MalformedCommand("Command step_id must be a non-empty string")
        if not isinstance(self.payload, (str, dict)):
            raise MalformedCommand(
                f"Command payload must be str or dict, got {type(self.payload).__name__}"
            )
        if not isinstance(self.metadata, dict):
            raise MalformedCommand("Command metadata must be a dict")
        if not isinstance(self.mode, CommandMode):
            raise MalformedCommand(f"Unknown command mode: {self.mode!r}")

    def with_metadata(self, **extra: Any) -> Command:
        return replace(self, metadata={**self.metadata, **extra})

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "payload": self.payload,
            "mode": self.mode.value,
            "metadata": self.metadata,
            "spawn": [s.to_dict() for s in self.spawn],
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Command:
        try:
            mode = CommandMode(d.get("mode", "shell"))
        except ValueError as e:
            raise MalformedCommand(str(e)) from e
        return Command(
            step_id=d.get("step_id", ""),
            payload=d.get("payload", ""),
            mode=mode,
            metadata=d.get("metadata") or {},
            spawn=tuple(SpawnRequest.from_dict(s) for s in d.get("spawn", [])),
            created_at=d.get("created_at", 0.0),
        )


# ─── Results ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Result:
    """What happened when the driver ran a command."""
    status: ResultStatus
    data: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None

    def __post_init__(self):
        if not isinstance(self.status, ResultStatus):
            raise MalformedResult(f"Unknown result status: {self.status!r}")
        if not isinstance(self.data, dict):
            raise MalformedResult("Result data must be a dict")
        if self.error_message is not None and not isinstance(self.error_message, str):
            raise MalformedResult("Result error_message must be a string")

    @staticmethod
    def ok(data: dict[str, Any] | None = None) -> Result:
        return Result(status=ResultStatus.OK, data=data or {})

    @staticmethod
    def error(message: str, data: dict[str, Any] | None = None) -> Result:
        return Result(status=ResultStatus.ERROR, data=data or {}, error_message=message)

    @property
    def is_ok(self) -> bool:
        return self.status == ResultStatus.OK

    def annotate(self, **changes: Any) -> Result:
        """Return a copy with status/data/error_message overridden."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "data": self.data,
            "error_message": self.error_message,
        }

    @staticmethod
    def from_dict(d: Any) -> Result:
        if not isinstance(d, dict):
            raise MalformedResult("Result must be an object")
        raw_status = d.get("status")
        try:
            status = ResultStatus(raw_status)
        except ValueError as e:
            raise MalformedResult(f"Unknown result status: {raw_status!r}") from e
        data = d.get("data")
        return Result(
            status=status,
            data={} if data is None else data,
            error_message=d.get("error_message"),
        )


# ─── Interactions ───────────────────────────────────────────────────

@dataclass
class Interaction:
    """One command/result pair within a session."""
    interaction_id: str
    session_id: str
    step_id: str
    command: Command
    sequence: int
    result: Result | None = None
    created_at: float = 0.0
    completed_at: float | None = None

    @property
    def is_pending(self) -> bool:
        return self.result is None

    @property
    def is_completed(self) -> bool:
        return self.result is not None

    @staticmethod
    def create(session_id: str, command: Command, sequence: int) -> Interaction:
        return Interaction(
            interaction_id=f"int_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            step_id=command.step_id,
            command=command,
            sequence=sequence,
            created_at=time.time(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "interaction_id": self.interaction_id,
            "session_id": self.session_id,
            "step_id": self.step_id,
            "sequence": self.sequence,
            "command": self.command.to_dict(),
            "result": self.result.to_dict() if self.result else None,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


# ─── Sessions ───────────────────────────────────────────────────────

@dataclass
class Session:
    """
    Persisted state-machine instance for one workflow run.

    child_session_ids is derived from the children's parent_session_id
    when loaded from the store; it is never written directly.
    """
    session_id: str
    workflow_type: str
    account_id: str
    status: SessionStatus
    created_at: float
    updated_at: float

    user_id: str = ""
    project_id: str = ""
    subject: dict[str, Any] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    interactions: list[Interaction] = field(default_factory=list)

    # Composition
    parent_session_id: str | None = None
    child_session_ids: list[str] = field(default_factory=list)

    execution_mode: ExecutionMode = ExecutionMode.MANUAL
    correlation_id: str = ""
    external_conversation_id: str | None = None

    # Optimistic concurrency counter, bumped on every persisted update
    version: int = 0

    @staticmethod
    def create(
        workflow_type: str,
        scope: Scope,
        subject: dict[str, Any] | None = None,
        execution_mode: ExecutionMode = ExecutionMode.MANUAL,
        parent: Session | None = None,
        state: dict[str, Any] | None = None,
    ) -> Session:
        now = time.time()
        sid = f"ses_{uuid.uuid4().hex[:12]}"
        subject = dict(subject or {})
        return Session(
            session_id=sid,
            workflow_type=workflow_type,
            account_id=scope.account_id,
            user_id=scope.user_id,
            project_id=subject.get("project_id") or scope.project_id,
            status=SessionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            subject=subject,
            state=dict(state or {}),
            parent_session_id=parent.session_id if parent else None,
            execution_mode=execution_mode,
            correlation_id=parent.correlation_id if parent else uuid.uuid4().hex,
        )

    @property
    def component_id(self) -> str | None:
        return self.subject.get("component_id")

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUSES

    @property
    def last_interaction(self) -> Interaction | None:
        return self.interactions[-1] if self.interactions else None

    @property
    def last_completed_interaction(self) -> Interaction | None:
        for interaction in reversed(self.interactions):
            if interaction.is_completed:
                return interaction
        return None

    @property
    def pending_interaction(self) -> Interaction | None:
        last = self.last_interaction
        if last is not None and last.is_pending:
            return last
        return None

    def find_interaction(self, interaction_id: str) -> Interaction | None:
        for interaction in self.interactions:
            if interaction.interaction_id == interaction_id:
                return interaction
        return None

    def step_count(self, step_id: str) -> int:
        """How many times a step has been issued in this session."""
        return sum(1 for i in self.interactions if i.step_id == step_id)

    def transition(self, to: SessionStatus):
        if to == self.status:
            return
        allowed = _STATUS_TRANSITIONS.get(self.status, set())
        if to not in allowed:
            raise InvalidStatusTransition(
                f"Session {self.session_id}: "
                f"{self.status.value} → {to.value} is not allowed"
            )
        self.status = to
        self.updated_at = time.time()

    def merge_state(self, updates: dict[str, Any], replace_state: bool = False):
        if replace_state:
            self.state = dict(updates)
        else:
            self.state = {**self.state, **updates}

    def to_dict(self, include_interactions: bool = True) -> dict[str, Any]:
        d = {
            "session_id": self.session_id,
            "workflow_type": self.workflow_type,
            "account_id": self.account_id,
            "user_id": self.user_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "subject": self.subject,
            "state": self.state,
            "parent_session_id": self.parent_session_id,
            "child_session_ids": list(self.child_session_ids),
            "execution_mode": self.execution_mode.value,
            "correlation_id": self.correlation_id,
            "external_conversation_id": self.external_conversation_id,
            "version": self.version,
            "interaction_count": len(self.interactions),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_interactions:
            d["interactions"] = [i.to_dict() for i in self.interactions]
        return d


# ─── Events ─────────────────────────────────────────────────────────

@dataclass
class SessionEvent:
    """Append-only record of something the driver observed."""
    session_id: str
    event_type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    sent_at: float = 0.0
    event_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "data": self.data,
            "sent_at": self.sent_at,
        }
