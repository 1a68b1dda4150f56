"""
Session Orchestrator — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, CLI, and tests.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from sessions.types import EventType, ExecutionMode, ResultStatus

_EXECUTION_MODES = {m.value for m in ExecutionMode}
_RESULT_STATUSES = {s.value for s in ResultStatus}
_EVENT_TYPES = {e.value for e in EventType}
_AGENT_STATES = {"idle", "thinking", "running", "running_tool", "waiting", "error"}


def _one_of(value: Any, allowed: set[str]) -> bool:
    return isinstance(value, str) and value in allowed


@dataclass
class StartSessionRequest:
    """POST /v1/sessions request body."""
    workflow_type: str
    subject: dict[str, Any] = field(default_factory=dict)
    execution_mode: str = "manual"
    parent_session_id: str | None = None
    state: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_body(body: dict[str, Any]) -> StartSessionRequest:
        return StartSessionRequest(
            workflow_type=body.get("workflow_type", ""),
            subject=body.get("subject") or {},
            execution_mode=body.get("execution_mode", "manual"),
            parent_session_id=body.get("parent_session_id"),
            state=body.get("state") or {},
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.workflow_type or not isinstance(self.workflow_type, str):
            errors.append("workflow_type is required and must be a string")
        if not isinstance(self.subject, dict):
            errors.append("subject must be an object")
        elif not self.subject.get("component_id"):
            errors.append("subject.component_id is required")
        if not _one_of(self.execution_mode, _EXECUTION_MODES):
            errors.append(f"execution_mode must be one of {sorted(_EXECUTION_MODES)}")
        if not isinstance(self.state, dict):
            errors.append("state must be an object")
        return errors


@dataclass
class ResultSubmission:
    """POST /v1/sessions/{id}/interactions/{iid}/result body."""
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_body(body: dict[str, Any]) -> ResultSubmission:
        return ResultSubmission(
            status=body.get("status", ""),
            data=body.get("data") if body.get("data") is not None else {},
            error_message=body.get("error_message"),
            options=body.get("options") or {},
        )

    def validate(self) -> list[str]:
        errors = []
        if not _one_of(self.status, _RESULT_STATUSES):
            errors.append(f"status must be one of {sorted(_RESULT_STATUSES)}")
        if not isinstance(self.data, dict):
            errors.append("data must be an object")
        if self.error_message is not None and not isinstance(self.error_message, str):
            errors.append("error_message must be a string")
        if not isinstance(self.options, dict):
            errors.append("options must be an object")
        return errors

    def to_result_dict(self) -> dict[str, Any]:
        return {"status": self.status, "data": self.data, "error_message": self.error_message}


@dataclass
class EventSubmission:
    """POST /v1/sessions/{id}/events body."""
    event_type: str
    data: dict[str, Any] = field(default_factory=dict)
    interaction_id: str | None = None

    def validate(self) -> list[str]:
        errors = []
        if not _one_of(self.event_type, _EVENT_TYPES):
            errors.append(f"event_type must be one of {sorted(_EVENT_TYPES)}")
        if not isinstance(self.data, dict):
            errors.append("data must be an object")
        if self.interaction_id is not None and not isinstance(self.interaction_id, str):
            errors.append("interaction_id must be a string")
        return errors


@dataclass
class ExecutionModeUpdate:
    """PUT /v1/sessions/{id}/execution-mode body."""
    execution_mode: str

    def validate(self) -> list[str]:
        if not _one_of(self.execution_mode, _EXECUTION_MODES):
            return [f"execution_mode must be one of {sorted(_EXECUTION_MODES)}"]
        return []


@dataclass
class AbortRequest:
    """POST /v1/sessions/{id}/abort body."""
    reason: str = "Aborted"

    def validate(self) -> list[str]:
        if not self.reason or not isinstance(self.reason, str):
            return ["reason must be a non-empty string"]
        return []


@dataclass
class RuntimeStatusUpdate:
    """PUT /v1/interactions/{iid}/status body."""
    agent_state: str | None = None
    last_notification: dict[str, Any] | None = None
    last_activity: float | None = None
    conversation_id: str | None = None

    def validate(self) -> list[str]:
        errors = []
        if self.agent_state is not None and not _one_of(self.agent_state, _AGENT_STATES):
            errors.append(f"agent_state must be one of {sorted(_AGENT_STATES)}")
        if self.last_notification is not None and not isinstance(self.last_notification, dict):
            errors.append("last_notification must be an object")
        if self.last_activity is not None and not isinstance(self.last_activity, (int, float)):
            errors.append("last_activity must be a number")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class SessionSummary:
    """GET /v1/sessions response item."""
    session_id: str
    workflow_type: str
    status: str
    execution_mode: str
    component_id: str | None
    parent_session_id: str | None
    interaction_count: int
    current_step: str | None
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
