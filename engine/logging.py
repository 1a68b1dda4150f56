"""
Session Orchestrator — Structured Logging with Correlation IDs

Emits one JSON object per log line. Every session lifecycle event carries the
session's correlation id as ``trace_id`` so a parent session and all of its
children can be followed end to end. Field names follow OpenTelemetry
conventions (trace_id, span_id, service.name).

Usage:
    from engine.logging import SessionTrace, configure_logging

    configure_logging(level="INFO")
    trace = SessionTrace.for_session(session)
    trace.on_command_issued("RunTests", sequence=5, mode="shell")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

NAMESPACE = "session_orchestrator"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = NAMESPACE):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("SO_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = NAMESPACE,
    fmt: str = "json",
) -> logging.Logger:
    """
    Configure the session_orchestrator logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
        fmt: "json" for JSON lines, "text" for plain messages
    """
    logger = logging.getLogger(NAMESPACE)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    # Child loggers inherit from the namespace root
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(NAMESPACE + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "text":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the session_orchestrator namespace."""
    if name:
        return logging.getLogger(f"{NAMESPACE}.{name}")
    return logging.getLogger(NAMESPACE)


def span_id_for(interaction_id: str) -> str:
    """OTel-compatible span ID (16 hex chars), stable for one interaction."""
    return uuid.uuid5(uuid.NAMESPACE_OID, interaction_id).hex[:16]


# ═══════════════════════════════════════════════════════════════════
# Session Trace
# ═══════════════════════════════════════════════════════════════════

class SessionTrace:
    """
    Structured lifecycle events for one session.

    An interaction's command and its result share one span id, derived from
    the interaction id, so separate trace instances pair up.
    """

    def __init__(
        self,
        session_id: str,
        workflow_type: str,
        trace_id: str,
        parent_session_id: str | None = None,
    ):
        self.session_id = session_id
        self.workflow_type = workflow_type
        self.trace_id = trace_id
        self.parent_session_id = parent_session_id
        self._logger = get_logger("trace")

    @classmethod
    def for_session(cls, session) -> SessionTrace:
        return cls(
            session_id=session.session_id,
            workflow_type=session.workflow_type,
            trace_id=session.correlation_id,
            parent_session_id=session.parent_session_id,
        )

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "trace_id": self.trace_id,
            "session_id": self.session_id,
            "workflow_type": self.workflow_type,
        }
        if self.parent_session_id:
            fields["parent_session_id"] = self.parent_session_id
        return fields

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Lifecycle events ────────────────────────────────────────

    def on_session_start(self, subject: dict[str, Any], execution_mode: str) -> None:
        self._emit(logging.INFO, "session_start",
                   subject=subject, execution_mode=execution_mode)

    def on_route_decision(self, from_step: str | None, status: str | None, to_step: str) -> None:
        self._emit(logging.INFO, "route_decision",
                   from_step=from_step, status=status, to_step=to_step)

    def on_command_issued(
        self,
        step_id: str,
        interaction_id: str,
        sequence: int,
        mode: str,
    ) -> None:
        self._emit(logging.INFO, "command_issued",
                   step_id=step_id, interaction_id=interaction_id,
                   sequence=sequence, mode=mode, span_id=span_id_for(interaction_id))

    def on_result_recorded(
        self,
        step_id: str,
        interaction_id: str,
        status: str,
        annotated: bool = False,
        error_message: str | None = None,
    ) -> None:
        fields = {
            "step_id": step_id,
            "interaction_id": interaction_id,
            "status": status,
            "annotated": annotated,
            "span_id": span_id_for(interaction_id),
        }
        if error_message:
            fields["error_message"] = error_message[:500]
        level = logging.INFO if status == "ok" else logging.WARNING
        self._emit(level, "result_recorded", **fields)

    def on_child_spawned(self, child_session_id: str, child_workflow_type: str) -> None:
        self._emit(logging.INFO, "child_spawned",
                   child_session_id=child_session_id,
                   child_workflow_type=child_workflow_type)

    def on_transition_error(self, code: str, message: str) -> None:
        self._emit(logging.WARNING, "transition_error", code=code, error=message[:500])

    def on_event_received(self, event_type: str) -> None:
        self._emit(logging.DEBUG, "event_received", event_type=event_type)

    def on_session_end(self, status: str, interactions: int, reason: str | None = None) -> None:
        fields: dict[str, Any] = {"status": status, "interactions": interactions}
        if reason:
            fields["reason"] = reason[:500]
        self._emit(logging.INFO, "session_end", **fields)
