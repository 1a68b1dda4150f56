"""
Session Orchestrator — Live Interaction Status

Ephemeral side channel for in-flight progress of a running command
("compiling", "running tests", last tool notification). Keyed by
interaction id, held in process memory only, and discarded on restart.
Nothing in the orchestration path reads it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass, fields
from typing import Any


@dataclass
class RuntimeStatus:
    interaction_id: str
    agent_state: str | None = None
    last_notification: dict[str, Any] | None = None
    last_activity: float | None = None
    conversation_id: str | None = None
    timestamp: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_UPDATABLE = {f.name for f in fields(RuntimeStatus)} - {"interaction_id", "timestamp"}


class InteractionRegistry:
    """Thread-safe in-memory registry of RuntimeStatus entries."""

    def __init__(self):
        self._entries: dict[str, RuntimeStatus] = {}
        self._lock = threading.Lock()

    def register(self, status: RuntimeStatus) -> RuntimeStatus:
        """Store a status, replacing any previous entry for the interaction."""
        status.timestamp = time.time()
        with self._lock:
            self._entries[status.interaction_id] = status
        return status

    def update(self, interaction_id: str, **changes: Any) -> RuntimeStatus:
        """Merge fields into the entry, creating it if absent. None values are ignored."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown runtime status fields: {sorted(unknown)}")
        with self._lock:
            status = self._entries.get(interaction_id) or RuntimeStatus(interaction_id)
            for key, value in changes.items():
                if value is not None:
                    setattr(status, key, value)
            status.timestamp = time.time()
            self._entries[interaction_id] = status
            return status

    def get(self, interaction_id: str) -> RuntimeStatus | None:
        with self._lock:
            return self._entries.get(interaction_id)

    def clear(self, interaction_id: str) -> bool:
        with self._lock:
            return self._entries.pop(interaction_id, None) is not None

    def clear_all(self):
        with self._lock:
            self._entries.clear()

    def list_active(self) -> list[RuntimeStatus]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda s: s.timestamp)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
