"""
Session Orchestrator — Change Notifications

In-process publish/subscribe bus for "session changed" messages. Every
message has the shape ``{"event": "created"|"updated"|"deleted", "session": {...}}``
and is published to two tenant-keyed topics:

    account:{account_id}:sessions
    user:{user_id}:sessions

Subscribers are plain callables. A subscriber that raises is logged and
skipped; it never affects the publisher or other subscribers.
"""

from __future__ import annotations

import threading
import uuid
from typing import Any, Callable

from engine.logging import get_logger
from sessions.types import Session

logger = get_logger("broadcast")

Subscriber = Callable[[str, dict[str, Any]], None]

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"


def account_topic(account_id: str) -> str:
    return f"account:{account_id}:sessions"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}:sessions"


class SessionBroadcaster:

    def __init__(self):
        self._subscribers: dict[str, dict[str, Subscriber]] = {}
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(self, topic: str, callback: Subscriber) -> str:
        token = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscribers.setdefault(topic, {})[token] = callback
        return token

    def unsubscribe(self, token: str) -> bool:
        with self._lock:
            for subs in self._subscribers.values():
                if subs.pop(token, None) is not None:
                    return True
        return False

    def topics_for(self, session: Session) -> list[str]:
        topics = [account_topic(session.account_id)]
        if session.user_id:
            topics.append(user_topic(session.user_id))
        return topics

    def publish(self, event: str, session: Session):
        message = {"event": event, "session": session.to_dict(include_interactions=False)}
        for topic in self.topics_for(session):
            with self._lock:
                callbacks = list(self._subscribers.get(topic, {}).values())
            for callback in callbacks:
                try:
                    callback(topic, message)
                except Exception:
                    logger.exception(
                        "Subscriber failed on %s (%s %s)", topic, event, session.session_id,
                    )
            self.published += 1
