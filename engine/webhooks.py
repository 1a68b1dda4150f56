"""
Session Orchestrator — Webhook Notifications

Tells outside systems when a session stops: it completed, it was aborted, or
a step ran out of attempts. Each configured target receives one POST per
terminal session, shaped as a Teams card, a Slack message, or the generic JSON
body.

Targets can be narrowed by event type and workflow type. Delivery happens off
the request thread with a bounded number of attempts; the outcome of each
delivery is kept for diagnostics.

Usage:
    from engine.webhooks import WebhookNotifier, WebhookConfig

    notifier = WebhookNotifier(configs=[
        WebhookConfig(url="https://hooks.slack.com/...", format="slack",
                      events=["session_failed"]),
    ])
    notifier.notify_session(
        event_type="session_failed",
        session_id="ses_abc",
        workflow_type="component_coding",
        status="failed",
        reason="Step RunTests reached its attempt limit (10)",
    )
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("session_orchestrator.webhooks")

SESSION_COMPLETE = "session_complete"
SESSION_FAILED = "session_failed"

# Deliveries remembered for the diagnostics view
_DELIVERY_HISTORY = 100


@dataclass
class WebhookConfig:
    """One notification target."""
    url: str
    format: str = "generic"     # generic, teams, slack
    enabled: bool = True
    events: list[str] | None = None       # None = every terminal event
    workflows: list[str] | None = None    # None = every workflow type
    max_retries: int = 2
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> WebhookConfig:
        return WebhookConfig(
            url=d["url"],
            format=d.get("format", "generic"),
            enabled=d.get("enabled", True),
            events=d.get("events"),
            workflows=d.get("workflows"),
            max_retries=d.get("max_retries", 2),
            timeout_seconds=d.get("timeout_seconds", 10.0),
            headers=d.get("headers") or {},
        )

    def wants(self, note: Notification) -> bool:
        if not self.enabled:
            return False
        if self.events and note.event_type not in self.events:
            return False
        return not self.workflows or note.workflow_type in self.workflows


@dataclass
class Notification:
    """What happened to which session; rendered per target format."""
    event_type: str
    session_id: str
    workflow_type: str
    status: str
    reason: str = ""
    session_url: str = ""
    context: dict[str, Any] | None = None


@dataclass
class Delivery:
    url: str
    session_id: str
    event_type: str
    delivery_id: str = field(default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}")
    status: str = "pending"     # pending → delivered | failed
    attempts: int = 0
    error: str = ""
    queued_at: float = field(default_factory=time.time)
    sent_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "webhook_url": self.url[:50],
            "session_id": self.session_id,
            "event_type": self.event_type,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
        }


class WebhookNotifier:
    """
    Sends terminal-session notifications to every interested target.

    Each delivery runs on a daemon thread so the façade never waits on the
    network. ``synchronous=True`` keeps delivery on the caller's thread, which
    is what tests pair with an injected ``http_client``.
    """

    def __init__(
        self,
        configs: list[WebhookConfig] | None = None,
        http_client: Callable | None = None,
        base_url: str = "",
        synchronous: bool = False,
    ):
        self.configs = configs or []
        self.base_url = base_url.rstrip("/")
        self.synchronous = synchronous
        self._post = http_client or _default_http_client
        self._history: deque[Delivery] = deque(maxlen=_DELIVERY_HISTORY)
        self._lock = threading.Lock()

    def notify_session(
        self,
        event_type: str,
        session_id: str,
        workflow_type: str,
        status: str,
        reason: str = "",
        session_url: str = "",
        context: dict[str, Any] | None = None,
    ):
        if not self.configs:
            return
        if not session_url and self.base_url:
            session_url = f"{self.base_url}/v1/sessions/{session_id}"
        note = Notification(event_type, session_id, workflow_type, status,
                            reason, session_url, context)

        for target in self.configs:
            if not target.wants(note):
                continue
            delivery = Delivery(target.url, session_id, event_type)
            with self._lock:
                self._history.append(delivery)
            body = _render(target.format, note)
            if self.synchronous:
                self._send(target, body, delivery)
            else:
                threading.Thread(
                    target=self._send, args=(target, body, delivery), daemon=True,
                ).start()

    def _send(self, target: WebhookConfig, body: dict[str, Any], delivery: Delivery):
        while delivery.attempts < target.max_retries:
            delivery.attempts += 1
            delivery.sent_at = time.time()
            try:
                response = self._post(
                    url=target.url,
                    payload=body,
                    headers=target.headers,
                    timeout=target.timeout_seconds,
                )
            except Exception as e:
                response = {"success": False, "error": str(e)[:200]}

            if response.get("success"):
                delivery.status = "delivered"
                logger.info("Notified %s of %s for %s",
                            target.url[:50], delivery.event_type, delivery.session_id)
                return
            delivery.error = response.get("error") or "unknown error"
            logger.warning("Notification %s to %s failed (try %d of %d): %s",
                           delivery.delivery_id, target.url[:50],
                           delivery.attempts, target.max_retries, delivery.error)
            if delivery.attempts < target.max_retries:
                time.sleep(min(2 ** delivery.attempts, 10))

        delivery.status = "failed"
        logger.error("Giving up on %s for session %s",
                     target.url[:50], delivery.session_id)

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        with self._lock:
            return [d.to_dict() for d in self._history]


# ═══════════════════════════════════════════════════════════════════
# Payload Shapes
# ═══════════════════════════════════════════════════════════════════

def _format_payload(fmt: str, **fields: Any) -> dict[str, Any]:
    return _render(fmt, Notification(**fields))


def _render(fmt: str, note: Notification) -> dict[str, Any]:
    render = _RENDERERS.get(fmt, _generic_body)
    return render(note)


def _generic_body(note: Notification) -> dict[str, Any]:
    body = {
        "event_type": note.event_type,
        "session_id": note.session_id,
        "workflow_type": note.workflow_type,
        "status": note.status,
        "reason": note.reason,
        "timestamp": time.time(),
    }
    if note.session_url:
        body["session_url"] = note.session_url
    if note.context:
        body["context"] = note.context
    return body


def _headline(note: Notification) -> str:
    return "Session Orchestrator: " + note.event_type.replace("_", " ").title()


def _summary_pairs(note: Notification) -> list[tuple[str, str]]:
    pairs = [("Session", note.session_id), ("Workflow", note.workflow_type),
             ("Status", note.status)]
    if note.reason:
        pairs.append(("Reason", note.reason))
    return pairs


def _teams_card(note: Notification) -> dict[str, Any]:
    """Legacy Office 365 connector card."""
    headline = _headline(note)
    card = {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "summary": headline,
        "title": headline,
        "themeColor": "D63B00" if note.status == "failed" else "2DC72D",
        "sections": [{
            "facts": [{"name": k, "value": v} for k, v in _summary_pairs(note)],
        }],
    }
    if note.session_url:
        card["potentialAction"] = [{
            "@type": "OpenUri",
            "name": "Open session",
            "targets": [{"os": "default", "uri": note.session_url}],
        }]
    return card


def _slack_blocks(note: Notification) -> dict[str, Any]:
    pairs = _summary_pairs(note)
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": _headline(note)}},
        {"type": "section", "fields": [
            {"type": "mrkdwn", "text": f"*{k}:* {v}"} for k, v in pairs[:3]
        ]},
    ]
    for k, v in pairs[3:]:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": f"*{k}:* {v}"}})
    if note.session_url:
        blocks.append({"type": "actions", "elements": [{
            "type": "button",
            "text": {"type": "plain_text", "text": "Open session"},
            "url": note.session_url,
        }]})
    return {"blocks": blocks}


_RENDERERS: dict[str, Callable[[Notification], dict[str, Any]]] = {
    "generic": _generic_body,
    "teams": _teams_card,
    "slack": _slack_blocks,
}


# ═══════════════════════════════════════════════════════════════════
# Transport
# ═══════════════════════════════════════════════════════════════════

def _default_http_client(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """POST JSON with urllib. Never raises; failures come back as success=False."""
    import urllib.error
    import urllib.request

    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as resp:
            return {"success": resp.status < 400, "status_code": resp.status}
    except urllib.error.HTTPError as e:
        return {"success": False, "status_code": e.code, "error": f"HTTP {e.code}: {e.reason}"}
    except (urllib.error.URLError, OSError) as e:
        return {"success": False, "status_code": 0, "error": str(e)}
