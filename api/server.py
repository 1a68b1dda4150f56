"""
Session Orchestrator — API Server

FastAPI application serving:
  GET    /health                                    — liveness
  GET    /ready                                     — readiness (store reachable)
  GET    /v1/workflows                              — registered workflow types
  POST   /v1/sessions                               — start a session
  GET    /v1/sessions                               — list sessions in scope
  GET    /v1/sessions/{id}                          — session with interactions
  DELETE /v1/sessions/{id}                          — delete (children detached)
  GET    /v1/sessions/{id}/children                 — child sessions
  POST   /v1/sessions/{id}/next                     — next (or pending) command
  POST   /v1/sessions/{id}/interactions/{iid}/result — submit a result
  POST   /v1/sessions/{id}/abort                    — fail an active session
  PUT    /v1/sessions/{id}/execution-mode           — change execution mode
  POST   /v1/sessions/{id}/events                   — record a driver event
  GET    /v1/sessions/{id}/events                   — event log
  GET|PUT|DELETE /v1/interactions/{iid}/status      — live status
  GET    /v1/stats                                  — statistics for the caller's account

Every /v1 call is scoped by the X-Account-Id, X-User-Id and X-Project-Id
headers. Engine errors map to HTTP status codes by class.

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

Requires: pip install fastapi uvicorn
"""

# No ``from __future__ import annotations`` here: FastAPI must resolve the
# endpoint annotations against names imported inside create_app().
import os
import time
from typing import Any

from engine.logging import get_logger
from sessions.errors import (
    ConcurrentUpdateError,
    InteractionAlreadyCompleted,
    InteractionNotFound,
    SessionError,
    SessionNotFound,
    StepError,
    TransitionError,
    UnknownWorkflow,
)

logger = get_logger("api")

# Most specific class first
_HTTP_STATUS: list[tuple[type[SessionError], int]] = [
    (SessionNotFound, 404),
    (InteractionNotFound, 404),
    (StepError, 422),
    (UnknownWorkflow, 422),
    (InteractionAlreadyCompleted, 409),
    (ConcurrentUpdateError, 409),
    (TransitionError, 409),
]


def http_status_for(error: SessionError) -> int:
    for cls, status in _HTTP_STATUS:
        if isinstance(error, cls):
            return status
    return 409


def create_app(manager: Any = None, project_root: str = ".") -> Any:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances around their own manager.
    """
    from fastapi import FastAPI, HTTPException, Request
    from fastapi.responses import JSONResponse

    from api.models import (
        AbortRequest,
        EventSubmission,
        ExecutionModeUpdate,
        ResultSubmission,
        RuntimeStatusUpdate,
        SessionSummary,
        StartSessionRequest,
    )
    from sessions.runtime import SessionManager
    from sessions.types import Scope

    app = FastAPI(
        title="Session Orchestrator API",
        version="0.1.0",
        description="Persisted, resumable workflow sessions for agent-assisted development",
    )

    # ── State ────────────────────────────────────────────────

    _manager: SessionManager | None = manager

    def get_manager() -> SessionManager:
        nonlocal _manager
        if _manager is None:
            from engine.config_loader import get_config
            _manager = SessionManager.from_config(get_config(project_root=project_root))
        return _manager

    def get_scope(request: Request) -> Scope:
        account_id = request.headers.get("x-account-id", "")
        if not account_id:
            raise HTTPException(status_code=400, detail="X-Account-Id header is required")
        return Scope(
            account_id=account_id,
            user_id=request.headers.get("x-user-id", ""),
            project_id=request.headers.get("x-project-id", ""),
        )

    async def read_body(request: Request) -> dict[str, Any]:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=422, detail="Request body is not valid JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=422, detail="Request body must be a JSON object")
        return body

    def summary(session) -> dict[str, Any]:
        last = session.last_interaction
        return SessionSummary(
            session_id=session.session_id,
            workflow_type=session.workflow_type,
            status=session.status.value,
            execution_mode=session.execution_mode.value,
            component_id=session.component_id,
            parent_session_id=session.parent_session_id,
            interaction_count=len(session.interactions),
            current_step=last.step_id if last else None,
            created_at=session.created_at,
            updated_at=session.updated_at,
        ).to_dict()

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        status = http_status_for(exc)
        logger.info("%s %s -> %d %s", request.method, request.url.path, status, exc.code)
        return JSONResponse(
            status_code=status,
            content={"error": exc.code, "detail": str(exc)},
        )

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _manager is not None:
            _manager.close()

    # ── Workflows ─────────────────────────────────────────────

    @app.get("/v1/workflows")
    async def list_workflows():
        workflows = get_manager().registry.describe()
        return JSONResponse(content={"count": len(workflows), "workflows": workflows})

    # ── Sessions ──────────────────────────────────────────────

    @app.post("/v1/sessions")
    async def start_session(request: Request):
        scope = get_scope(request)
        body = await read_body(request)
        start = StartSessionRequest.from_body(body)
        errors = start.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        session = get_manager().start(
            scope,
            start.workflow_type,
            subject=start.subject,
            execution_mode=start.execution_mode,
            parent_session_id=start.parent_session_id,
            state=start.state,
        )
        return JSONResponse(status_code=201, content=session.to_dict())

    @app.get("/v1/sessions")
    async def list_sessions(
        request: Request,
        status: str | None = None,
        workflow_type: str | None = None,
        parent_session_id: str | None = None,
        limit: int = 100,
    ):
        scope = get_scope(request)
        if status is not None and status not in ("active", "complete", "failed"):
            return JSONResponse(status_code=422, content={"errors": [f"unknown status: {status}"]})
        sessions = get_manager().list_sessions(
            scope,
            status=status,
            workflow_type=workflow_type,
            parent_session_id=parent_session_id,
            limit=min(max(limit, 1), 1000),
        )
        return JSONResponse(content={
            "count": len(sessions),
            "sessions": [summary(s) for s in sessions],
        })

    @app.get("/v1/sessions/{session_id}")
    async def get_session(session_id: str, request: Request):
        session = get_manager().get_session(get_scope(request), session_id)
        return JSONResponse(content=session.to_dict())

    @app.delete("/v1/sessions/{session_id}")
    async def delete_session(session_id: str, request: Request):
        session = get_manager().delete_session(get_scope(request), session_id)
        return JSONResponse(content={
            "session_id": session_id,
            "deleted": True,
            "detached_children": list(session.child_session_ids),
        })

    @app.get("/v1/sessions/{session_id}/children")
    async def get_children(session_id: str, request: Request):
        children = get_manager().get_children(get_scope(request), session_id)
        return JSONResponse(content={
            "count": len(children),
            "sessions": [summary(c) for c in children],
        })

    # ── Command / result cycle ────────────────────────────────

    @app.post("/v1/sessions/{session_id}/next")
    async def next_command(session_id: str, request: Request):
        scope = get_scope(request)
        body = await read_body(request)
        options = body.get("options") or {}
        if not isinstance(options, dict):
            return JSONResponse(status_code=422, content={"errors": ["options must be an object"]})
        interaction = get_manager().next_command(scope, session_id, options=options)
        return JSONResponse(content=interaction.to_dict())

    @app.post("/v1/sessions/{session_id}/interactions/{interaction_id}/result")
    async def submit_result(session_id: str, interaction_id: str, request: Request):
        scope = get_scope(request)
        submission = ResultSubmission.from_body(await read_body(request))
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        session = get_manager().submit_result(
            scope, session_id, interaction_id,
            submission.to_result_dict(),
            options=submission.options,
        )
        return JSONResponse(content=session.to_dict())

    @app.post("/v1/sessions/{session_id}/abort")
    async def abort_session(session_id: str, request: Request):
        scope = get_scope(request)
        body = await read_body(request)
        action = AbortRequest(reason=body.get("reason", "Aborted"))
        errors = action.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        session = get_manager().abort(scope, session_id, reason=action.reason)
        return JSONResponse(content=session.to_dict(include_interactions=False))

    @app.put("/v1/sessions/{session_id}/execution-mode")
    async def update_execution_mode(session_id: str, request: Request):
        scope = get_scope(request)
        body = await read_body(request)
        update = ExecutionModeUpdate(execution_mode=body.get("execution_mode", ""))
        errors = update.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        session = get_manager().update_execution_mode(scope, session_id, update.execution_mode)
        return JSONResponse(content=session.to_dict(include_interactions=False))

    # ── Events ────────────────────────────────────────────────

    @app.post("/v1/sessions/{session_id}/events")
    async def post_event(session_id: str, request: Request):
        scope = get_scope(request)
        body = await read_body(request)
        submission = EventSubmission(
            event_type=body.get("event_type", ""),
            data=body.get("data") if body.get("data") is not None else {},
            interaction_id=body.get("interaction_id"),
        )
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        event = get_manager().handle_event(
            scope, session_id, submission.event_type,
            data=submission.data,
            interaction_id=submission.interaction_id,
        )
        return JSONResponse(status_code=201, content=event.to_dict())

    @app.get("/v1/sessions/{session_id}/events")
    async def get_events(session_id: str, request: Request):
        events = get_manager().get_events(get_scope(request), session_id)
        return JSONResponse(content={
            "count": len(events),
            "events": [e.to_dict() for e in events],
        })

    # ── Live status ───────────────────────────────────────────

    @app.get("/v1/interactions/{interaction_id}/status")
    async def get_interaction_status(interaction_id: str, request: Request):
        status = get_manager().get_interaction_status(get_scope(request), interaction_id)
        if status is None:
            raise HTTPException(status_code=404, detail="No live status for interaction")
        return JSONResponse(content=status.to_dict())

    @app.put("/v1/interactions/{interaction_id}/status")
    async def put_interaction_status(interaction_id: str, request: Request):
        scope = get_scope(request)
        body = await read_body(request)
        update = RuntimeStatusUpdate(
            agent_state=body.get("agent_state"),
            last_notification=body.get("last_notification"),
            last_activity=body.get("last_activity"),
            conversation_id=body.get("conversation_id"),
        )
        errors = update.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        status = get_manager().update_interaction_status(scope, interaction_id, **update.to_dict())
        return JSONResponse(content=status.to_dict())

    @app.delete("/v1/interactions/{interaction_id}/status")
    async def delete_interaction_status(interaction_id: str, request: Request):
        cleared = get_manager().clear_interaction_status(get_scope(request), interaction_id)
        return JSONResponse(content={"interaction_id": interaction_id, "cleared": cleared})

    # ── Stats ─────────────────────────────────────────────────

    @app.get("/v1/stats")
    async def get_stats(request: Request):
        return JSONResponse(content=get_manager().stats(get_scope(request)))

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            get_manager().stats()
            return JSONResponse(content={"status": "ok"})
        except Exception as e:
            logger.warning("readiness check failed: %s", e)
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app(project_root=os.environ.get("SO_PROJECT_ROOT", "."))
