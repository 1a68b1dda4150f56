"""
Session Orchestrator — Session Manager

The façade callers use to drive sessions. The engine is purely reactive: it
holds no scheduler and no per-session memory between calls. Each operation
is one load-decide-persist cycle inside a store transaction, followed by
change notification:

    start(scope, workflow_type, subject)                    → Session
    next_command(scope, session_id)                         → Interaction
    submit_result(scope, session_id, interaction_id, result) → Session

An external driver executes each command in its own environment between the
two calls. Everything the next decision needs lives in the persisted session.
"""

from __future__ import annotations

import sys
import time
from typing import Any

from engine.logging import SessionTrace, get_logger
from engine.webhooks import SESSION_COMPLETE, SESSION_FAILED, WebhookConfig, WebhookNotifier
from sessions.broadcast import CREATED, DELETED, UPDATED, SessionBroadcaster
from sessions.catalog import Catalog, InMemoryCatalog, ProjectLayout
from sessions.errors import (
    InteractionAlreadyCompleted,
    InteractionNotFound,
    InvalidInteraction,
    InvalidState,
    RetryLimitExceeded,
    SessionComplete,
    SessionNotFound,
)
from sessions.live_status import InteractionRegistry, RuntimeStatus
from sessions.orchestrator import Orchestrator
from sessions.registry import WorkflowRegistry
from sessions.steps import StepContext
from sessions.store import SessionStore
from sessions.types import (
    EventType,
    ExecutionMode,
    Interaction,
    Result,
    Scope,
    Session,
    SessionEvent,
    SessionStatus,
)

logger = get_logger("runtime")

DEFAULT_COMMANDS = {
    "test": "pytest {test_file} -q",
    "compile": "python -m py_compile {test_file}",
    "validate_design": "test -s {design_file}",
    "validate_spec": "test -s {spec_file}",
}

# Live agent state implied by each driver event
_AGENT_STATES = {
    EventType.CONVERSATION_STARTED: "thinking",
    EventType.CONVERSATION_ENDED: "idle",
    EventType.TOOL_CALLED: "running_tool",
    EventType.TOOL_RESULT: "thinking",
    EventType.COMMAND_STARTED: "running",
    EventType.COMMAND_FINISHED: "idle",
    EventType.ERROR_OCCURRED: "error",
}


class SessionManager:
    """
    Orchestration façade.

    Serialization per session comes from the store (BEGIN IMMEDIATE plus the
    session version check), never from in-process locks, so any number of
    managers may share one database.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        registry: WorkflowRegistry | None = None,
        catalog: Catalog | None = None,
        layout: ProjectLayout | None = None,
        broadcaster: SessionBroadcaster | None = None,
        live_status: InteractionRegistry | None = None,
        notifier: WebhookNotifier | None = None,
        commands: dict[str, str] | None = None,
        db_path: str = "sessions.db",
        verbose: bool = False,
    ):
        if registry is None:
            from workflows import build_default_registry
            registry = build_default_registry()
        self.store = store or SessionStore(db_path)
        self.registry = registry
        self.catalog = catalog or InMemoryCatalog()
        self.layout = layout or ProjectLayout()
        self.broadcaster = broadcaster or SessionBroadcaster()
        self.live_status = live_status or InteractionRegistry()
        self.notifier = notifier
        self.commands = {**DEFAULT_COMMANDS, **(commands or {})}
        self.verbose = verbose

    @classmethod
    def from_config(
        cls,
        config,
        catalog: Catalog | None = None,
        registry: WorkflowRegistry | None = None,
        db_path: str | None = None,
        verbose: bool = False,
    ) -> SessionManager:
        """Wire a manager from a ConfigLoader. An explicit db_path wins over store.db_path."""
        from workflows import build_default_registry

        db_path = db_path or config.resolve_path("store.db_path", "sessions.db")
        store = SessionStore(db_path, busy_timeout=config.get("store.busy_timeout_ms", 5000))

        if registry is None:
            registry = build_default_registry(
                max_attempts=config.get("orchestration.max_attempts"),
                overrides=config.get("orchestration.workflows") or {},
            )

        if catalog is None:
            catalog_path = config.resolve_path("catalog.path")
            if catalog_path is not None and catalog_path.exists():
                catalog = InMemoryCatalog.from_yaml(catalog_path)
            else:
                catalog = InMemoryCatalog()

        webhooks = [
            WebhookConfig.from_dict(w)
            for w in config.get("notifications.webhooks") or []
        ]
        notifier = None
        if webhooks:
            notifier = WebhookNotifier(
                configs=webhooks,
                base_url=config.get("notifications.base_url", "") or "",
            )

        return cls(
            store=store,
            registry=registry,
            catalog=catalog,
            layout=ProjectLayout.from_config(config.get("layout")),
            notifier=notifier,
            commands=config.get("commands") or {},
            verbose=verbose,
        )

    # ─── Core operations ─────────────────────────────────────────────

    def start(
        self,
        scope: Scope,
        workflow_type: str,
        subject: dict[str, Any] | None = None,
        execution_mode: ExecutionMode | str = ExecutionMode.MANUAL,
        parent_session_id: str | None = None,
        state: dict[str, Any] | None = None,
    ) -> Session:
        """Create a session for a subject. Nothing runs until next_command."""
        self.registry.get(workflow_type)
        execution_mode = ExecutionMode(execution_mode)

        with self.store.transaction():
            parent = self._load(scope, parent_session_id) if parent_session_id else None
            session = Session.create(
                workflow_type,
                scope,
                subject=subject,
                execution_mode=execution_mode,
                parent=parent,
                state=state,
            )
            self.store.insert_session(session)
            self.store.log_action(
                session.session_id, session.correlation_id, "session_started",
                {"workflow_type": workflow_type, "subject": session.subject,
                 "parent_session_id": session.parent_session_id},
                idempotency_key=f"{session.session_id}:start",
            )

        SessionTrace.for_session(session).on_session_start(
            session.subject, session.execution_mode.value,
        )
        self._log(f"START {workflow_type} {session.session_id}")
        self.broadcaster.publish(CREATED, session)
        return session

    def next_command(
        self,
        scope: Scope,
        session_id: str,
        options: dict[str, Any] | None = None,
    ) -> Interaction:
        """
        Return the command to run next, as a pending Interaction.

        If a command is already outstanding it is returned unchanged, so a
        driver that lost the response can safely call again.
        """
        terminal_error: SessionComplete | RetryLimitExceeded | None = None
        children: list[Session] = []

        with self.store.transaction():
            session = self._load(scope, session_id)
            if session.is_terminal:
                raise SessionComplete(f"Session {session_id} is {session.status.value}")

            pending = session.pending_interaction
            if pending is not None:
                self._log(f"NEXT {session_id}: returning pending {pending.step_id} "
                          f"({pending.interaction_id})")
                return pending

            orchestrator = self.registry.get(session.workflow_type)
            trace = SessionTrace.for_session(session)
            try:
                step_id = orchestrator.get_next_interaction(session)
            except SessionComplete as e:
                self._finish(session, SessionStatus.COMPLETE)
                terminal_error = e
            except RetryLimitExceeded as e:
                session.merge_state({"error": str(e)})
                self._finish(session, SessionStatus.FAILED, reason=str(e))
                terminal_error = e
            except (InvalidState, InvalidInteraction) as e:
                trace.on_transition_error(e.code, str(e))
                raise
            else:
                interaction, children = self._issue(scope, session, orchestrator, step_id, options)

        if terminal_error is not None:
            trace.on_transition_error(terminal_error.code, str(terminal_error))
            self._after_terminal(session, reason=session.state.get("error"))
            raise terminal_error

        last = session.interactions[-2] if len(session.interactions) > 1 else None
        trace.on_route_decision(
            last.step_id if last else None,
            last.result.status.value if last and last.result else None,
            interaction.step_id,
        )
        trace.on_command_issued(
            interaction.step_id, interaction.interaction_id,
            interaction.sequence, interaction.command.mode.value,
        )
        for child in children:
            trace.on_child_spawned(child.session_id, child.workflow_type)
            self.broadcaster.publish(CREATED, child)
        self._log(f"NEXT {session_id}: {interaction.step_id} (#{interaction.sequence})")
        self.broadcaster.publish(UPDATED, session)
        return interaction

    def submit_result(
        self,
        scope: Scope,
        session_id: str,
        interaction_id: str,
        result: Result | dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> Session:
        """
        Attach a result to the pending interaction and apply the step's
        state updates, atomically. Replays of a completed interaction are
        rejected with InteractionAlreadyCompleted.
        """
        if not isinstance(result, Result):
            result = Result.from_dict(result)

        with self.store.transaction():
            session = self._load(scope, session_id)
            interaction = session.find_interaction(interaction_id)
            if interaction is None:
                raise InteractionNotFound(
                    f"Interaction {interaction_id} not found in session {session_id}"
                )
            if interaction.is_completed:
                raise InteractionAlreadyCompleted(
                    f"Interaction {interaction_id} already has a result"
                )
            if session.is_terminal:
                raise SessionComplete(f"Session {session_id} is {session.status.value}")

            orchestrator = self.registry.get(session.workflow_type)
            step = orchestrator.get_step(interaction.step_id)
            outcome = step.handle_result(
                self._context(scope), session, result, self._options(session, options),
            )

            interaction.result = outcome.result
            interaction.completed_at = time.time()
            session.merge_state(outcome.state, replace_state=outcome.replace_state)
            if outcome.status is not None:
                session.transition(outcome.status)
            elif orchestrator.is_complete(session):
                session.transition(SessionStatus.COMPLETE)

            self.store.complete_interaction(interaction)
            self.store.update_session(session)
            self.store.log_action(
                session.session_id, session.correlation_id, "result_recorded",
                {"step_id": interaction.step_id, "interaction_id": interaction_id,
                 "status": outcome.result.status.value,
                 "session_status": session.status.value},
                idempotency_key=f"{interaction_id}:result",
            )
            if session.is_terminal:
                self.store.log_action(
                    session.session_id, session.correlation_id,
                    f"session_{session.status.value}",
                    {"step_id": interaction.step_id},
                    idempotency_key=f"{session.session_id}:terminal",
                )

        self.live_status.clear(interaction_id)
        SessionTrace.for_session(session).on_result_recorded(
            interaction.step_id, interaction_id,
            outcome.result.status.value,
            annotated=outcome.result != result,
            error_message=outcome.result.error_message,
        )
        self._log(f"RESULT {session_id}: {interaction.step_id} → "
                  f"{outcome.result.status.value} [{session.status.value}]")
        if session.is_terminal:
            self._after_terminal(session, reason=session.state.get("error"))
        self.broadcaster.publish(UPDATED, session)
        return session

    # ─── Supplemental operations ─────────────────────────────────────

    def abort(self, scope: Scope, session_id: str, reason: str = "Aborted") -> Session:
        """Manually fail an active session. A pending command stays unanswered."""
        with self.store.transaction():
            session = self._load(scope, session_id)
            if session.is_terminal:
                raise SessionComplete(f"Session {session_id} is {session.status.value}")
            session.merge_state({"error": reason, "aborted_at": time.time()})
            self._finish(session, SessionStatus.FAILED, reason=reason)

        pending = session.pending_interaction
        if pending is not None:
            self.live_status.clear(pending.interaction_id)
        self._log(f"ABORT {session_id}: {reason}")
        self._after_terminal(session, reason=reason)
        self.broadcaster.publish(UPDATED, session)
        return session

    def update_execution_mode(
        self,
        scope: Scope,
        session_id: str,
        execution_mode: ExecutionMode | str,
    ) -> Session:
        """Change the mode for future commands; a pending command is not rebuilt."""
        execution_mode = ExecutionMode(execution_mode)
        with self.store.transaction():
            session = self._load(scope, session_id)
            session.execution_mode = execution_mode
            self.store.update_session(session)
        self.broadcaster.publish(UPDATED, session)
        return session

    def handle_event(
        self,
        scope: Scope,
        session_id: str,
        event_type: EventType | str,
        data: dict[str, Any] | None = None,
        interaction_id: str | None = None,
    ) -> SessionEvent:
        """Record a driver event and refresh the live status of the running command."""
        event_type = EventType(event_type)
        data = dict(data or {})
        changed = False

        with self.store.transaction():
            session = self._load(scope, session_id)
            if interaction_id is not None and session.find_interaction(interaction_id) is None:
                raise InteractionNotFound(
                    f"Interaction {interaction_id} not found in session {session_id}"
                )
            event = self.store.append_event(SessionEvent(
                session_id=session_id,
                event_type=event_type,
                data=data,
                sent_at=time.time(),
            ))
            conversation_id = data.get("conversation_id")
            if event_type == EventType.CONVERSATION_STARTED and conversation_id:
                session.external_conversation_id = conversation_id
                self.store.update_session(session)
                changed = True

        # Live status only tracks commands that are still running
        if interaction_id is not None:
            target = session.find_interaction(interaction_id)
        else:
            target = session.pending_interaction
        if target is not None and not target.is_completed:
            self.live_status.update(
                target.interaction_id,
                agent_state=_AGENT_STATES.get(event_type),
                last_notification={"event_type": event_type.value, "data": data},
                last_activity=event.sent_at,
                conversation_id=data.get("conversation_id"),
            )

        SessionTrace.for_session(session).on_event_received(event_type.value)
        if changed:
            self.broadcaster.publish(UPDATED, session)
        return event

    # ─── Live status ─────────────────────────────────────────────────

    def get_interaction_status(self, scope: Scope, interaction_id: str) -> RuntimeStatus | None:
        self._load_interaction(scope, interaction_id)
        return self.live_status.get(interaction_id)

    def update_interaction_status(
        self,
        scope: Scope,
        interaction_id: str,
        **changes: Any,
    ) -> RuntimeStatus:
        """Set live fields on a running command. Completed commands keep no status."""
        interaction = self._load_interaction(scope, interaction_id)
        if interaction.is_completed:
            raise InteractionAlreadyCompleted(
                f"Interaction {interaction_id} already has a result"
            )
        return self.live_status.update(interaction_id, **changes)

    def clear_interaction_status(self, scope: Scope, interaction_id: str) -> bool:
        self._load_interaction(scope, interaction_id)
        return self.live_status.clear(interaction_id)

    def get_events(self, scope: Scope, session_id: str) -> list[SessionEvent]:
        self._load(scope, session_id)
        return self.store.get_events(session_id)

    def get_session(self, scope: Scope, session_id: str) -> Session:
        return self._load(scope, session_id)

    def list_sessions(
        self,
        scope: Scope,
        status: SessionStatus | str | None = None,
        workflow_type: str | None = None,
        parent_session_id: str | None = None,
        limit: int = 100,
    ) -> list[Session]:
        return self.store.list_sessions(
            account_id=scope.account_id,
            project_id=scope.project_id or None,
            status=SessionStatus(status) if status else None,
            workflow_type=workflow_type,
            parent_session_id=parent_session_id,
            limit=limit,
        )

    def get_children(self, scope: Scope, session_id: str) -> list[Session]:
        self._load(scope, session_id)
        return self.store.get_children(session_id)

    def is_complete(self, scope: Scope, session_id: str) -> bool:
        session = self._load(scope, session_id)
        return self.registry.get(session.workflow_type).is_complete(session)

    def delete_session(self, scope: Scope, session_id: str) -> Session:
        """Delete a session. Its children are detached, not deleted."""
        with self.store.transaction():
            session = self._load(scope, session_id)
            self.store.delete_session(session_id)
            self.store.log_action(
                session_id, session.correlation_id, "session_deleted",
                {"detached_children": list(session.child_session_ids)},
                idempotency_key=f"{session_id}:delete",
            )
        for interaction in session.interactions:
            self.live_status.clear(interaction.interaction_id)
        self._log(f"DELETE {session_id} (detached {len(session.child_session_ids)} children)")
        self.broadcaster.publish(DELETED, session)
        return session

    def get_ledger(self, scope: Scope, session_id: str) -> list[dict[str, Any]]:
        self._load(scope, session_id)
        return self.store.get_ledger(session_id=session_id)

    def stats(self, scope: Scope | None = None) -> dict[str, Any]:
        """Store counts; limited to the scope's account when one is given."""
        if scope is not None:
            stats = self.store.stats(account_id=scope.account_id)
        else:
            stats = self.store.stats()
            stats["live_interactions"] = len(self.live_status)
        stats["workflow_types"] = self.registry.workflow_types
        return stats

    def close(self):
        self.store.close()

    # ─── Internals ───────────────────────────────────────────────────

    def _load(self, scope: Scope, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None or not scope.owns(session):
            raise SessionNotFound(f"Session not found: {session_id}")
        return session

    def _load_interaction(self, scope: Scope, interaction_id: str) -> Interaction:
        interaction = self.store.get_interaction(interaction_id)
        if interaction is None:
            raise InteractionNotFound(f"Interaction not found: {interaction_id}")
        self._load(scope, interaction.session_id)
        return interaction

    def _context(self, scope: Scope) -> StepContext:
        return StepContext(
            scope=scope,
            catalog=self.catalog,
            layout=self.layout,
            children=lambda s: self.store.get_children(s.session_id),
            commands=self.commands,
        )

    @staticmethod
    def _options(session: Session, options: dict[str, Any] | None) -> dict[str, Any]:
        return {**session.execution_mode.options(), **(options or {})}

    def _issue(
        self,
        scope: Scope,
        session: Session,
        orchestrator: Orchestrator,
        step_id: str,
        options: dict[str, Any] | None,
    ) -> tuple[Interaction, list[Session]]:
        """Build the step's command, create requested children, persist the interaction."""
        step = orchestrator.get_step(step_id)
        command = step.get_command(self._context(scope), session, self._options(session, options))

        children = []
        for request in command.spawn:
            self.registry.get(request.workflow_type)
            child = Session.create(
                request.workflow_type,
                scope,
                subject=request.subject,
                execution_mode=request.execution_mode,
                parent=session,
            )
            self.store.insert_session(child)
            children.append(child)
        if children:
            child_ids = list(command.metadata.get("child_session_ids", []))
            child_ids.extend(c.session_id for c in children)
            command = command.with_metadata(child_session_ids=child_ids)
            session.child_session_ids.extend(c.session_id for c in children)

        interaction = Interaction.create(
            session.session_id, command, sequence=len(session.interactions) + 1,
        )
        self.store.add_interaction(interaction)
        session.interactions.append(interaction)
        self.store.update_session(session)
        self.store.log_action(
            session.session_id, session.correlation_id, "command_issued",
            {"step_id": step_id, "interaction_id": interaction.interaction_id,
             "sequence": interaction.sequence, "mode": command.mode.value,
             "spawned": [c.session_id for c in children]},
            idempotency_key=f"{session.session_id}:{interaction.sequence}:command",
        )
        return interaction, children

    def _finish(self, session: Session, status: SessionStatus, reason: str | None = None):
        session.transition(status)
        self.store.update_session(session)
        self.store.log_action(
            session.session_id, session.correlation_id, f"session_{status.value}",
            {"reason": reason} if reason else {},
            idempotency_key=f"{session.session_id}:terminal",
        )

    def _after_terminal(self, session: Session, reason: str | None = None):
        SessionTrace.for_session(session).on_session_end(
            session.status.value, len(session.interactions), reason,
        )
        if self.notifier is not None:
            event_type = SESSION_COMPLETE if session.status == SessionStatus.COMPLETE else SESSION_FAILED
            self.notifier.notify_session(
                event_type=event_type,
                session_id=session.session_id,
                workflow_type=session.workflow_type,
                status=session.status.value,
                reason=reason or "",
                context={"parent_session_id": session.parent_session_id} if session.parent_session_id else None,
            )

    def _log(self, msg: str):
        logger.debug(msg)
        if self.verbose:
            print(f"  [sessions] {msg}", file=sys.stderr, flush=True)
