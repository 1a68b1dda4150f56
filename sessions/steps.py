"""
Session Orchestrator — Step Contract

A Step is one named unit of workflow logic with two operations:

    get_command(ctx, session, options) -> Command
        Pure function of the session and the read-only collaborators on ctx.
        Raises StepError when required state or subject data is missing.

    handle_result(ctx, session, result, options) -> StepOutcome
        Interprets the driver's Result. Never raises for failure results:
        errors are captured into state["error"] and routed like any result.

Steps document the session-state keys they read and write in ``reads`` /
``writes`` so non-adjacent steps are not coupled implicitly.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

from sessions.catalog import Catalog, Component, Project, ProjectLayout
from sessions.errors import StepError
from sessions.types import (
    Command,
    CommandMode,
    Result,
    Scope,
    Session,
    SessionStatus,
    SpawnRequest,
)


@dataclass
class StepOutcome:
    """What a step wants done with a result."""
    result: Result
    state: dict[str, Any] = field(default_factory=dict)
    status: SessionStatus | None = None
    replace_state: bool = False


@dataclass
class StepContext:
    """
    Read-only collaborators a step may consult.

    ``children`` returns the session's child sessions from the store.
    ``commands`` holds configured command templates (test runner etc.).
    """
    scope: Scope
    catalog: Catalog
    layout: ProjectLayout
    children: Callable[[Session], list[Session]]
    commands: dict[str, str] = field(default_factory=dict)
    clock: Callable[[], float] = time.time

    def project(self, session: Session) -> Project:
        project_id = session.subject.get("project_id") or session.project_id
        project = self.catalog.get_project(self.scope, project_id) if project_id else None
        if project is None:
            raise StepError("Project not found in session")
        return project

    def component(self, session: Session) -> Component:
        component_id = session.component_id
        component = self.catalog.get_component(self.scope, component_id) if component_id else None
        if component is None:
            raise StepError("Component not found in session")
        return component

    def context_component(self, session: Session) -> Component:
        """The session's own component, which must be a context."""
        component_id = session.component_id
        component = self.catalog.get_component(self.scope, component_id) if component_id else None
        if component is None:
            raise StepError("Context component not found")
        return component

    def parent_context(self, component: Component) -> Component:
        """The context a component belongs to."""
        parent_id = component.parent_component_id
        parent = self.catalog.get_component(self.scope, parent_id) if parent_id else None
        if parent is None:
            raise StepError(f"Context component not found for {component.name}")
        return parent

    def files(self, component: Component) -> dict[str, str]:
        return self.layout.component_files(component)

    def command_template(self, name: str, **values: Any) -> str:
        template = self.commands.get(name)
        if not template:
            raise StepError(f"No command configured for '{name}'")
        return template.format(**values)


class Step:
    """Base class for workflow steps."""

    step_id: ClassVar[str] = ""
    reads: ClassVar[tuple[str, ...]] = ()
    writes: ClassVar[tuple[str, ...]] = ()

    def get_command(self, ctx: StepContext, session: Session, options: dict[str, Any]) -> Command:
        raise NotImplementedError

    def handle_result(
        self,
        ctx: StepContext,
        session: Session,
        result: Result,
        options: dict[str, Any],
    ) -> StepOutcome:
        if result.is_ok:
            return StepOutcome(result=result)
        return StepOutcome(result=result, state={"error": result.error_message})

    def uses_attempt(self, result: Result | None) -> bool:
        """Whether an issued command, answered with this result, uses up an attempt."""
        return True

    # ── Command builders ────────────────────────────────────────

    def shell(self, command_line: str, **metadata: Any) -> Command:
        return Command(
            step_id=self.step_id,
            payload=command_line,
            mode=CommandMode.SHELL,
            metadata=metadata,
        )

    def agent(
        self,
        agent_name: str,
        prompt: str,
        options: dict[str, Any],
        **metadata: Any,
    ) -> Command:
        payload = {
            "agent": agent_name,
            "prompt": prompt,
            "auto_approve": bool(options.get("auto") or options.get("agentic")),
            "agentic": bool(options.get("agentic")),
        }
        return Command(
            step_id=self.step_id,
            payload=payload,
            mode=CommandMode.AGENT,
            metadata=metadata,
        )

    def spawn(
        self,
        requests: list[SpawnRequest],
        child_session_ids: list[str] | None = None,
        **metadata: Any,
    ) -> Command:
        return Command(
            step_id=self.step_id,
            payload="spawn_sessions",
            mode=CommandMode.SPAWN,
            metadata={"child_session_ids": list(child_session_ids or []), **metadata},
            spawn=tuple(requests),
        )

    # ── State helpers ───────────────────────────────────────────

    @staticmethod
    def require_state(session: Session, key: str, message: str) -> Any:
        value = session.state.get(key)
        if value in (None, "", [], {}):
            raise StepError(message)
        return value

    def __repr__(self) -> str:
        return f"<Step {self.step_id}>"
