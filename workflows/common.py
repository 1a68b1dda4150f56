"""
Shared steps and helpers for the workflow families.

  - sanitize / branch_name: git-safe branch names from component names
  - git_commit_command: one add/commit/push command line
  - Initialize: create or switch to the session's working branch
  - Finalize: commit the session's artifacts and end the session
  - SpawnChildSessionsStep: fan out one child session per child component
  - format_test_failures: readable failure summary from test run data

Session state keys:
  branch_name      written by Initialize, read by Finalize
  initialized_at   written by Initialize
  finalized_at     written by Finalize
  committed_files  written by Finalize on success
  error            written by any failing step
"""

from __future__ import annotations

import re
import shlex
from typing import Any, ClassVar

from sessions.catalog import Component
from sessions.errors import StepError
from sessions.steps import Step, StepContext, StepOutcome
from sessions.types import (
    Command,
    ExecutionMode,
    Result,
    ResultStatus,
    Session,
    SessionStatus,
    SpawnRequest,
)

CHILDREN_RUNNING = "Child sessions still running"

_UNSAFE_CHARS = re.compile(r"[^a-z0-9\-_]")
_REPEATED_HYPHENS = re.compile(r"-{2,}")


def sanitize(value: str) -> str:
    """Lowercase, replace unsafe characters with hyphens, collapse and trim them."""
    cleaned = _UNSAFE_CHARS.sub("-", value.lower())
    cleaned = _REPEATED_HYPHENS.sub("-", cleaned)
    return cleaned.strip("-")


def branch_name(prefix: str, component_name: str) -> str:
    return sanitize(f"{prefix}-{component_name}")


def git_commit_command(files: list[str], message: str, branch: str) -> str:
    paths = " ".join(shlex.quote(f) for f in files)
    return (
        f"git add {paths} && "
        f"git commit -m {shlex.quote(message)} && "
        f"git push -u origin {shlex.quote(branch)}"
    )


def format_test_failures(test_run: dict[str, Any]) -> str:
    failures = test_run.get("failures") or []
    details = []
    for failure in failures:
        error = failure.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
        detail = f"Error: {message}" if message else "No error details available"
        details.append(f"{failure.get('full_title', 'unnamed test')}\n{detail}")
    count = (test_run.get("stats") or {}).get("failures", len(failures))
    return (
        f"Test execution status: {test_run.get('execution_status', 'unknown')}\n"
        f"{count} test(s) failed:\n\n"
        + "\n\n".join(details)
    )


# ═══════════════════════════════════════════════════════════════════
# Initialize
# ═══════════════════════════════════════════════════════════════════

class Initialize(Step):
    step_id = "Initialize"
    writes = ("branch_name", "initialized_at")
    branch_prefix: ClassVar[str] = "session-for"

    def branch(self, ctx: StepContext, session: Session) -> str:
        return branch_name(self.branch_prefix, ctx.component(session).name)

    def get_command(self, ctx, session, options) -> Command:
        branch = self.branch(ctx, session)
        quoted = shlex.quote(branch)
        return self.shell(
            f"git fetch origin && (git switch {quoted} || git switch -c {quoted})",
            branch_name=branch,
        )

    def handle_result(self, ctx, session, result, options) -> StepOutcome:
        if not result.is_ok:
            return StepOutcome(result=result, state={"error": result.error_message})
        return StepOutcome(
            result=result,
            state={"branch_name": self.branch(ctx, session), "initialized_at": ctx.clock()},
        )


# ═══════════════════════════════════════════════════════════════════
# Finalize
# ═══════════════════════════════════════════════════════════════════

class Finalize(Step):
    """
    Terminal step. Commits the artifacts the session produced. An ok result
    completes the session; an error result fails it.
    """
    step_id = "Finalize"
    reads = ("branch_name",)
    writes = ("finalized_at", "committed_files", "error")
    branch_prefix: ClassVar[str] = "session-for"

    def artifacts(self, ctx: StepContext, session: Session) -> list[str]:
        raise NotImplementedError

    def commit_message(self, ctx: StepContext, session: Session, files: list[str]) -> str:
        component = ctx.component(session)
        return f"{session.workflow_type.replace('_', ' ')}: {component.name}"

    def branch(self, ctx: StepContext, session: Session) -> str:
        stored = session.state.get("branch_name")
        if isinstance(stored, str) and stored:
            return stored
        return branch_name(self.branch_prefix, ctx.component(session).name)

    def get_command(self, ctx, session, options) -> Command:
        files = self.artifacts(ctx, session)
        if not files:
            raise StepError("No files to commit")
        branch = self.branch(ctx, session)
        message = self.commit_message(ctx, session, files)
        return self.shell(
            git_commit_command(files, message, branch),
            branch_name=branch,
            committed_files=files,
        )

    def handle_result(self, ctx, session, result, options) -> StepOutcome:
        now = ctx.clock()
        if result.is_ok:
            return StepOutcome(
                result=result,
                state={"finalized_at": now, "committed_files": self.artifacts(ctx, session)},
                status=SessionStatus.COMPLETE,
            )
        return StepOutcome(
            result=result,
            state={"finalized_at": now, "error": result.error_message},
            status=SessionStatus.FAILED,
        )


# ═══════════════════════════════════════════════════════════════════
# Parent/child composition
# ═══════════════════════════════════════════════════════════════════

def child_status_error(ctx: StepContext, children: list[Session]) -> str | None:
    """Running children take precedence over failed ones."""
    running = [_child_name(ctx, c) for c in children if c.status == SessionStatus.ACTIVE]
    if running:
        return f"{CHILDREN_RUNNING}: " + ", ".join(running)
    failed = [
        f"{_child_name(ctx, c)} (reason: {c.state.get('error') or 'unknown'})"
        for c in children if c.status == SessionStatus.FAILED
    ]
    if failed:
        return "Child sessions failed: " + ", ".join(failed)
    return None


def _child_name(ctx: StepContext, child: Session) -> str:
    component_id = child.component_id
    component = ctx.catalog.get_component(ctx.scope, component_id) if component_id else None
    return component.name if component else child.session_id


class SpawnChildSessionsStep(Step):
    """
    Fan out one child session per child component of the session's context,
    ordered by priority (highest first) then name. Re-running the step reuses
    existing children of the same workflow type instead of creating more.

    The result is judged by the children's status, not by what the driver
    reported: the step succeeds only once every child is complete.
    """
    child_workflow_type: ClassVar[str] = ""
    child_execution_mode: ClassVar[ExecutionMode | None] = None

    def children(self, ctx: StepContext, session: Session) -> list[Session]:
        return [c for c in ctx.children(session) if c.workflow_type == self.child_workflow_type]

    def child_components(self, ctx: StepContext, session: Session) -> list[Component]:
        context = ctx.context_component(session)
        components = ctx.catalog.child_components(ctx.scope, context.component_id)
        if not components:
            raise StepError(f"No child components found for context {context.name}")
        return components

    def spawn_requests(self, ctx: StepContext, session: Session) -> list[SpawnRequest]:
        mode = self.child_execution_mode or session.execution_mode
        return [
            SpawnRequest(
                workflow_type=self.child_workflow_type,
                subject={"component_id": c.component_id, "project_id": c.project_id},
                execution_mode=mode,
            )
            for c in self.child_components(ctx, session)
        ]

    def get_command(self, ctx, session, options) -> Command:
        ctx.context_component(session)
        existing = self.children(ctx, session)
        if existing:
            return self.spawn(
                [],
                child_session_ids=[c.session_id for c in existing],
                session_type=self.child_workflow_type,
                reused=True,
            )
        return self.spawn(
            self.spawn_requests(ctx, session),
            session_type=self.child_workflow_type,
        )

    def handle_result(self, ctx, session, result, options) -> StepOutcome:
        children = self.children(ctx, session)
        if not children:
            error = "No child sessions found"
        else:
            error = child_status_error(ctx, children)
        if error:
            return StepOutcome(
                result=result.annotate(status=ResultStatus.ERROR, error_message=error),
                state={"error": error},
            )
        return StepOutcome(result=result.annotate(status=ResultStatus.OK, error_message=None))

    def uses_attempt(self, result: Result | None) -> bool:
        # Waiting on healthy children is not a retry; failed children still count
        return not (
            result is not None
            and (result.error_message or "").startswith(CHILDREN_RUNNING)
        )


def child_sessions(ctx: StepContext, session: Session, workflow_type: str) -> list[Session]:
    """Children of one workflow type; fails unless there is at least one."""
    children = [c for c in ctx.children(session) if c.workflow_type == workflow_type]
    if not children:
        raise StepError("No child sessions found")
    return children


def result_stdout(result: Result) -> str:
    value = result.data.get("stdout") or result.data.get("output") or ""
    return value if isinstance(value, str) else str(value)
