"""
Session Orchestrator — Orchestrator Contract

One Orchestrator subclass per workflow type. Each declares its ordered step
classes and an explicit transition table:

    TRANSITIONS = {
        ("Initialize", ResultStatus.OK):    "Generate",
        ("Initialize", ResultStatus.ERROR): "Initialize",
        ("Verify",     ResultStatus.ERROR): "Fix",
        ("Fix",        ResultStatus.OK):    "Verify",
        ("Finalize",   ResultStatus.OK):    COMPLETE,
        ...
    }

The next step is a pure function of the last completed interaction's
(step_id, result.status) pair. Retry loops are cycles in the table; the
optional ``max_attempts`` guard bounds how many times any single step may be
issued within one session.
"""

from __future__ import annotations

from typing import Any, ClassVar

from sessions.errors import (
    InvalidInteraction,
    InvalidState,
    RetryLimitExceeded,
    SessionComplete,
)
from sessions.steps import Step
from sessions.types import ResultStatus, Session

COMPLETE = "<complete>"

Transitions = dict[tuple[str, ResultStatus], str]


def pipeline(step_ids: list[str], **remediation: str) -> Transitions:
    """
    Build a linear table: each step's ok goes to the next and its error retries
    itself. The last step's ok completes the session and it has no error edge
    (a failing terminal step ends the session). Keyword arguments
    add or override error edges, e.g. ``RunTests="FixTestFailures"``; the
    remediation step's own edges come from loop().
    """
    table: Transitions = {}
    last = len(step_ids) - 1
    for i, step_id in enumerate(step_ids):
        table[(step_id, ResultStatus.OK)] = step_ids[i + 1] if i < last else COMPLETE
        if step_id in remediation:
            table[(step_id, ResultStatus.ERROR)] = remediation[step_id]
        elif i < last:
            table[(step_id, ResultStatus.ERROR)] = step_id
    return table


def loop(fixer: str, verifier: str) -> Transitions:
    """Edges for a remediation step: ok re-verifies, error retries the fix."""
    return {
        (fixer, ResultStatus.OK): verifier,
        (fixer, ResultStatus.ERROR): fixer,
    }


class Orchestrator:
    """Base class for per-workflow-type orchestration policy."""

    workflow_type: ClassVar[str] = ""
    description: ClassVar[str] = ""
    steps: ClassVar[tuple[type[Step], ...]] = ()
    transitions: ClassVar[Transitions] = {}
    entry_step: ClassVar[str | None] = None
    terminal_step: ClassVar[str | None] = None

    def __init__(self, max_attempts: int | None = None):
        self.max_attempts = max_attempts
        self._steps: dict[str, Step] = {cls.step_id: cls() for cls in self.steps}

    # ── Introspection ───────────────────────────────────────────

    def step_ids(self) -> list[str]:
        return [cls.step_id for cls in self.steps]

    @property
    def entry(self) -> str:
        return self.entry_step or self.steps[0].step_id

    @property
    def terminal(self) -> str:
        return self.terminal_step or self.steps[-1].step_id

    def get_step(self, step_id: str) -> Step:
        step = self._steps.get(step_id)
        if step is None:
            raise InvalidInteraction(
                f"Step {step_id} is not part of workflow {self.workflow_type}"
            )
        return step

    def describe(self) -> dict[str, Any]:
        return {
            "workflow_type": self.workflow_type,
            "description": self.description,
            "steps": self.step_ids(),
            "entry_step": self.entry,
            "terminal_step": self.terminal,
            "max_attempts": self.max_attempts,
            "transitions": [
                {"from": step_id, "status": status.value,
                 "to": None if target == COMPLETE else target}
                for (step_id, status), target in self.transitions.items()
            ],
            "state_keys": {
                cls.step_id: {"reads": list(cls.reads), "writes": list(cls.writes)}
                for cls in self.steps
            },
        }

    # ── Routing ─────────────────────────────────────────────────

    def get_next_interaction(self, session: Session | None) -> str:
        """
        Return the step id to run next.

        Raises SessionComplete, InvalidState, InvalidInteraction, or
        RetryLimitExceeded when the session cannot advance.
        """
        last = session.last_completed_interaction if session is not None else None
        if last is None:
            return self._guard(session, self.entry)

        if last.step_id not in self._steps:
            raise InvalidInteraction(
                f"Interaction {last.interaction_id} ran step {last.step_id}, "
                f"which is not part of workflow {self.workflow_type}"
            )

        status = last.result.status
        target = self.transitions.get((last.step_id, status))
        if target is None:
            raise InvalidState(
                f"Step {last.step_id} has no transition for status {status.value}"
            )
        if target == COMPLETE:
            raise SessionComplete(f"Session {session.session_id} is complete")
        return self._guard(session, target)

    def attempts(self, session: Session, step_id: str) -> int:
        """Issues of a step that count against max_attempts."""
        step = self.get_step(step_id)
        return sum(
            1 for i in session.interactions
            if i.step_id == step_id and step.uses_attempt(i.result)
        )

    def _guard(self, session: Session | None, step_id: str) -> str:
        if session is None or not self.max_attempts:
            return step_id
        if self.attempts(session, step_id) >= self.max_attempts:
            raise RetryLimitExceeded(step_id, self.max_attempts)
        return step_id

    def is_complete(self, session: Session) -> bool:
        last = session.last_interaction
        if last is None or last.result is None:
            return False
        return last.step_id == self.terminal and last.result.status == ResultStatus.OK

    # ── Static validation ───────────────────────────────────────

    def validate(self) -> list[str]:
        """Return problems with the declared table (empty = valid)."""
        errors = []
        if not self.workflow_type:
            errors.append(f"{type(self).__name__} has no workflow_type")
        if not self.steps:
            errors.append(f"{self.workflow_type}: no steps declared")
            return errors

        declared = set(self.step_ids())
        if len(declared) != len(self.steps):
            errors.append(f"{self.workflow_type}: duplicate step ids")
        for cls in self.steps:
            needed = (ResultStatus.OK,) if cls.step_id == self.terminal else (
                ResultStatus.OK, ResultStatus.ERROR)
            for status in needed:
                if (cls.step_id, status) not in self.transitions:
                    errors.append(
                        f"{self.workflow_type}: {cls.step_id} has no {status.value} transition"
                    )
        for (step_id, status), target in self.transitions.items():
            if step_id not in declared:
                errors.append(f"{self.workflow_type}: transition from undeclared step {step_id}")
            if target != COMPLETE and target not in declared:
                errors.append(f"{self.workflow_type}: transition to undeclared step {target}")
        if self.entry not in declared:
            errors.append(f"{self.workflow_type}: entry step {self.entry} is not declared")
        if self.transitions.get((self.terminal, ResultStatus.OK)) != COMPLETE:
            errors.append(f"{self.workflow_type}: terminal step {self.terminal} does not complete")
        return errors
