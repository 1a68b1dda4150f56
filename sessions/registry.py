"""
Session Orchestrator — Workflow Registry

Closed mapping from workflow type tag to orchestrator instance. Tables are
validated when registered, so a broken workflow fails at startup rather than
in the middle of a session.
"""

from __future__ import annotations

from typing import Any

from sessions.errors import UnknownWorkflow, WorkflowDefinitionError
from sessions.orchestrator import Orchestrator


class WorkflowRegistry:

    def __init__(self):
        self._orchestrators: dict[str, Orchestrator] = {}

    def register(self, orchestrator: Orchestrator) -> Orchestrator:
        errors = orchestrator.validate()
        if errors:
            raise WorkflowDefinitionError("; ".join(errors))
        if orchestrator.workflow_type in self._orchestrators:
            raise WorkflowDefinitionError(
                f"Workflow {orchestrator.workflow_type} is already registered"
            )
        self._orchestrators[orchestrator.workflow_type] = orchestrator
        return orchestrator

    def get(self, workflow_type: str) -> Orchestrator:
        orchestrator = self._orchestrators.get(workflow_type)
        if orchestrator is None:
            raise UnknownWorkflow(f"Unknown workflow type: {workflow_type}")
        return orchestrator

    def __contains__(self, workflow_type: str) -> bool:
        return workflow_type in self._orchestrators

    @property
    def workflow_types(self) -> list[str]:
        return sorted(self._orchestrators)

    def describe(self) -> list[dict[str, Any]]:
        return [self._orchestrators[t].describe() for t in self.workflow_types]
