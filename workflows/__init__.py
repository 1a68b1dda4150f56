"""
Workflow families.

Each module defines the steps and the Orchestrator subclass of one workflow
type. build_default_registry() registers all of them.
"""

from __future__ import annotations

from typing import Any

from sessions.registry import WorkflowRegistry
from workflows.component_coding import ComponentCodingOrchestrator
from workflows.component_design import ComponentDesignOrchestrator
from workflows.component_testing import ComponentTestingOrchestrator
from workflows.context_coding import ContextCodingOrchestrator
from workflows.context_components_design import ContextComponentsDesignOrchestrator
from workflows.context_design import ContextDesignOrchestrator
from workflows.context_review import ContextReviewOrchestrator
from workflows.context_testing import ContextTestingOrchestrator

ORCHESTRATORS = (
    ComponentDesignOrchestrator,
    ComponentCodingOrchestrator,
    ComponentTestingOrchestrator,
    ContextDesignOrchestrator,
    ContextCodingOrchestrator,
    ContextTestingOrchestrator,
    ContextReviewOrchestrator,
    ContextComponentsDesignOrchestrator,
)


def build_default_registry(
    max_attempts: int | None = None,
    overrides: dict[str, dict[str, Any]] | None = None,
) -> WorkflowRegistry:
    """
    Register every workflow family. ``overrides`` maps a workflow type to
    per-type settings; only ``max_attempts`` is read today.
    """
    overrides = overrides or {}
    registry = WorkflowRegistry()
    for cls in ORCHESTRATORS:
        limit = (overrides.get(cls.workflow_type) or {}).get("max_attempts", max_attempts)
        registry.register(cls(max_attempts=limit))
    return registry


__all__ = ["ORCHESTRATORS", "build_default_registry"]
