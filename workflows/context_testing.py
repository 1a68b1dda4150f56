"""
Context testing workflow: write tests for every component of a context
through one component_testing child session each.

    Initialize → SpawnComponentTestingSessions → Finalize

Finalize commits the test file each child reported in its ``output_path``.
"""

from __future__ import annotations

from sessions.errors import StepError
from sessions.orchestrator import Orchestrator, pipeline
from workflows.common import Finalize, Initialize, SpawnChildSessionsStep, child_sessions
from workflows.component_testing import WORKFLOW_TYPE as COMPONENT_TESTING

WORKFLOW_TYPE = "context_testing"
BRANCH_PREFIX = "test-context-testing-session-for"


class InitializeContextTesting(Initialize):
    branch_prefix = BRANCH_PREFIX


class SpawnComponentTestingSessions(SpawnChildSessionsStep):
    step_id = "SpawnComponentTestingSessions"
    child_workflow_type = COMPONENT_TESTING


class ContextTestingFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        files = []
        for child in child_sessions(ctx, session, COMPONENT_TESTING):
            output_path = child.state.get("output_path")
            if not output_path:
                raise StepError(f"Child session {child.session_id} has no output_path")
            files.append(output_path)
        return files


class ContextTestingOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Write tests for every component of a context through component_testing child sessions"
    steps = (InitializeContextTesting, SpawnComponentTestingSessions, ContextTestingFinalize)
    transitions = pipeline(["Initialize", "SpawnComponentTestingSessions", "Finalize"])
