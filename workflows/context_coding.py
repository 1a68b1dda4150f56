"""
Context coding workflow: implement every component of a context through
one component_coding child session each.

    Initialize → SpawnComponentCodingSessions → Finalize
    SpawnComponentCodingSessions:error → SpawnComponentCodingSessions

Re-entering the spawn step while children are still running reuses them.
Finalize commits the code and test files of every child.
"""

from __future__ import annotations

from sessions.orchestrator import Orchestrator, pipeline
from workflows.common import Finalize, Initialize, SpawnChildSessionsStep, child_sessions
from workflows.component_coding import WORKFLOW_TYPE as COMPONENT_CODING

WORKFLOW_TYPE = "context_coding"
BRANCH_PREFIX = "code-context-session-for"


class InitializeContextCoding(Initialize):
    branch_prefix = BRANCH_PREFIX


class SpawnComponentCodingSessions(SpawnChildSessionsStep):
    step_id = "SpawnComponentCodingSessions"
    child_workflow_type = COMPONENT_CODING


class ContextCodingFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        files: list[str] = []
        for child in child_sessions(ctx, session, COMPONENT_CODING):
            component = ctx.component(child)
            paths = ctx.files(component)
            files.extend([paths["code_file"], paths["test_file"]])
        return files


class ContextCodingOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Implement every component of a context through component_coding child sessions"
    steps = (InitializeContextCoding, SpawnComponentCodingSessions, ContextCodingFinalize)
    transitions = pipeline(["Initialize", "SpawnComponentCodingSessions", "Finalize"])
