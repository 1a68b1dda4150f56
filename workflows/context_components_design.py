"""
Context components design workflow: design every component of a context,
then have the designs reviewed together.

    Initialize → SpawnComponentDesignSessions → SpawnReviewSession → Finalize

SpawnComponentDesignSessions starts one component_design child per child
component. Once they are all complete, SpawnReviewSession starts a single
context_review child for the context itself, always in agentic mode.
Finalize commits every component design plus the review file.
"""

from __future__ import annotations

from sessions.orchestrator import Orchestrator, pipeline
from sessions.types import ExecutionMode
from workflows.common import Finalize, Initialize, SpawnChildSessionsStep, child_sessions
from workflows.component_design import WORKFLOW_TYPE as COMPONENT_DESIGN
from workflows.context_review import WORKFLOW_TYPE as CONTEXT_REVIEW

WORKFLOW_TYPE = "context_components_design"
BRANCH_PREFIX = "design-context-components-session-for"


class InitializeContextComponentsDesign(Initialize):
    branch_prefix = BRANCH_PREFIX


class SpawnComponentDesignSessions(SpawnChildSessionsStep):
    step_id = "SpawnComponentDesignSessions"
    child_workflow_type = COMPONENT_DESIGN


class SpawnReviewSession(SpawnChildSessionsStep):
    step_id = "SpawnReviewSession"
    child_workflow_type = CONTEXT_REVIEW
    child_execution_mode = ExecutionMode.AGENTIC

    def child_components(self, ctx, session):
        return [ctx.context_component(session)]


class ContextComponentsDesignFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        files = [
            ctx.files(ctx.component(child))["design_file"]
            for child in child_sessions(ctx, session, COMPONENT_DESIGN)
        ]
        review_file = ctx.files(ctx.context_component(session)).get("review_file")
        if review_file:
            files.append(review_file)
        return files


class ContextComponentsDesignOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Design every component of a context, then review the designs together"
    steps = (
        InitializeContextComponentsDesign,
        SpawnComponentDesignSessions,
        SpawnReviewSession,
        ContextComponentsDesignFinalize,
    )
    transitions = pipeline(
        ["Initialize", "SpawnComponentDesignSessions", "SpawnReviewSession", "Finalize"],
    )
