"""
Context review workflow: one agent pass that reviews the component designs
of a context against the context's own design and writes a review file.

    ExecuteReview → Finalize
"""

from __future__ import annotations

from sessions.errors import StepError
from sessions.orchestrator import Orchestrator, pipeline
from sessions.steps import Step, StepOutcome
from workflows.common import Finalize

WORKFLOW_TYPE = "context_review"
BRANCH_PREFIX = "design-review-session-for"


class ExecuteReview(Step):
    step_id = "ExecuteReview"
    writes = ("review_file",)

    def get_command(self, ctx, session, options):
        project = ctx.project(session)
        context = ctx.context_component(session)
        files = ctx.files(context)
        review_file = files.get("review_file")
        if not review_file:
            raise StepError(f"{context.name} is not a context component")
        designs = [
            ctx.files(c)["design_file"]
            for c in ctx.catalog.child_components(ctx.scope, context.component_id)
        ]
        listing = "\n".join(f"- {path}" for path in designs) or "- (no component designs)"
        prompt = (
            f"Review the component designs of the {context.name} context in {project.name}.\n\n"
            f"Context design: {files['design_file']}\n"
            f"Component designs:\n{listing}\n\n"
            "Check that the components together cover the context, that their "
            "interfaces agree with each other, and that no responsibility is "
            "assigned twice. Fix small inconsistencies directly in the design files.\n\n"
            f"Write the review to {review_file}\n"
        )
        return self.agent("design-reviewer", prompt, options, review_file=review_file)

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        return StepOutcome(
            result=result,
            state={"review_file": ctx.files(ctx.context_component(session)).get("review_file")},
        )


class ContextReviewFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        review_file = session.state.get("review_file")
        return [review_file] if review_file else []


class ContextReviewOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Review the component designs of a context"
    steps = (ExecuteReview, ContextReviewFinalize)
    transitions = pipeline(["ExecuteReview", "Finalize"])
