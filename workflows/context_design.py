"""
Context design workflow: specify a context (a group of components) before
its components are designed.

    Initialize → GenerateContextSpec → ValidateSpec → Finalize
    ValidateSpec:error → ReviseSpec → ValidateSpec

Session state keys:
  spec_file           written by GenerateContextSpec
  validation_errors   written by ValidateSpec on error, read by ReviseSpec
"""

from __future__ import annotations

from sessions.orchestrator import Orchestrator, loop, pipeline
from sessions.steps import Step, StepOutcome
from workflows.common import Finalize, Initialize

WORKFLOW_TYPE = "context_design"
BRANCH_PREFIX = "design-context-session-for"


class InitializeContextDesign(Initialize):
    branch_prefix = BRANCH_PREFIX


class GenerateContextSpec(Step):
    step_id = "GenerateContextSpec"
    writes = ("spec_file",)

    def get_command(self, ctx, session, options):
        project = ctx.project(session)
        context = ctx.context_component(session)
        files = ctx.files(context)
        components = ctx.catalog.child_components(ctx.scope, context.component_id)
        listing = "\n".join(f"- {c.name} ({c.type})" for c in components) or "- (none yet)"
        prompt = (
            f"Write the specification for the {context.name} context of {project.name}.\n\n"
            f"Description: {context.description or 'n/a'}\n\n"
            f"Known components:\n{listing}\n\n"
            "Cover the context's purpose, its public API, the entities it owns, the "
            "components it is split into, and its dependencies on other contexts.\n\n"
            f"Write the specification to {files['spec_file']}\n"
        )
        return self.agent("context-designer", prompt, options, spec_file=files["spec_file"])

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        spec_file = ctx.files(ctx.context_component(session))["spec_file"]
        return StepOutcome(result=result, state={"spec_file": spec_file})


class ValidateSpec(Step):
    step_id = "ValidateSpec"
    writes = ("validation_errors",)

    def get_command(self, ctx, session, options):
        spec_file = ctx.files(ctx.context_component(session))["spec_file"]
        return self.shell(
            ctx.command_template("validate_spec", spec_file=spec_file),
            spec_file=spec_file,
        )

    def handle_result(self, ctx, session, result, options):
        if result.is_ok:
            return StepOutcome(result=result, state={"validation_errors": None})
        errors = result.error_message or "Specification validation failed"
        return StepOutcome(result=result, state={"validation_errors": errors, "error": errors})


class ReviseSpec(Step):
    step_id = "ReviseSpec"
    reads = ("validation_errors",)

    def get_command(self, ctx, session, options):
        errors = self.require_state(
            session, "validation_errors", "Validation errors not found in session state",
        )
        context = ctx.context_component(session)
        spec_file = ctx.files(context)["spec_file"]
        prompt = (
            f"The specification for the {context.name} context at {spec_file} "
            f"failed validation:\n\n{errors}\n\n"
            "Revise it so that it passes. Keep everything that was valid.\n"
        )
        return self.agent("context-designer", prompt, options, spec_file=spec_file)


class ContextDesignFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        return [ctx.files(ctx.context_component(session))["spec_file"]]


class ContextDesignOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Write and validate the specification of a context"
    steps = (
        InitializeContextDesign,
        GenerateContextSpec,
        ValidateSpec,
        ReviseSpec,
        ContextDesignFinalize,
    )
    transitions = {
        **pipeline(
            ["Initialize", "GenerateContextSpec", "ValidateSpec", "Finalize"],
            ValidateSpec="ReviseSpec",
        ),
        **loop("ReviseSpec", "ValidateSpec"),
    }
