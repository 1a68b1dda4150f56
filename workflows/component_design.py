"""
Component design workflow.

    Initialize → ReadContextDesign → GenerateComponentDesign → ValidateDesign
      → Finalize
    ValidateDesign:error → ReviseDesign → ValidateDesign

Session state keys:
  context_design      written by ReadContextDesign, read by GenerateComponentDesign
  design_file         written by GenerateComponentDesign
  validation_errors   written by ValidateDesign on error, read by ReviseDesign
"""

from __future__ import annotations

from sessions.orchestrator import Orchestrator, loop, pipeline
from sessions.steps import Step, StepOutcome
from workflows.common import Finalize, Initialize, result_stdout

WORKFLOW_TYPE = "component_design"
BRANCH_PREFIX = "design-component-session-for"


class InitializeDesign(Initialize):
    branch_prefix = BRANCH_PREFIX


class ReadContextDesign(Step):
    step_id = "ReadContextDesign"
    writes = ("context_design",)

    def get_command(self, ctx, session, options):
        context = ctx.parent_context(ctx.component(session))
        design_file = ctx.files(context)["design_file"]
        return self.shell(f"cat {design_file}", design_file=design_file)

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        return StepOutcome(result=result, state={"context_design": result_stdout(result)})


class GenerateComponentDesign(Step):
    step_id = "GenerateComponentDesign"
    reads = ("context_design",)
    writes = ("design_file",)

    def get_command(self, ctx, session, options):
        project = ctx.project(session)
        component = ctx.component(session)
        design_file = ctx.files(component)["design_file"]
        context_design = session.state.get("context_design") or "(no context design available)"
        prompt = (
            f"Write the design document for {component.name} ({component.module_name}), "
            f"a {component.type} in {project.name}.\n\n"
            f"Description: {component.description or 'n/a'}\n\n"
            f"Context Design:\n{context_design}\n\n"
            "Describe the public functions, their inputs and outputs, the data the "
            "component owns, and its dependencies.\n\n"
            f"Write the design to {design_file}\n"
        )
        return self.agent("designer", prompt, options, design_file=design_file)

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        design_file = ctx.files(ctx.component(session))["design_file"]
        return StepOutcome(result=result, state={"design_file": design_file})


class ValidateDesign(Step):
    step_id = "ValidateDesign"
    writes = ("validation_errors",)

    def get_command(self, ctx, session, options):
        design_file = ctx.files(ctx.component(session))["design_file"]
        return self.shell(
            ctx.command_template("validate_design", design_file=design_file),
            design_file=design_file,
        )

    def handle_result(self, ctx, session, result, options):
        if result.is_ok:
            return StepOutcome(result=result, state={"validation_errors": None})
        errors = result.error_message or "Design validation failed"
        return StepOutcome(result=result, state={"validation_errors": errors, "error": errors})


class ReviseDesign(Step):
    step_id = "ReviseDesign"
    reads = ("validation_errors",)

    def get_command(self, ctx, session, options):
        errors = self.require_state(
            session, "validation_errors", "Validation errors not found in session state",
        )
        component = ctx.component(session)
        design_file = ctx.files(component)["design_file"]
        prompt = (
            f"The design document for {component.name} at {design_file} failed validation:\n\n"
            f"{errors}\n\n"
            "Revise the document so that it passes. Keep everything that was valid.\n"
        )
        return self.agent("designer", prompt, options, design_file=design_file)


class ComponentDesignFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        return [ctx.files(ctx.component(session))["design_file"]]


class ComponentDesignOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Write and validate the design document for one component"
    steps = (
        InitializeDesign,
        ReadContextDesign,
        GenerateComponentDesign,
        ValidateDesign,
        ReviseDesign,
        ComponentDesignFinalize,
    )
    transitions = {
        **pipeline(
            ["Initialize", "ReadContextDesign", "GenerateComponentDesign",
             "ValidateDesign", "Finalize"],
            ValidateDesign="ReviseDesign",
        ),
        **loop("ReviseDesign", "ValidateDesign"),
    }
