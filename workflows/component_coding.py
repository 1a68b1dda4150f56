"""
Component coding workflow.

    Initialize → ReadComponentDesign → GenerateTests → GenerateImplementation
      → RunTests → Finalize
    RunTests:error → FixTestFailures → RunTests

Session state keys:
  component_design   written by ReadComponentDesign; read by GenerateTests,
                     GenerateImplementation, FixTestFailures
  test_files         written by GenerateTests
  code_file          written by GenerateImplementation
  test_run           written by RunTests (the driver's parsed test data)
  error              failure summary from the last failing step
"""

from __future__ import annotations

from sessions.orchestrator import Orchestrator, loop, pipeline
from sessions.steps import Step, StepOutcome
from sessions.types import ResultStatus
from workflows.common import (
    Finalize,
    Initialize,
    format_test_failures,
    result_stdout,
)

WORKFLOW_TYPE = "component_coding"
BRANCH_PREFIX = "code-component-session-for"


class InitializeCoding(Initialize):
    branch_prefix = BRANCH_PREFIX


class ReadComponentDesign(Step):
    step_id = "ReadComponentDesign"
    writes = ("component_design",)

    def get_command(self, ctx, session, options):
        component = ctx.component(session)
        design_file = ctx.files(component)["design_file"]
        return self.shell(f"cat {design_file}", design_file=design_file)

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        design = result_stdout(result)
        if not design.strip():
            message = "Component design is empty"
            return StepOutcome(
                result=result.annotate(status=ResultStatus.ERROR, error_message=message),
                state={"error": message},
            )
        return StepOutcome(result=result, state={"component_design": design})


class GenerateTests(Step):
    step_id = "GenerateTests"
    reads = ("component_design",)
    writes = ("test_files",)

    def get_command(self, ctx, session, options):
        design = self.require_state(
            session, "component_design", "Component design not found in session state",
        )
        project = ctx.project(session)
        component = ctx.component(session)
        test_file = ctx.files(component)["test_file"]
        prompt = (
            "Generate comprehensive tests for a component, test first.\n\n"
            f"Project: {project.name}\n"
            f"Component Name: {component.name}\n"
            f"Type: {component.type}\n\n"
            f"Component Design:\n{design}\n\n"
            "Instructions:\n"
            "1. Look at the existing fixtures and reuse what fits\n"
            "2. Add any fixtures the design calls for\n"
            "3. Cover every public function in the design\n"
            "4. Keep each test short and obvious\n\n"
            f"Write the test file to {test_file}\n"
        )
        return self.agent("test-generator", prompt, options, test_file=test_file)

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        test_file = ctx.files(ctx.component(session))["test_file"]
        return StepOutcome(result=result, state={"test_files": [test_file]})


class GenerateImplementation(Step):
    step_id = "GenerateImplementation"
    reads = ("component_design", "test_files")
    writes = ("code_file",)

    def get_command(self, ctx, session, options):
        design = self.require_state(
            session, "component_design", "Component design not found in session state",
        )
        component = ctx.component(session)
        files = ctx.files(component)
        test_files = session.state.get("test_files") or [files["test_file"]]
        prompt = (
            f"Implement the component {component.name} ({component.module_name}).\n\n"
            f"Component Design:\n{design}\n\n"
            f"The tests in {', '.join(test_files)} define the expected behaviour; "
            "do not change them.\n\n"
            f"Write the implementation to {files['code_file']}\n"
        )
        return self.agent("coder", prompt, options, code_file=files["code_file"])

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        code_file = ctx.files(ctx.component(session))["code_file"]
        return StepOutcome(result=result, state={"code_file": code_file})


class RunTests(Step):
    """
    Runs the component's tests. The driver reports parsed test data in
    ``result.data`` (``stats.failures``, ``failures[]``); any failure turns
    the result into an error carrying the formatted failure list.
    """
    step_id = "RunTests"
    writes = ("test_run", "error")

    def get_command(self, ctx, session, options):
        test_file = ctx.files(ctx.component(session))["test_file"]
        command_line = ctx.command_template("test", test_file=test_file)
        seed = options.get("seed")
        if seed is not None:
            command_line += f" --randomly-seed={seed}"
        return self.shell(command_line, test_file=test_file, seed=seed)

    def handle_result(self, ctx, session, result, options):
        test_run = result.data
        stats = test_run.get("stats") if test_run else None
        if not isinstance(stats, dict):
            message = "Failed to parse test results: test run data not found in result"
            if result.error_message:
                message += f"\n{result.error_message}"
            return StepOutcome(
                result=result.annotate(status=ResultStatus.ERROR, error_message=message),
                state={"error": message},
            )

        failures = stats.get("failures", 0) or 0
        if failures > 0:
            message = format_test_failures(test_run)
            return StepOutcome(
                result=result.annotate(status=ResultStatus.ERROR, error_message=message),
                state={"test_run": test_run, "error": message},
            )
        return StepOutcome(
            result=result.annotate(status=ResultStatus.OK, error_message=None),
            state={"test_run": test_run},
        )


class FixTestFailures(Step):
    step_id = "FixTestFailures"
    reads = ("component_design", "error")

    def get_command(self, ctx, session, options):
        failures = self.require_state(session, "error", "No test failures recorded in session state")
        component = ctx.component(session)
        files = ctx.files(component)
        design = session.state.get("component_design", "")
        prompt = (
            f"The tests for {component.name} are failing.\n\n"
            f"{failures}\n\n"
            f"Fix the implementation in {files['code_file']} so that the tests in "
            f"{files['test_file']} pass. Only change a test if it contradicts the design.\n\n"
            f"Component Design:\n{design}\n"
        )
        return self.agent("coder", prompt, options, code_file=files["code_file"])


class ComponentCodingFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        files = ctx.files(ctx.component(session))
        return [files["code_file"], files["test_file"]]


class ComponentCodingOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Write tests and an implementation for one component until the tests pass"
    steps = (
        InitializeCoding,
        ReadComponentDesign,
        GenerateTests,
        GenerateImplementation,
        RunTests,
        FixTestFailures,
        ComponentCodingFinalize,
    )
    transitions = {
        **pipeline(
            ["Initialize", "ReadComponentDesign", "GenerateTests",
             "GenerateImplementation", "RunTests", "Finalize"],
            RunTests="FixTestFailures",
        ),
        **loop("FixTestFailures", "RunTests"),
    }
