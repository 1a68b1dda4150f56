"""
Component testing workflow: write tests (and fixtures) ahead of the
implementation.

    Initialize → GenerateTestsAndFixtures → RunTests → Finalize
    RunTests:error → FixCompilationErrors → RunTests

Assertion failures are expected at this stage; RunTests only fails when the
tests do not compile or no test data comes back.

Session state keys:
  output_path   written by GenerateTestsAndFixtures; read by the parent
                context_testing Finalize
  test_files    written by GenerateTestsAndFixtures
  test_run      written by RunTests
  error         compile diagnostics from the last failing RunTests
"""

from __future__ import annotations

from sessions.orchestrator import Orchestrator, loop, pipeline
from sessions.steps import Step, StepOutcome
from sessions.types import ResultStatus
from workflows.common import Finalize, Initialize

WORKFLOW_TYPE = "component_testing"
BRANCH_PREFIX = "test-component-session-for"


class InitializeTesting(Initialize):
    branch_prefix = BRANCH_PREFIX


class GenerateTestsAndFixtures(Step):
    step_id = "GenerateTestsAndFixtures"
    writes = ("output_path", "test_files")

    def get_command(self, ctx, session, options):
        project = ctx.project(session)
        component = ctx.component(session)
        files = ctx.files(component)
        prompt = (
            f"Write tests for {component.name} ({component.module_name}) in {project.name} "
            "before it is implemented.\n\n"
            f"The design is in {files['design_file']}; test every behaviour it describes.\n"
            "Create any fixtures the tests need next to the existing ones.\n"
            "The tests must compile; they are expected to fail until the component exists.\n\n"
            f"Write the tests to {files['test_file']}\n"
        )
        return self.agent("test-writer", prompt, options, test_file=files["test_file"])

    def handle_result(self, ctx, session, result, options):
        if not result.is_ok:
            return super().handle_result(ctx, session, result, options)
        test_file = ctx.files(ctx.component(session))["test_file"]
        return StepOutcome(
            result=result,
            state={"output_path": test_file, "test_files": [test_file]},
        )


class RunTests(Step):
    """
    Compile check plus test run, reported by the driver as
    ``{"compile": {"errors": [...]}, "test_run": {...}}``.
    """
    step_id = "RunTests"
    writes = ("test_run", "error")

    def get_command(self, ctx, session, options):
        test_file = ctx.files(ctx.component(session))["test_file"]
        checks = {
            "compile": ctx.command_template("compile", test_file=test_file),
            "test": ctx.command_template("test", test_file=test_file),
        }
        return self.shell(
            f"{checks['compile']} && {checks['test']}",
            test_file=test_file,
            checks=checks,
        )

    def handle_result(self, ctx, session, result, options):
        compile_errors = (result.data.get("compile") or {}).get("errors") or []
        if compile_errors:
            message = "Compilation failed:\n" + "\n".join(str(e) for e in compile_errors)
            return StepOutcome(
                result=result.annotate(status=ResultStatus.ERROR, error_message=message),
                state={"error": message},
            )

        test_run = result.data.get("test_run")
        if not isinstance(test_run, dict) or "stats" not in test_run:
            message = "Failed to parse test results: test run data not found in result"
            if result.error_message:
                message += f"\n{result.error_message}"
            return StepOutcome(
                result=result.annotate(status=ResultStatus.ERROR, error_message=message),
                state={"error": message},
            )

        return StepOutcome(
            result=result.annotate(status=ResultStatus.OK, error_message=None),
            state={"test_run": test_run},
        )


class FixCompilationErrors(Step):
    step_id = "FixCompilationErrors"
    reads = ("error",)

    def get_command(self, ctx, session, options):
        errors = self.require_state(session, "error", "No compilation errors recorded in session state")
        test_file = ctx.files(ctx.component(session))["test_file"]
        prompt = (
            f"The tests in {test_file} do not compile or could not be run:\n\n"
            f"{errors}\n\n"
            "Fix the test file and its fixtures. Do not implement the component itself.\n"
        )
        return self.agent("test-writer", prompt, options, test_file=test_file)


class ComponentTestingFinalize(Finalize):
    branch_prefix = BRANCH_PREFIX

    def artifacts(self, ctx, session):
        return list(session.state.get("test_files") or [ctx.files(ctx.component(session))["test_file"]])


class ComponentTestingOrchestrator(Orchestrator):
    workflow_type = WORKFLOW_TYPE
    description = "Write compiling tests for one component ahead of its implementation"
    steps = (
        InitializeTesting,
        GenerateTestsAndFixtures,
        RunTests,
        FixCompilationErrors,
        ComponentTestingFinalize,
    )
    transitions = {
        **pipeline(
            ["Initialize", "GenerateTestsAndFixtures", "RunTests", "Finalize"],
            RunTests="FixCompilationErrors",
        ),
        **loop("FixCompilationErrors", "RunTests"),
    }
