"""
Session Orchestrator — Workflow Family Tests

Steps are exercised directly against a StepContext built on the test
catalog, without a store. Full driving through the façade lives in
test_runtime.py and test_composition.py.
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _project_root)

from tests.support import CONTEXT_ID, FAILING_RUN, PASSING_RUN, SCOPE, build_catalog, subject
from sessions.catalog import ProjectLayout, module_path
from sessions.errors import StepError
from sessions.runtime import DEFAULT_COMMANDS
from sessions.steps import StepContext
from sessions.types import (
    CommandMode,
    ExecutionMode,
    Result,
    ResultStatus,
    Session,
    SessionStatus,
)
from workflows import ORCHESTRATORS, build_default_registry
from workflows.common import (
    branch_name,
    child_status_error,
    format_test_failures,
    git_commit_command,
    sanitize,
)
from workflows import component_coding, component_design, component_testing
from workflows import context_components_design, context_design, context_review, context_testing


def make_ctx(children=None, catalog=None) -> StepContext:
    kids = list(children or [])
    return StepContext(
        scope=SCOPE,
        catalog=catalog or build_catalog(),
        layout=ProjectLayout(),
        children=lambda s: kids,
        commands=dict(DEFAULT_COMMANDS),
        clock=lambda: 1000.0,
    )


def make_session(workflow_type, component_id="cmp_user", state=None, parent=None) -> Session:
    return Session.create(workflow_type, SCOPE, subject=subject(component_id),
                          state=state, parent=parent)


# ═══════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════

class TestHelpers(unittest.TestCase):

    def test_sanitize(self):
        self.assertEqual(sanitize("User Token"), "user-token")
        self.assertEqual(sanitize("--Weird!!Name--"), "weird-name")
        self.assertEqual(sanitize("snake_case"), "snake_case")

    def test_branch_name(self):
        self.assertEqual(branch_name("code-component-session-for", "UserRepository"),
                         "code-component-session-for-userrepository")

    def test_module_path(self):
        self.assertEqual(module_path("Shop.Accounts.UserToken"), "shop/accounts/user_token")
        self.assertEqual(module_path("shop.accounts.user"), "shop/accounts/user")

    def test_git_commit_command_quotes(self):
        line = git_commit_command(["a b.py", "c.py"], "it's done", "br")
        self.assertIn("'a b.py' c.py", line)
        self.assertIn("git push -u origin br", line)
        self.assertTrue(line.startswith("git add "))

    def test_format_test_failures(self):
        text = format_test_failures(FAILING_RUN)
        self.assertIn("Test execution status: failed", text)
        self.assertIn("1 test(s) failed", text)
        self.assertIn("Error: expected invalid email to be rejected", text)

    def test_format_failure_without_details(self):
        text = format_test_failures({"stats": {"failures": 1}, "failures": [{"full_title": "t"}]})
        self.assertIn("No error details available", text)


class TestRegistryWiring(unittest.TestCase):

    def test_every_family_registers(self):
        registry = build_default_registry()
        self.assertEqual(len(registry.workflow_types), len(ORCHESTRATORS))
        for cls in ORCHESTRATORS:
            self.assertEqual(cls().validate(), [], cls.workflow_type)

    def test_per_workflow_attempt_override(self):
        registry = build_default_registry(
            max_attempts=10, overrides={"component_coding": {"max_attempts": 3}},
        )
        self.assertEqual(registry.get("component_coding").max_attempts, 3)
        self.assertEqual(registry.get("context_design").max_attempts, 10)

    def test_read_write_keys_documented(self):
        described = build_default_registry().get("component_coding").describe()
        self.assertEqual(described["state_keys"]["GenerateTests"]["reads"], ["component_design"])


# ═══════════════════════════════════════════════════════════════════
# Component coding
# ═══════════════════════════════════════════════════════════════════

class TestComponentCoding(unittest.TestCase):

    def setUp(self):
        self.ctx = make_ctx()
        self.session = make_session("component_coding", state={"component_design": "# design"})

    def test_read_design_command(self):
        cmd = component_coding.ReadComponentDesign().get_command(self.ctx, self.session, {})
        self.assertEqual(cmd.payload, "cat docs/design/shop/accounts/user.md")

    def test_empty_design_is_error(self):
        outcome = component_coding.ReadComponentDesign().handle_result(
            self.ctx, self.session, Result.ok({"stdout": "  \n"}), {},
        )
        self.assertEqual(outcome.result.status, ResultStatus.ERROR)
        self.assertEqual(outcome.state["error"], "Component design is empty")

    def test_generate_tests_requires_design(self):
        bare = make_session("component_coding")
        with self.assertRaises(StepError):
            component_coding.GenerateTests().get_command(self.ctx, bare, {})

    def test_generate_tests_prompt(self):
        cmd = component_coding.GenerateTests().get_command(self.ctx, self.session, {"auto": True})
        self.assertEqual(cmd.mode, CommandMode.AGENT)
        self.assertEqual(cmd.payload["agent"], "test-generator")
        self.assertTrue(cmd.payload["auto_approve"])
        self.assertFalse(cmd.payload["agentic"])
        self.assertIn("Component Name: User", cmd.payload["prompt"])
        self.assertIn("# design", cmd.payload["prompt"])

    def test_run_tests_seed(self):
        cmd = component_coding.RunTests().get_command(self.ctx, self.session, {"seed": 42})
        self.assertEqual(cmd.payload,
                         "pytest test/shop/accounts/user_test.py -q --randomly-seed=42")

    def test_run_tests_pass(self):
        outcome = component_coding.RunTests().handle_result(
            self.ctx, self.session, Result.ok(PASSING_RUN), {},
        )
        self.assertTrue(outcome.result.is_ok)
        self.assertEqual(outcome.state["test_run"], PASSING_RUN)

    def test_run_tests_failures_become_error(self):
        outcome = component_coding.RunTests().handle_result(
            self.ctx, self.session, Result.ok(FAILING_RUN), {},
        )
        self.assertEqual(outcome.result.status, ResultStatus.ERROR)
        self.assertIn("User validates email", outcome.result.error_message)

    def test_run_tests_unparseable(self):
        outcome = component_coding.RunTests().handle_result(
            self.ctx, self.session, Result.error("runner crashed"), {},
        )
        self.assertEqual(outcome.result.status, ResultStatus.ERROR)
        self.assertTrue(outcome.state["error"].startswith("Failed to parse test results"))
        self.assertIn("runner crashed", outcome.state["error"])

    def test_fix_requires_error(self):
        with self.assertRaises(StepError):
            component_coding.FixTestFailures().get_command(self.ctx, self.session, {})

    def test_initialize_records_branch(self):
        outcome = component_coding.InitializeCoding().handle_result(
            self.ctx, self.session, Result.ok(), {},
        )
        self.assertEqual(outcome.state, {
            "branch_name": "code-component-session-for-user", "initialized_at": 1000.0,
        })

    def test_finalize_commits_code_and_tests(self):
        step = component_coding.ComponentCodingFinalize()
        cmd = step.get_command(self.ctx, self.session, {})
        self.assertEqual(cmd.metadata["committed_files"],
                         ["lib/shop/accounts/user.py", "test/shop/accounts/user_test.py"])
        outcome = step.handle_result(self.ctx, self.session, Result.ok(), {})
        self.assertEqual(outcome.status, SessionStatus.COMPLETE)
        failed = step.handle_result(self.ctx, self.session, Result.error("denied"), {})
        self.assertEqual(failed.status, SessionStatus.FAILED)


# ═══════════════════════════════════════════════════════════════════
# Component design / testing
# ═══════════════════════════════════════════════════════════════════

class TestComponentDesign(unittest.TestCase):

    def setUp(self):
        self.ctx = make_ctx()

    def test_reads_parent_context_design(self):
        session = make_session("component_design")
        cmd = component_design.ReadContextDesign().get_command(self.ctx, session, {})
        self.assertEqual(cmd.payload, "cat docs/design/shop/accounts.md")

    def test_context_without_parent(self):
        session = make_session("component_design", component_id=CONTEXT_ID)
        with self.assertRaises(StepError) as e:
            component_design.ReadContextDesign().get_command(self.ctx, session, {})
        self.assertIn("Accounts", str(e.exception))

    def test_validation_errors_feed_revision(self):
        session = make_session("component_design")
        outcome = component_design.ValidateDesign().handle_result(
            self.ctx, session, Result.error("missing public API section"), {},
        )
        self.assertEqual(outcome.state["validation_errors"], "missing public API section")
        session.merge_state(outcome.state)
        cmd = component_design.ReviseDesign().get_command(self.ctx, session, {})
        self.assertIn("missing public API section", cmd.payload["prompt"])

    def test_revise_requires_errors(self):
        with self.assertRaises(StepError):
            component_design.ReviseDesign().get_command(
                self.ctx, make_session("component_design"), {},
            )


class TestComponentTesting(unittest.TestCase):

    def setUp(self):
        self.ctx = make_ctx()
        self.session = make_session("component_testing")
        self.step = component_testing.RunTests()

    def test_command_chains_compile_and_test(self):
        cmd = self.step.get_command(self.ctx, self.session, {})
        self.assertIn(" && ", cmd.payload)
        self.assertEqual(set(cmd.metadata["checks"]), {"compile", "test"})

    def test_compile_errors(self):
        outcome = self.step.handle_result(
            self.ctx, self.session,
            Result.ok({"compile": {"errors": ["line 3: undefined fixture"]}}), {},
        )
        self.assertEqual(outcome.result.status, ResultStatus.ERROR)
        self.assertEqual(outcome.state["error"], "Compilation failed:\nline 3: undefined fixture")

    def test_assertion_failures_are_fine(self):
        outcome = self.step.handle_result(
            self.ctx, self.session, Result.error("exit 1", {"test_run": FAILING_RUN}), {},
        )
        self.assertTrue(outcome.result.is_ok)

    def test_missing_test_data(self):
        outcome = self.step.handle_result(self.ctx, self.session, Result.ok({}), {})
        self.assertIn("test run data not found", outcome.state["error"])

    def test_generate_sets_output_path(self):
        outcome = component_testing.GenerateTestsAndFixtures().handle_result(
            self.ctx, self.session, Result.ok(), {},
        )
        self.assertEqual(outcome.state["output_path"], "test/shop/accounts/user_test.py")


# ═══════════════════════════════════════════════════════════════════
# Context families
# ═══════════════════════════════════════════════════════════════════

class TestContextDesignAndReview(unittest.TestCase):

    def setUp(self):
        self.ctx = make_ctx()
        self.session = make_session("context_design", component_id=CONTEXT_ID)

    def test_spec_prompt_lists_components(self):
        cmd = context_design.GenerateContextSpec().get_command(self.ctx, self.session, {})
        prompt = cmd.payload["prompt"]
        self.assertLess(prompt.index("- User (schema)"), prompt.index("- UserRepository"))
        self.assertEqual(cmd.metadata["spec_file"], "docs/spec/shop/accounts.spec.md")

    def test_validate_spec_ok_clears_errors(self):
        outcome = context_design.ValidateSpec().handle_result(self.ctx, self.session, Result.ok(), {})
        self.assertIsNone(outcome.state["validation_errors"])

    def test_review_lists_component_designs(self):
        session = make_session("context_review", component_id=CONTEXT_ID)
        cmd = context_review.ExecuteReview().get_command(self.ctx, session, {"agentic": True})
        self.assertIn("docs/design/shop/accounts/user_repository.md", cmd.payload["prompt"])
        self.assertEqual(cmd.metadata["review_file"], "docs/design/shop/accounts/design_review.md")

    def test_review_of_non_context(self):
        session = make_session("context_review", component_id="cmp_user")
        with self.assertRaises(StepError):
            context_review.ExecuteReview().get_command(self.ctx, session, {})

    def test_review_finalize_needs_review_file(self):
        session = make_session("context_review", component_id=CONTEXT_ID)
        with self.assertRaises(StepError):
            context_review.ContextReviewFinalize().get_command(self.ctx, session, {})


class TestSpawning(unittest.TestCase):

    def setUp(self):
        self.parent = make_session("context_testing", component_id=CONTEXT_ID)

    def test_first_run_requests_children_in_priority_order(self):
        cmd = context_testing.SpawnComponentTestingSessions().get_command(
            make_ctx(), self.parent, {},
        )
        self.assertEqual(cmd.mode, CommandMode.SPAWN)
        self.assertEqual(
            [r.subject["component_id"] for r in cmd.spawn],
            ["cmp_user", "cmp_user_repository", "cmp_password_hasher"],
        )
        self.assertTrue(all(r.workflow_type == "component_testing" for r in cmd.spawn))

    def test_rerun_reuses_existing_children(self):
        child = make_session("component_testing", parent=self.parent)
        cmd = context_testing.SpawnComponentTestingSessions().get_command(
            make_ctx([child]), self.parent, {},
        )
        self.assertEqual(cmd.spawn, ())
        self.assertTrue(cmd.metadata["reused"])
        self.assertEqual(cmd.metadata["child_session_ids"], [child.session_id])

    def test_running_children_reported_before_failed(self):
        ctx = make_ctx()
        running = make_session("component_testing", "cmp_user", parent=self.parent)
        failed = make_session("component_testing", "cmp_password_hasher", parent=self.parent,
                              state={"error": "tests do not compile"})
        failed.transition(SessionStatus.FAILED)
        self.assertEqual(child_status_error(ctx, [running, failed]),
                         "Child sessions still running: User")
        running.transition(SessionStatus.COMPLETE)
        self.assertEqual(child_status_error(ctx, [running, failed]),
                         "Child sessions failed: PasswordHasher (reason: tests do not compile)")

    def test_spawn_result_judged_by_children(self):
        child = make_session("component_testing", parent=self.parent)
        step = context_testing.SpawnComponentTestingSessions()
        outcome = step.handle_result(make_ctx([child]), self.parent, Result.ok(), {})
        self.assertEqual(outcome.result.status, ResultStatus.ERROR)

        child.transition(SessionStatus.COMPLETE)
        outcome = step.handle_result(make_ctx([child]), self.parent, Result.error("x"), {})
        self.assertTrue(outcome.result.is_ok)

    def test_no_children_spawned_yet(self):
        step = context_testing.SpawnComponentTestingSessions()
        outcome = step.handle_result(make_ctx(), self.parent, Result.ok(), {})
        self.assertEqual(outcome.state["error"], "No child sessions found")

    def test_context_without_components(self):
        session = make_session("context_testing", component_id="cmp_user")
        with self.assertRaises(StepError):
            context_testing.SpawnComponentTestingSessions().get_command(make_ctx(), session, {})

    def test_review_child_always_agentic(self):
        cmd = context_components_design.SpawnReviewSession().get_command(
            make_ctx(), make_session("context_components_design", component_id=CONTEXT_ID), {},
        )
        [request] = cmd.spawn
        self.assertEqual(request.workflow_type, "context_review")
        self.assertEqual(request.execution_mode, ExecutionMode.AGENTIC)
        self.assertEqual(request.subject["component_id"], CONTEXT_ID)

    def test_testing_finalize_requires_output_path(self):
        child = make_session("component_testing", parent=self.parent)
        with self.assertRaises(StepError):
            context_testing.ContextTestingFinalize().get_command(make_ctx([child]), self.parent, {})


if __name__ == "__main__":
    unittest.main()
