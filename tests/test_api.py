"""
Session Orchestrator — API Tests

Request model validation (no FastAPI needed), then the HTTP surface through
FastAPI's TestClient around a manager on a temporary database.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fastapi.testclient import TestClient

from api.models import (
    AbortRequest,
    EventSubmission,
    ExecutionModeUpdate,
    ResultSubmission,
    RuntimeStatusUpdate,
    StartSessionRequest,
)
from api.server import create_app, http_status_for
from sessions.errors import (
    ConcurrentUpdateError,
    InteractionAlreadyCompleted,
    InvalidState,
    RetryLimitExceeded,
    SessionComplete,
    SessionNotFound,
    StepError,
    UnknownWorkflow,
)
from tests.support import CONTEXT_ID, ManagerFixture, subject

HEADERS = {"X-Account-Id": "acme", "X-User-Id": "u1", "X-Project-Id": "prj_shop"}
OTHER_HEADERS = {"X-Account-Id": "globex"}


# ═══════════════════════════════════════════════════════════════════
# Model Validation Tests
# ═══════════════════════════════════════════════════════════════════

class TestStartSessionRequest(unittest.TestCase):

    def test_valid(self):
        r = StartSessionRequest.from_body({
            "workflow_type": "component_coding", "subject": {"component_id": "c1"},
        })
        self.assertEqual(r.validate(), [])
        self.assertEqual(r.execution_mode, "manual")

    def test_missing_workflow_and_component(self):
        errors = StartSessionRequest.from_body({}).validate()
        self.assertTrue(any("workflow_type" in e for e in errors))
        self.assertTrue(any("component_id" in e for e in errors))

    def test_bad_mode(self):
        r = StartSessionRequest(workflow_type="w", subject={"component_id": "c"},
                                execution_mode="yolo")
        self.assertTrue(any("execution_mode" in e for e in r.validate()))


class TestOtherModels(unittest.TestCase):

    def test_result_submission(self):
        self.assertEqual(ResultSubmission.from_body({"status": "ok"}).validate(), [])
        errors = ResultSubmission.from_body({"status": "maybe", "data": [1]}).validate()
        self.assertEqual(len(errors), 2)

    def test_result_dict(self):
        r = ResultSubmission.from_body({"status": "error", "error_message": "boom"})
        self.assertEqual(r.to_result_dict(), {"status": "error", "data": {}, "error_message": "boom"})

    def test_event_submission(self):
        self.assertEqual(EventSubmission(event_type="tool_called").validate(), [])
        self.assertTrue(EventSubmission(event_type="telepathy").validate())

    def test_mode_and_abort(self):
        self.assertEqual(ExecutionModeUpdate("agentic").validate(), [])
        self.assertTrue(ExecutionModeUpdate("").validate())
        self.assertTrue(AbortRequest(reason="").validate())

    def test_runtime_status_update(self):
        u = RuntimeStatusUpdate(agent_state="thinking")
        self.assertEqual(u.validate(), [])
        self.assertEqual(u.to_dict(), {"agent_state": "thinking"})
        self.assertTrue(RuntimeStatusUpdate(agent_state="dreaming").validate())
        self.assertTrue(RuntimeStatusUpdate(last_activity="soon").validate())

    def test_non_string_enum_values_rejected(self):
        self.assertTrue(ResultSubmission.from_body({"status": ["ok"]}).validate())
        self.assertTrue(ResultSubmission.from_body({"status": {"ok": 1}}).validate())
        self.assertTrue(ExecutionModeUpdate({"x": 1}).validate())
        self.assertTrue(EventSubmission(event_type=["tool_called"]).validate())
        self.assertTrue(RuntimeStatusUpdate(agent_state=["idle"]).validate())
        r = StartSessionRequest(workflow_type="w", subject={"component_id": "c"},
                                execution_mode=["manual"])
        self.assertTrue(any("execution_mode" in e for e in r.validate()))
        errors = EventSubmission(event_type="tool_called", interaction_id=7).validate()
        self.assertEqual(errors, ["interaction_id must be a string"])


class TestErrorMapping(unittest.TestCase):

    def test_status_codes(self):
        self.assertEqual(http_status_for(SessionNotFound("x")), 404)
        self.assertEqual(http_status_for(StepError("x")), 422)
        self.assertEqual(http_status_for(UnknownWorkflow("x")), 422)
        self.assertEqual(http_status_for(InteractionAlreadyCompleted("x")), 409)
        self.assertEqual(http_status_for(ConcurrentUpdateError("x")), 409)
        self.assertEqual(http_status_for(SessionComplete("x")), 409)
        self.assertEqual(http_status_for(InvalidState("x")), 409)
        self.assertEqual(http_status_for(RetryLimitExceeded("RunTests", 3)), 409)


# ═══════════════════════════════════════════════════════════════════
# HTTP surface
# ═══════════════════════════════════════════════════════════════════

class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.fx = ManagerFixture()
        self.client = TestClient(create_app(manager=self.fx.manager))

    def tearDown(self):
        self.fx.close()

    def start(self, workflow_type="component_coding", component_id="cmp_user", **extra):
        body = {"workflow_type": workflow_type, "subject": subject(component_id), **extra}
        resp = self.client.post("/v1/sessions", json=body, headers=HEADERS)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def next(self, session_id, **body):
        return self.client.post(f"/v1/sessions/{session_id}/next", json=body, headers=HEADERS)

    def submit(self, session_id, interaction_id, **body):
        return self.client.post(
            f"/v1/sessions/{session_id}/interactions/{interaction_id}/result",
            json=body, headers=HEADERS,
        )


class TestHealth(ApiTestCase):

    def test_health_and_ready(self):
        self.assertEqual(self.client.get("/health").json()["status"], "ok")
        self.assertEqual(self.client.get("/ready").status_code, 200)

    def test_workflows(self):
        body = self.client.get("/v1/workflows", headers=HEADERS).json()
        self.assertEqual(body["count"], 8)


class TestSessionsApi(ApiTestCase):

    def test_account_header_required(self):
        resp = self.client.get("/v1/sessions")
        self.assertEqual(resp.status_code, 400)

    def test_start_validation_errors(self):
        resp = self.client.post("/v1/sessions", json={"workflow_type": ""}, headers=HEADERS)
        self.assertEqual(resp.status_code, 422)
        self.assertTrue(resp.json()["errors"])

    def test_unknown_workflow(self):
        resp = self.client.post("/v1/sessions", headers=HEADERS, json={
            "workflow_type": "deploy", "subject": {"component_id": "cmp_user"},
        })
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "unknown_workflow")

    def test_command_result_cycle(self):
        session = self.start()
        sid = session["session_id"]

        interaction = self.next(sid).json()
        self.assertEqual(interaction["step_id"], "Initialize")
        self.assertEqual(self.next(sid).json()["interaction_id"], interaction["interaction_id"])

        resp = self.submit(sid, interaction["interaction_id"], status="ok", data={})
        self.assertEqual(resp.status_code, 200)
        self.assertIn("branch_name", resp.json()["state"])

        replay = self.submit(sid, interaction["interaction_id"], status="ok")
        self.assertEqual(replay.status_code, 409)
        self.assertEqual(replay.json()["error"], "interaction_completed")

    def test_bad_result_body(self):
        sid = self.start()["session_id"]
        iid = self.next(sid).json()["interaction_id"]
        self.assertEqual(self.submit(sid, iid, status="maybe").status_code, 422)
        self.assertEqual(self.submit(sid, iid, status=["ok"]).status_code, 422)
        self.assertEqual(self.next(sid).json()["interaction_id"], iid)

    def test_unknown_interaction(self):
        sid = self.start()["session_id"]
        self.next(sid)
        self.assertEqual(self.submit(sid, "int_nope", status="ok").status_code, 404)

    def test_step_error_is_422(self):
        sid = self.start(component_id="cmp_ghost")["session_id"]
        resp = self.next(sid)
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "step_error")

    def test_other_account_gets_404(self):
        sid = self.start()["session_id"]
        resp = self.client.get(f"/v1/sessions/{sid}", headers=OTHER_HEADERS)
        self.assertEqual(resp.status_code, 404)

    def test_list_and_children(self):
        parent = self.start("context_coding", component_id=CONTEXT_ID)
        sid = parent["session_id"]
        iid = self.next(sid).json()["interaction_id"]
        self.submit(sid, iid, status="ok")
        spawn = self.next(sid).json()
        self.assertEqual(spawn["command"]["mode"], "spawn")

        children = self.client.get(f"/v1/sessions/{sid}/children", headers=HEADERS).json()
        self.assertEqual(children["count"], 3)
        listed = self.client.get("/v1/sessions", params={"parent_session_id": sid},
                                 headers=HEADERS).json()
        self.assertEqual(listed["count"], 3)
        self.assertEqual(listed["sessions"][0]["status"], "active")

        bad = self.client.get("/v1/sessions", params={"status": "sleeping"}, headers=HEADERS)
        self.assertEqual(bad.status_code, 422)

    def test_abort_then_next_is_409(self):
        sid = self.start()["session_id"]
        resp = self.client.post(f"/v1/sessions/{sid}/abort", json={"reason": "stop"},
                                headers=HEADERS)
        self.assertEqual(resp.json()["status"], "failed")
        resp = self.next(sid)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "session_complete")

    def test_execution_mode(self):
        sid = self.start()["session_id"]
        resp = self.client.put(f"/v1/sessions/{sid}/execution-mode",
                               json={"execution_mode": "agentic"}, headers=HEADERS)
        self.assertEqual(resp.json()["execution_mode"], "agentic")
        bad = self.client.put(f"/v1/sessions/{sid}/execution-mode",
                              json={"execution_mode": "x"}, headers=HEADERS)
        self.assertEqual(bad.status_code, 422)

    def test_delete(self):
        sid = self.start()["session_id"]
        resp = self.client.delete(f"/v1/sessions/{sid}", headers=HEADERS)
        self.assertTrue(resp.json()["deleted"])
        self.assertEqual(self.client.get(f"/v1/sessions/{sid}", headers=HEADERS).status_code, 404)


class TestEventsAndStatusApi(ApiTestCase):

    def test_event_then_live_status(self):
        sid = self.start()["session_id"]
        iid = self.next(sid).json()["interaction_id"]

        resp = self.client.post(f"/v1/sessions/{sid}/events", headers=HEADERS,
                                json={"event_type": "command_started", "data": {}})
        self.assertEqual(resp.status_code, 201)
        events = self.client.get(f"/v1/sessions/{sid}/events", headers=HEADERS).json()
        self.assertEqual(events["count"], 1)

        status = self.client.get(f"/v1/interactions/{iid}/status", headers=HEADERS).json()
        self.assertEqual(status["agent_state"], "running")

        put = self.client.put(f"/v1/interactions/{iid}/status", headers=HEADERS,
                              json={"agent_state": "waiting"})
        self.assertEqual(put.json()["agent_state"], "waiting")

        cleared = self.client.delete(f"/v1/interactions/{iid}/status", headers=HEADERS).json()
        self.assertTrue(cleared["cleared"])
        self.assertEqual(
            self.client.get(f"/v1/interactions/{iid}/status", headers=HEADERS).status_code, 404,
        )

    def test_bad_event_type(self):
        sid = self.start()["session_id"]
        resp = self.client.post(f"/v1/sessions/{sid}/events", headers=HEADERS,
                                json={"event_type": "telepathy"})
        self.assertEqual(resp.status_code, 422)

    def test_event_for_other_sessions_interaction_is_404(self):
        sid = self.start()["session_id"]
        other = self.start(component_id="cmp_user_repository")["session_id"]
        foreign = self.next(other).json()["interaction_id"]

        resp = self.client.post(f"/v1/sessions/{sid}/events", headers=HEADERS,
                                json={"event_type": "tool_called", "interaction_id": foreign})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(
            self.client.get(f"/v1/interactions/{foreign}/status", headers=HEADERS).status_code,
            404,
        )

    def test_stats(self):
        self.start()
        stats = self.client.get("/v1/stats", headers=HEADERS).json()
        self.assertEqual(stats["sessions"], {"active": 1})

    def test_stats_scoped_to_account(self):
        self.start()
        self.assertEqual(self.client.get("/v1/stats").status_code, 400)
        other = self.client.get("/v1/stats", headers=OTHER_HEADERS).json()
        self.assertEqual(other["sessions"], {})
        self.assertEqual(other["pending_interactions"], 0)


if __name__ == "__main__":
    unittest.main()
