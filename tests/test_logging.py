"""
Session Orchestrator — Structured Logging Tests

Tests:
  - every line is valid JSON with the service fields
  - session lifecycle events carry the correlation id as trace_id
  - a child session logs under its parent's trace_id
  - a command and its result share one span id, even across trace instances
  - failing results log at WARNING
  - level filtering drops DEBUG events at INFO
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.logging import (
    JSONFormatter,
    NAMESPACE,
    SessionTrace,
    configure_logging,
    span_id_for,
    get_logger,
)
from sessions.types import Result
from tests.support import CONTEXT_ID, SCOPE, ManagerFixture, answer, subject


def _capture_logs(level="DEBUG"):
    buf = io.StringIO()
    configure_logging(level=level, stream=buf)
    return buf


def _parse_log_lines(buf):
    buf.seek(0)
    return [json.loads(line) for line in buf.readlines() if line.strip()]


def _actions(entries):
    return [e.get("action") for e in entries if "action" in e]


class LoggingTestCase(unittest.TestCase):

    def tearDown(self):
        configure_logging(level="WARNING")


# ═══════════════════════════════════════════════════════════════════
# Formatter and configuration
# ═══════════════════════════════════════════════════════════════════

class TestFormatter(LoggingTestCase):

    def test_json_parseable(self):
        buf = _capture_logs()
        get_logger("runtime").info("hello %s", "world")
        [entry] = _parse_log_lines(buf)
        self.assertEqual(entry["message"], "hello world")
        self.assertEqual(entry["logger"], f"{NAMESPACE}.runtime")
        self.assertEqual(entry["service.name"], NAMESPACE)
        self.assertIn("timestamp", entry)

    def test_exception_fields(self):
        record = logging.LogRecord("x", logging.ERROR, "", 0, "failed", (), None)
        try:
            raise KeyError("missing")
        except KeyError:
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["exception.type"], "KeyError")

    def test_level_filtering(self):
        buf = _capture_logs(level="INFO")
        trace = SessionTrace("ses_1", "component_coding", "trace_1")
        trace.on_event_received("tool_called")
        trace.on_route_decision(None, None, "Initialize")
        self.assertEqual(_actions(_parse_log_lines(buf)), ["route_decision"])

    def test_text_format(self):
        buf = io.StringIO()
        configure_logging(level="INFO", stream=buf, fmt="text")
        get_logger("cli").info("plain")
        self.assertIn("INFO session_orchestrator.cli: plain", buf.getvalue())

    def test_span_id_shape(self):
        span = span_id_for("int_1")
        self.assertEqual(len(span), 16)
        int(span, 16)
        self.assertEqual(span_id_for("int_1"), span)
        self.assertNotEqual(span_id_for("int_2"), span)


# ═══════════════════════════════════════════════════════════════════
# Session traces
# ═══════════════════════════════════════════════════════════════════

class TestSessionTrace(LoggingTestCase):

    def test_span_reused_for_result(self):
        buf = _capture_logs()
        trace = SessionTrace("ses_1", "component_coding", "trace_1")
        trace.on_command_issued("RunTests", "int_1", 5, "shell")
        trace.on_result_recorded("RunTests", "int_1", "error", annotated=True,
                                 error_message="1 test(s) failed")
        issued, recorded = _parse_log_lines(buf)
        self.assertEqual(issued["span_id"], recorded["span_id"])
        self.assertEqual(recorded["level"], "WARNING")
        self.assertTrue(recorded["annotated"])

    def test_span_pairs_across_trace_instances(self):
        buf = _capture_logs()
        SessionTrace("ses_1", "component_coding", "trace_1").on_command_issued(
            "RunTests", "int_9", 1, "shell")
        SessionTrace("ses_1", "component_coding", "trace_1").on_result_recorded(
            "RunTests", "int_9", "ok")
        issued, recorded = _parse_log_lines(buf)
        self.assertEqual(issued["span_id"], recorded["span_id"])

    def test_manager_lifecycle_logged(self):
        buf = _capture_logs()
        fx = ManagerFixture()
        try:
            s = fx.manager.start(SCOPE, "component_coding", subject("cmp_user"))
            answer(fx.manager, s.session_id, Result.ok())
        finally:
            fx.close()

        entries = [e for e in _parse_log_lines(buf) if e.get("session_id") == s.session_id]
        self.assertEqual(
            _actions(entries),
            ["session_start", "route_decision", "command_issued", "result_recorded"],
        )
        issued, recorded = entries[2], entries[3]
        self.assertEqual(issued["span_id"], recorded["span_id"])
        self.assertTrue(all(e["trace_id"] == s.correlation_id for e in entries))

    def test_children_share_parent_trace(self):
        buf = _capture_logs()
        fx = ManagerFixture()
        try:
            parent = fx.manager.start(SCOPE, "context_coding", subject(CONTEXT_ID))
            answer(fx.manager, parent.session_id, Result.ok())
            fx.manager.next_command(SCOPE, parent.session_id)
        finally:
            fx.close()

        spawned = [e for e in _parse_log_lines(buf) if e.get("action") == "child_spawned"]
        self.assertEqual(len(spawned), 3)
        self.assertTrue(all(e["trace_id"] == parent.correlation_id for e in spawned))


if __name__ == "__main__":
    unittest.main()
