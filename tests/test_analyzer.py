"""
Test module for trace analysis.
"""

import json
import os
import sys
import unittest
from datetime import datetime
from unittest.mock import MagicMock

# Add parent directory to path to import monitor modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apidrift.analyzer import TraceAnalyzer, find_endpoint_for_path
from apidrift.database import transaction
from apidrift.enums import AlertType
from apidrift.ingest import build_queued_trace
from apidrift.models import AggregateTraceDataHourly, Alert, ApiEndpoint, ApiTrace, DataField

from helpers import HOST, add_endpoint, add_spec, make_session_factory, simple_operation, trace_payload

USER_RESPONSE = {
    "type": "object",
    "required": ["id", "email"],
    "properties": {"id": {"type": "integer"}, "email": {"type": "string"}}
}


def queued(path, created_at=None, **kwargs):
    trace = build_queued_trace(trace_payload(path, **kwargs))
    if created_at is not None:
        trace["created_at"] = created_at.isoformat()
    return trace


class TestFindEndpointForPath(unittest.TestCase):
    """Test cases for find_endpoint_for_path."""

    def setUp(self):
        self.session_factory = make_session_factory()

    def test_matches_template(self):
        with transaction(self.session_factory) as session:
            add_endpoint(session, "/users/{id}")
            add_endpoint(session, "/users/{id}", method="POST")
            endpoint = find_endpoint_for_path(session, HOST, "GET", "/users/42")
            self.assertEqual((endpoint.method, endpoint.path), ("GET", "/users/{id}"))

    def test_no_match(self):
        with transaction(self.session_factory) as session:
            add_endpoint(session, "/users/{id}")
            self.assertIsNone(find_endpoint_for_path(session, HOST, "GET", "/users/42/orders"))
            self.assertIsNone(find_endpoint_for_path(session, "other.example.com", "GET", "/users/42"))

    def test_literal_segments_are_not_wildcards(self):
        with transaction(self.session_factory) as session:
            add_endpoint(session, "/v1.0/items")
            self.assertIsNone(find_endpoint_for_path(session, HOST, "GET", "/v1x0/items"))
            self.assertIsNotNone(find_endpoint_for_path(session, HOST, "GET", "/v1.0/items"))


class TestTraceAnalyzer(unittest.TestCase):
    """Test cases for TraceAnalyzer."""

    def setUp(self):
        self.session_factory = make_session_factory()
        self.analyzer = TraceAnalyzer(self.session_factory)

    def test_unmatched_trace_creates_endpoint_and_alert(self):
        trace = self.analyzer.analyze(None, queued("/health", response_body={"ok": True}))

        with transaction(self.session_factory) as session:
            endpoint = session.query(ApiEndpoint).one()
            self.assertEqual(endpoint.path, "/health")
            self.assertIsNone(endpoint.openapi_spec_name)
            self.assertEqual(trace.api_endpoint_uuid, endpoint.uuid)

            alerts = session.query(Alert).all()
            self.assertEqual([a.type for a in alerts], [AlertType.NEW_ENDPOINT.value])
            self.assertEqual(alerts[0].api_trace_uuid, trace.uuid)

    def test_trace_is_attributed_to_matching_template(self):
        with transaction(self.session_factory) as session:
            endpoint = add_endpoint(session, "/users/{id}")

        seen_at = datetime(2024, 5, 1, 9, 30)
        self.analyzer.analyze(None, queued("/users/7", created_at=seen_at))
        self.analyzer.analyze(None, queued("/users/8", created_at=datetime(2024, 5, 1, 9, 45)))
        self.analyzer.analyze(None, queued("/users/9", created_at=datetime(2024, 5, 1, 11, 5)))

        with transaction(self.session_factory) as session:
            self.assertEqual(session.query(ApiEndpoint).count(), 1)
            self.assertEqual(session.query(Alert).count(), 0)
            self.assertEqual(
                {t.api_endpoint_uuid for t in session.query(ApiTrace)}, {endpoint.uuid}
            )
            rows = session.query(AggregateTraceDataHourly).order_by(AggregateTraceDataHourly.hour).all()
            self.assertEqual(
                [(r.hour, r.num_calls) for r in rows],
                [(datetime(2024, 5, 1, 9), 2), (datetime(2024, 5, 1, 11), 1)]
            )
            stored = session.get(ApiEndpoint, endpoint.uuid)
            self.assertEqual(stored.first_detected, seen_at)
            self.assertEqual(stored.last_active, datetime(2024, 5, 1, 11, 5))

    def test_data_fields_are_recorded_once(self):
        body = {"id": 1, "tags": [{"name": "a"}], "profile": {"active": True}}
        self.analyzer.analyze(None, queued("/items", response_body=body, parameters=[{"name": "q", "value": "x"}]))
        self.analyzer.analyze(None, queued("/items", response_body=body))

        with transaction(self.session_factory) as session:
            fields = sorted(
                (f.data_section, f.data_path, f.data_type) for f in session.query(DataField)
            )
        self.assertEqual(fields, [
            ("req.query", "q", "string"),
            ("res.body", "id", "integer"),
            ("res.body", "profile.active", "boolean"),
            ("res.body", "tags[].name", "string")
        ])

    def test_spec_drift_raises_deduplicated_alerts(self):
        with transaction(self.session_factory) as session:
            add_spec(session, "users.json", {"/users/{id}": {"get": simple_operation(USER_RESPONSE)}})
            endpoint = add_endpoint(session, "/users/{id}", spec_name="users.json")

        self.analyzer.analyze(None, queued("/users/1", response_body={"id": 1}))
        last = self.analyzer.analyze(None, queued("/users/2", response_body={"id": "2"}))

        with transaction(self.session_factory) as session:
            alerts = (
                session.query(Alert)
                .filter(Alert.api_endpoint_uuid == endpoint.uuid)
                .order_by(Alert.fingerprint)
                .all()
            )
            by_field = {a.context["field_path"]: a for a in alerts}
        self.assertEqual(sorted(by_field), ["res.body.email", "res.body.id"])
        self.assertEqual(by_field["res.body.email"].api_trace_uuid, last.uuid)
        self.assertTrue(all(a.spec_name == "users.json" for a in alerts))
        self.assertTrue(all(a.type == AlertType.SPEC_DIFF_RESPONSE.value for a in alerts))

    def test_non_json_body_is_stored_verbatim(self):
        trace = self.analyzer.analyze(None, queued("/page", response_body="<html></html>"))
        self.assertEqual(trace.response_body, "<html></html>")

    def test_run_consumes_queue(self):
        payloads = [
            {"ctx": {"org": "acme"}, "trace": queued("/a")},
            {"ctx": {}, "trace": {"host": HOST, "method": "GET"}},
            {"ctx": {}, "trace": queued("/b")},
            None
        ]
        queue = MagicMock()
        queue.pop.side_effect = payloads

        with self.assertLogs("apidrift.analyzer", level="ERROR"):
            processed = self.analyzer.run(queue, timeout=0)

        self.assertEqual(processed, 2)
        self.assertEqual(queue.pop.call_count, 4)
        with transaction(self.session_factory) as session:
            self.assertEqual(sorted(e.path for e in session.query(ApiEndpoint)), ["/a", "/b"])

    def test_run_respects_max_items(self):
        queue = MagicMock()
        queue.pop.return_value = {"ctx": {}, "trace": queued("/a")}

        self.assertEqual(self.analyzer.run(queue, max_items=3), 3)
        self.assertEqual(queue.pop.call_count, 3)
        with transaction(self.session_factory) as session:
            self.assertEqual(session.query(ApiTrace).count(), 3)
            self.assertEqual(session.query(ApiEndpoint).count(), 1)


if __name__ == "__main__":
    unittest.main()
