"""
Test module for the merge executor.
"""

import os
import sys
import unittest
from datetime import datetime

# Add parent directory to path to import monitor modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apidrift.database import transaction
from apidrift.enums import AlertType
from apidrift.merge import MergeExecutor
from apidrift.models import AggregateTraceDataHourly, Alert, ApiEndpoint, ApiTrace, DataField
from apidrift.resolver import BatchResolver, MergeEntry, MergePlan

from helpers import HOST, add_endpoint, add_hourly, add_trace, make_session_factory


class TestMergeExecutor(unittest.TestCase):
    """Test cases for MergeExecutor.apply."""

    def setUp(self):
        self.session_factory = make_session_factory()
        self.executor = MergeExecutor()

    def add_alert(self, session, endpoint, alert_type, fingerprint):
        alert = Alert(
            type=alert_type.value,
            description=f"{alert_type.value} on {endpoint.path}",
            fingerprint=fingerprint,
            api_endpoint_uuid=endpoint.uuid
        )
        session.add(alert)
        session.flush()
        return alert

    def test_empty_supersede_set_touches_nothing_else(self):
        with transaction(self.session_factory) as session:
            existing = add_endpoint(session, "/users/{id}")
            add_trace(session, existing, path="/users/1")
            add_hourly(session, existing, datetime(2024, 1, 1, 10), 3)

        with transaction(self.session_factory) as session:
            survivor = session.get(ApiEndpoint, existing.uuid)
            summary = self.executor.apply(session, MergePlan([MergeEntry(survivor, [])]))

        self.assertEqual(summary.survivors, 1)
        self.assertEqual(summary.created, 0)
        self.assertEqual(summary.deleted_endpoints, 0)
        self.assertEqual(summary.moved_traces, 0)
        self.assertEqual(summary.merged_aggregates, 0)
        with transaction(self.session_factory) as session:
            self.assertEqual(session.query(ApiEndpoint).count(), 1)
            self.assertEqual(session.query(ApiTrace).count(), 1)
            self.assertEqual(session.query(AggregateTraceDataHourly).one().num_calls, 3)

    def test_new_survivor_without_supersedes_is_inserted(self):
        with transaction(self.session_factory) as session:
            plan = MergePlan([MergeEntry(ApiEndpoint.from_path("/health", "GET", HOST), [], is_new=True)])
            summary = self.executor.apply(session, plan)

        self.assertEqual(summary.created, 1)
        with transaction(self.session_factory) as session:
            self.assertEqual(session.query(ApiEndpoint).one().path, "/health")

    def test_superseded_endpoints_are_folded_into_survivor(self):
        hour = datetime(2024, 3, 1, 12)
        with transaction(self.session_factory) as session:
            first = add_endpoint(session, "/users/1")
            second = add_endpoint(session, "/users/2")
            add_trace(session, first)
            add_trace(session, first)
            add_trace(session, second)
            add_hourly(session, first, hour, 2)
            add_hourly(session, second, hour, 1)
            add_hourly(session, second, datetime(2024, 3, 1, 13), 5)
            session.add(DataField(
                api_endpoint_uuid=first.uuid, data_section="res.body", data_path="name", data_type="string"
            ))
            self.add_alert(session, first, AlertType.NEW_ENDPOINT, "new-1")
            self.add_alert(session, second, AlertType.SPEC_DIFF_RESPONSE, "diff-2")
            kept = self.add_alert(session, second, AlertType.PII_DATA_DETECTED, "pii-2")

        with transaction(self.session_factory) as session:
            resolver = BatchResolver(session)
            result = resolver.resolve("/users/{id}", "GET", HOST)
            summary = self.executor.apply(session, resolver.plan())
            survivor_uuid = result.created.uuid

        self.assertEqual(summary.deleted_endpoints, 2)
        self.assertEqual(summary.moved_traces, 3)
        self.assertEqual(summary.deleted_alerts, 2)
        self.assertEqual(summary.moved_alerts, 1)
        self.assertEqual(summary.deleted_data_fields, 1)

        with transaction(self.session_factory) as session:
            endpoints = session.query(ApiEndpoint).all()
            self.assertEqual([e.path for e in endpoints], ["/users/{id}"])
            self.assertEqual(
                {t.api_endpoint_uuid for t in session.query(ApiTrace)}, {survivor_uuid}
            )
            self.assertEqual(session.query(DataField).count(), 0)

            alerts = session.query(Alert).all()
            self.assertEqual([a.uuid for a in alerts], [kept.uuid])
            self.assertEqual(alerts[0].api_endpoint_uuid, survivor_uuid)

            rows = (
                session.query(AggregateTraceDataHourly)
                .order_by(AggregateTraceDataHourly.hour)
                .all()
            )
            self.assertEqual([(r.hour, r.num_calls) for r in rows], [(hour, 3), (datetime(2024, 3, 1, 13), 5)])
            self.assertTrue(all(r.api_endpoint_uuid == survivor_uuid for r in rows))

    def test_survivor_rows_for_same_hour_are_summed(self):
        hour = datetime(2024, 3, 1, 12)
        with transaction(self.session_factory) as session:
            survivor = add_endpoint(session, "/users/me")
            old = add_endpoint(session, "/users/{id}")
            add_hourly(session, survivor, hour, 4)
            add_hourly(session, old, hour, 6)

        with transaction(self.session_factory) as session:
            resolver = BatchResolver(session)
            resolver.resolve("/users/{id}", "GET", HOST)
            resolver.resolve("/users/me", "GET", HOST)
            self.executor.apply(session, resolver.plan())

        with transaction(self.session_factory) as session:
            row = session.query(AggregateTraceDataHourly).one()
            self.assertEqual(row.api_endpoint_uuid, survivor.uuid)
            self.assertEqual(row.num_calls, 10)

    def test_failure_rolls_back_everything(self):
        with transaction(self.session_factory) as session:
            old = add_endpoint(session, "/users/1")
            add_trace(session, old)

        class Boom(Exception):
            pass

        with self.assertRaises(Boom):
            with transaction(self.session_factory) as session:
                resolver = BatchResolver(session)
                resolver.resolve("/users/{id}", "GET", HOST)
                self.executor.apply(session, resolver.plan())
                raise Boom()

        with transaction(self.session_factory) as session:
            self.assertEqual([e.path for e in session.query(ApiEndpoint)], ["/users/1"])
            self.assertEqual(session.query(ApiTrace).one().api_endpoint_uuid, old.uuid)


if __name__ == "__main__":
    unittest.main()
