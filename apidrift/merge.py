"""
Merge executor.

Applies a :class:`~apidrift.resolver.MergePlan` inside the caller's
transaction: survivors are persisted, dependent records of superseded
endpoints are moved onto (or merged into) their survivor, and the superseded
endpoints are deleted.
"""

from dataclasses import dataclass
from typing import List

from sqlalchemy.orm import Session

from apidrift.enums import STRUCTURAL_ALERT_TYPES
from apidrift.logger import get_logger
from apidrift.models import AggregateTraceDataHourly, Alert, ApiEndpoint, ApiTrace, DataField
from apidrift.resolver import MergeEntry, MergePlan

# Get logger
logger = get_logger("merge")

_STRUCTURAL_TYPES = [t.value for t in STRUCTURAL_ALERT_TYPES]


@dataclass
class MergeSummary:
    survivors: int = 0
    created: int = 0
    deleted_endpoints: int = 0
    moved_traces: int = 0
    moved_alerts: int = 0
    deleted_alerts: int = 0
    deleted_data_fields: int = 0
    merged_aggregates: int = 0


class MergeExecutor:
    """Applies merge plans. It never commits; the caller owns the transaction."""

    def apply(self, session: Session, plan: MergePlan) -> MergeSummary:
        """
        Apply every entry of a merge plan.

        Args:
            session: Session of the enclosing transaction
            plan: Plan produced by the resolver

        Returns:
            MergeSummary with the number of records touched
        """
        summary = MergeSummary()
        for entry in plan.entries:
            self._apply_entry(session, entry, summary)
        session.flush()

        if summary.deleted_endpoints:
            logger.info(
                f"Merged {summary.deleted_endpoints} endpoints into {summary.survivors} survivors "
                f"({summary.moved_traces} traces, {summary.moved_alerts} alerts moved)"
            )
        return summary

    def _apply_entry(self, session: Session, entry: MergeEntry, summary: MergeSummary) -> None:
        survivor = entry.survivor
        session.add(survivor)
        summary.survivors += 1
        if entry.is_new:
            summary.created += 1

        if not entry.superseded:
            return

        # The survivor must exist before anything can reference it.
        session.flush()
        old_ids = [endpoint.uuid for endpoint in entry.superseded]

        summary.moved_traces += (
            session.query(ApiTrace)
            .filter(ApiTrace.api_endpoint_uuid.in_(old_ids))
            .update({ApiTrace.api_endpoint_uuid: survivor.uuid}, synchronize_session=False)
        )

        summary.deleted_data_fields += (
            session.query(DataField)
            .filter(DataField.api_endpoint_uuid.in_(old_ids))
            .delete(synchronize_session=False)
        )

        summary.deleted_alerts += (
            session.query(Alert)
            .filter(Alert.api_endpoint_uuid.in_(old_ids), Alert.type.in_(_STRUCTURAL_TYPES))
            .delete(synchronize_session=False)
        )
        summary.moved_alerts += (
            session.query(Alert)
            .filter(Alert.api_endpoint_uuid.in_(old_ids))
            .update({Alert.api_endpoint_uuid: survivor.uuid}, synchronize_session=False)
        )

        summary.merged_aggregates += self._merge_aggregates(session, survivor, old_ids)

        for endpoint in entry.superseded:
            session.delete(endpoint)
            summary.deleted_endpoints += 1
        session.flush()

    @staticmethod
    def _merge_aggregates(session: Session, survivor: ApiEndpoint, old_ids: List[str]) -> int:
        """Fold hourly call counts of superseded endpoints into the survivor's rows."""
        survivor_rows = {
            row.hour: row for row in
            session.query(AggregateTraceDataHourly)
            .filter(AggregateTraceDataHourly.api_endpoint_uuid == survivor.uuid)
            .all()
        }
        old_rows = (
            session.query(AggregateTraceDataHourly)
            .filter(AggregateTraceDataHourly.api_endpoint_uuid.in_(old_ids))
            .order_by(AggregateTraceDataHourly.hour)
            .all()
        )

        for row in old_rows:
            target = survivor_rows.get(row.hour)
            if target is None:
                target = AggregateTraceDataHourly(
                    api_endpoint_uuid=survivor.uuid,
                    hour=row.hour,
                    num_calls=0
                )
                session.add(target)
                survivor_rows[row.hour] = target
            target.num_calls += row.num_calls
            session.delete(row)

        return len(old_rows)
