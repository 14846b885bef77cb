"""
Trace analysis.

Consumes queued traces: each one is attributed to an endpoint (a new endpoint
is created and announced when none matches), stored, counted and checked
against the endpoint's spec.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import literal
from sqlalchemy.orm import Session, sessionmaker

from apidrift.alerts import create_new_endpoint_alert, upsert_spec_diff_alerts
from apidrift.database import EndpointLocks
from apidrift.exceptions import ApiDriftError, InternalFailure
from apidrift.ingest import TraceQueue
from apidrift.logger import get_logger, log_with_context
from apidrift.merge import MergeExecutor
from apidrift.models import AggregateTraceDataHourly, ApiEndpoint, ApiTrace, DataField, utcnow
from apidrift.reconcile import SpecReconciler, diff_trace_against_spec, parse_body
from apidrift.resolver import BatchResolver
from apidrift.validator import json_type

# Get logger
logger = get_logger("analyzer")


def find_endpoint_for_path(session: Session, host: str, method: str, path: str) -> Optional[ApiEndpoint]:
    """
    Find the endpoint whose path pattern matches a literal request path.

    Matching runs in the database against the stored path regexes. Should
    more than one endpoint match, the one with the fewest parameters wins.
    """
    matches = (
        session.query(ApiEndpoint)
        .filter(
            ApiEndpoint.host == host,
            ApiEndpoint.method == method,
            literal(path).regexp_match(ApiEndpoint.path_regex)
        )
        .all()
    )
    if not matches:
        return None
    return min(matches, key=lambda e: (e.number_params, e.path))


def record_hourly_call(session: Session, endpoint_uuid: str, seen_at: datetime) -> AggregateTraceDataHourly:
    hour = seen_at.replace(minute=0, second=0, microsecond=0)
    row = (
        session.query(AggregateTraceDataHourly)
        .filter(
            AggregateTraceDataHourly.api_endpoint_uuid == endpoint_uuid,
            AggregateTraceDataHourly.hour == hour
        )
        .one_or_none()
    )
    if row is None:
        row = AggregateTraceDataHourly(api_endpoint_uuid=endpoint_uuid, hour=hour, num_calls=0)
        session.add(row)
    row.num_calls += 1
    return row


def _collect_fields(node: Any, prefix: str, out: Dict[str, str]) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            _collect_fields(value, f"{prefix}.{key}" if prefix else str(key), out)
    elif isinstance(node, list):
        for item in node:
            _collect_fields(item, f"{prefix}[]", out)
    elif prefix:
        out.setdefault(prefix, json_type(node))


def record_data_fields(session: Session, endpoint_uuid: str, trace: ApiTrace) -> int:
    """Record body and query fields not yet seen for the endpoint; returns how many were added."""
    observed: Dict[Tuple[str, str], str] = {}
    for section, body in (("req.body", trace.request_body), ("res.body", trace.response_body)):
        fields: Dict[str, str] = {}
        _collect_fields(parse_body(body), "", fields)
        observed.update({(section, path): kind for path, kind in fields.items()})
    for pair in trace.request_parameters or []:
        observed.setdefault(("req.query", pair["name"]), "string")

    existing = {
        (f.data_section, f.data_path)
        for f in session.query(DataField).filter(DataField.api_endpoint_uuid == endpoint_uuid)
    }
    added = 0
    for (section, path), kind in sorted(observed.items()):
        if (section, path) in existing:
            continue
        session.add(DataField(
            api_endpoint_uuid=endpoint_uuid,
            data_section=section,
            data_path=path,
            data_type=kind
        ))
        added += 1
    return added


def _parse_created_at(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    return datetime.fromisoformat(value).replace(tzinfo=None)


class TraceAnalyzer:
    """Attributes, stores and checks queued traces."""

    def __init__(self, session_factory: sessionmaker, locks: Optional[EndpointLocks] = None,
                 reconciler: Optional[SpecReconciler] = None):
        self.session_factory = session_factory
        self.locks = locks or EndpointLocks()
        self.reconciler = reconciler or SpecReconciler()
        self.merge_executor = MergeExecutor()

    def _endpoint_for_trace(self, session: Session, trace_data: Dict[str, Any]) -> Tuple[ApiEndpoint, bool]:
        host, method, path = trace_data["host"], trace_data["method"], trace_data["path"]
        endpoint = find_endpoint_for_path(session, host, method, path)
        if endpoint is not None:
            return endpoint, False

        resolver = BatchResolver(session)
        result = resolver.resolve(path, method, host)
        if result.conflict is not None:
            raise result.conflict
        self.merge_executor.apply(session, resolver.plan())
        return result.endpoint, True

    def analyze(self, ctx: Optional[Dict[str, Any]], trace_data: Dict[str, Any]) -> ApiTrace:
        """
        Process one queued trace.

        Args:
            ctx: Caller context from the queue payload
            trace_data: Trace in queue form

        Returns:
            The stored ApiTrace

        Raises:
            ApiDriftError: If the trace cannot be attributed
            InternalFailure: If storing the trace fails
        """
        key = (trace_data["host"], trace_data["method"])
        try:
            with self.locks.transaction(self.session_factory, [key]) as session:
                endpoint, is_new = self._endpoint_for_trace(session, trace_data)

                trace = ApiTrace(
                    path=trace_data["path"],
                    method=trace_data["method"],
                    host=trace_data["host"],
                    request_parameters=trace_data.get("request_parameters") or [],
                    request_headers=trace_data.get("request_headers") or [],
                    request_body=trace_data.get("request_body"),
                    response_status=trace_data["response_status"],
                    response_headers=trace_data.get("response_headers") or [],
                    response_body=trace_data.get("response_body"),
                    meta=trace_data.get("meta"),
                    created_at=_parse_created_at(trace_data.get("created_at")),
                    api_endpoint_uuid=endpoint.uuid
                )
                session.add(trace)
                session.flush()

                endpoint.update_dates(trace.created_at)
                record_hourly_call(session, endpoint.uuid, trace.created_at)
                record_data_fields(session, endpoint.uuid, trace)
                if is_new:
                    create_new_endpoint_alert(session, endpoint, trace)

                descriptors = diff_trace_against_spec(session, trace, endpoint, self.reconciler)
                if descriptors:
                    upsert_spec_diff_alerts(session, descriptors, endpoint.openapi_spec_name)
        except ApiDriftError:
            raise
        except Exception as e:
            logger.error(f"Failed to analyze trace {trace_data.get('method')} {trace_data.get('path')}: {str(e)}")
            raise InternalFailure("Failed to analyze trace.") from e

        log_with_context(logger, "DEBUG", f"Analyzed trace {trace.method} {trace.path}", {
            "trace": trace.uuid,
            "endpoint": endpoint.uuid,
            "new_endpoint": is_new,
            "spec_diffs": len(descriptors),
            "ctx": ctx or {}
        })
        return trace

    def run(self, queue: TraceQueue, max_items: Optional[int] = None, timeout: int = 1) -> int:
        """
        Consume the queue until it is empty (or ``max_items`` were handled).

        A trace that fails is logged and skipped.

        Returns:
            Number of traces stored
        """
        processed = 0
        handled = 0
        while max_items is None or handled < max_items:
            payload = queue.pop(timeout=timeout)
            if payload is None:
                break
            handled += 1
            try:
                self.analyze(payload.get("ctx"), payload["trace"])
                processed += 1
            except Exception as e:
                logger.error(f"Skipping trace that failed analysis: {str(e)}")
        logger.info(f"Analyzed {processed} of {handled} queued traces")
        return processed
