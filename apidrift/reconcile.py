"""
Spec reconciliation engine.

Checks one observed trace against the operation its endpoint's spec declares
and turns every mismatch into an :class:`AlertDescriptor`. Descriptors are
deduplicated by fingerprint and returned in a stable order, so the same
trace always yields the same alerts.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import yaml
from sqlalchemy.orm import Session

from apidrift.block_fields import get_blocked_paths, is_field_blocked
from apidrift.enums import AlertType, ViolationKind
from apidrift.logger import get_logger
from apidrift.models import ApiEndpoint, ApiTrace, OpenApiSpec, generate_fingerprint
from apidrift.openapi import (
    dereference, get_operation, get_operation_parameters, get_request_body_schema,
    get_response, get_response_body_schema, is_openapi_31
)
from apidrift.paths import is_parameter_token, parse_path_parameter, tokenize
from apidrift.validator import REQUEST, RESPONSE, Violation, to_json_schema, validate_value

# Get logger
logger = get_logger("reconcile")

LOCATION_PREFIXES = {
    "path": "req.params",
    "query": "req.query",
    "header": "req.headers"
}


@dataclass(frozen=True)
class AlertDescriptor:
    """One drift finding, ready to be persisted as an alert."""
    alert_type: AlertType
    endpoint_uuid: str
    trace_uuid: Optional[str]
    field_path: str
    kind: ViolationKind
    description: str
    expected: Any = None
    actual: Any = None

    @property
    def fingerprint(self) -> str:
        return generate_fingerprint(self.endpoint_uuid, self.alert_type.value, self.field_path)

    def context(self) -> Dict[str, Any]:
        return {
            "field_path": self.field_path,
            "kind": self.kind.value,
            "expected": self.expected,
            "actual": self.actual
        }


@dataclass
class DiffResult:
    """Outcome of one reconciliation; ``error`` is set instead of raising."""
    descriptors: List[AlertDescriptor] = field(default_factory=list)
    error: Optional[Exception] = None
    skipped: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _schema_type(schema: Optional[Dict[str, Any]]) -> Any:
    return (schema or {}).get("type")


def coerce_parameter(raw: Any, schema: Optional[Dict[str, Any]]) -> Any:
    """
    Convert a raw query or header value to the type its schema declares.

    String-typed parameters keep the raw text; everything else is JSON-parsed
    where possible and left as text otherwise.
    """
    if not isinstance(raw, str) or _schema_type(schema) == "string":
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_body(body: Optional[str]) -> Any:
    if body is None or body == "":
        return None
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        return body


def _pairs_to_dict(pairs: Optional[List[Dict[str, Any]]], lowercase: bool = False) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for pair in pairs or []:
        name = str(pair.get("name", ""))
        if lowercase:
            name = name.lower()
        value = pair.get("value")
        if name in values:
            existing = values[name]
            values[name] = (existing if isinstance(existing, list) else [existing]) + [value]
        else:
            values[name] = value
    return values


def _parameter_object_schema(params: List[Dict[str, Any]], location: str,
                             additional: bool) -> Tuple[Dict[str, Any], Dict[str, Dict[str, Any]]]:
    properties = {}
    required = []
    for param in params:
        if param.get("in") != location or "name" not in param:
            continue
        name = param["name"].lower() if location == "header" else param["name"]
        properties[name] = param.get("schema") or {}
        if param.get("required") or location == "path":
            required.append(name)

    schema = {
        "type": "object",
        "properties": {name: to_json_schema(s, REQUEST) for name, s in properties.items()},
        "additionalProperties": additional
    }
    if required:
        schema["required"] = sorted(required)
    return schema, properties


def build_path_parameters(endpoint_path: str, trace_path: str,
                          declared: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Pair the endpoint template's parameter segments with the trace's literal segments."""
    values = {}
    for template_token, literal_token in zip(tokenize(endpoint_path), tokenize(trace_path)):
        if is_parameter_token(template_token):
            name = template_token[1:-1]
            if _schema_type(declared.get(name)) == "string":
                values[name] = literal_token
            else:
                values[name] = parse_path_parameter(literal_token)
    return values


class SpecReconciler:
    """Validates traces against spec documents, caching dereferenced specs."""

    def __init__(self):
        self._cache: Dict[Tuple[str, Optional[datetime]], Dict[str, Any]] = {}

    def dereferenced(self, spec: OpenApiSpec) -> Dict[str, Any]:
        key = (spec.name, spec.spec_updated_at)
        if key not in self._cache:
            spec_object = spec.spec_object
            if spec_object is None:
                spec_object = yaml.safe_load(spec.spec)
            # Stale versions of the same spec are dropped
            for cached in [k for k in self._cache if k[0] == spec.name]:
                del self._cache[cached]
            self._cache[key] = dereference(spec_object)
        return self._cache[key]

    def reconcile(self, trace: ApiTrace, endpoint: ApiEndpoint,
                  spec: Optional[OpenApiSpec], blocked_paths: Optional[List[str]] = None) -> DiffResult:
        """
        Validate one trace against the operation declared for its endpoint.

        Never raises; unexpected failures are returned in ``DiffResult.error``.

        Args:
            trace: Observed trace
            endpoint: Endpoint the trace is attributed to
            spec: Spec document owning the endpoint, if any
            blocked_paths: Field paths excluded from alerting

        Returns:
            DiffResult with ordered, deduplicated descriptors
        """
        if spec is None:
            return DiffResult(skipped="endpoint has no spec")
        if spec.is_auto_generated:
            return DiffResult(skipped="spec is auto-generated")

        try:
            spec_object = self.dereferenced(spec)
            operation = get_operation(spec_object, endpoint.path, endpoint.method)
            if operation is None:
                return DiffResult(skipped="operation not declared in spec")

            openapi_31 = is_openapi_31(spec_object)
            params = get_operation_parameters(spec_object, endpoint.path, endpoint.method)
            violations = self._request_violations(trace, endpoint, operation, params, openapi_31)
            violations += self._response_violations(trace, operation, openapi_31)
            descriptors = self._to_descriptors(violations, trace, endpoint, blocked_paths or [])
        except Exception as e:
            return DiffResult(error=e)

        return DiffResult(descriptors=descriptors)

    def _request_violations(self, trace: ApiTrace, endpoint: ApiEndpoint, operation: Dict[str, Any],
                            params: List[Dict[str, Any]], openapi_31: bool) -> List[Violation]:
        violations: List[Violation] = []

        path_schema, path_declared = _parameter_object_schema(params, "path", True)
        path_values = build_path_parameters(endpoint.path, trace.path, path_declared)
        violations += validate_value(path_schema, path_values, LOCATION_PREFIXES["path"], openapi_31)

        query_schema, query_declared = _parameter_object_schema(params, "query", False)
        query_values = {
            name: coerce_parameter(value, query_declared.get(name))
            for name, value in _pairs_to_dict(trace.request_parameters).items()
        }
        violations += validate_value(query_schema, query_values, LOCATION_PREFIXES["query"], openapi_31)

        header_schema, header_declared = _parameter_object_schema(params, "header", True)
        header_values = {
            name: coerce_parameter(value, header_declared.get(name))
            for name, value in _pairs_to_dict(trace.request_headers, lowercase=True).items()
        }
        violations += validate_value(header_schema, header_values, LOCATION_PREFIXES["header"], openapi_31)

        body_schema, body_required = get_request_body_schema(operation)
        body = parse_body(trace.request_body)
        if body is None:
            if body_required:
                violations.append(Violation(
                    field_path="req.body",
                    kind=ViolationKind.MISSING_FIELD,
                    message="Required request body is missing.",
                    expected="present",
                    actual="missing"
                ))
        elif body_schema is not None:
            violations += validate_value(
                to_json_schema(body_schema, REQUEST), body, "req.body", openapi_31
            )
        return violations

    def _response_violations(self, trace: ApiTrace, operation: Dict[str, Any],
                             openapi_31: bool) -> List[Violation]:
        response = get_response(operation, trace.response_status)
        if response is None:
            return [Violation(
                field_path="res.status",
                kind=ViolationKind.UNDECLARED_STATUS,
                message=f"Status code {trace.response_status} is not declared and no default response exists.",
                expected=sorted(str(k) for k in (operation.get("responses") or {})),
                actual=trace.response_status
            )]

        violations: List[Violation] = []
        declared_headers = {
            name.lower(): header for name, header in (response.get("headers") or {}).items()
            if name.lower() != "content-type" and isinstance(header, dict)
        }
        if declared_headers:
            header_schema = {
                "type": "object",
                "properties": {
                    name: to_json_schema(header.get("schema") or {}, RESPONSE)
                    for name, header in declared_headers.items()
                },
                "additionalProperties": True
            }
            required = sorted(name for name, header in declared_headers.items() if header.get("required"))
            if required:
                header_schema["required"] = required
            header_values = {
                name: coerce_parameter(value, (declared_headers.get(name) or {}).get("schema"))
                for name, value in _pairs_to_dict(trace.response_headers, lowercase=True).items()
            }
            violations += validate_value(header_schema, header_values, "res.headers", openapi_31)

        body_schema = get_response_body_schema(response)
        if body_schema is not None:
            body = parse_body(trace.response_body)
            if body is None:
                violations.append(Violation(
                    field_path="res.body",
                    kind=ViolationKind.MISSING_FIELD,
                    message="Declared response body is missing.",
                    expected="present",
                    actual="missing"
                ))
            else:
                violations += validate_value(
                    to_json_schema(body_schema, RESPONSE), body, "res.body", openapi_31
                )
        return violations

    @staticmethod
    def _to_descriptors(violations: List[Violation], trace: ApiTrace, endpoint: ApiEndpoint,
                        blocked_paths: List[str]) -> List[AlertDescriptor]:
        descriptors: Dict[str, AlertDescriptor] = {}
        for violation in violations:
            if is_field_blocked(violation.field_path, blocked_paths):
                continue
            if violation.field_path.startswith("req."):
                alert_type = AlertType.SPEC_DIFF_REQUEST
            else:
                alert_type = AlertType.SPEC_DIFF_RESPONSE
            descriptor = AlertDescriptor(
                alert_type=alert_type,
                endpoint_uuid=endpoint.uuid,
                trace_uuid=trace.uuid,
                field_path=violation.field_path,
                kind=violation.kind,
                description=f"{violation.field_path}: {violation.message}",
                expected=violation.expected,
                actual=violation.actual
            )
            descriptors.setdefault(descriptor.fingerprint, descriptor)

        order = {AlertType.SPEC_DIFF_REQUEST: 0, AlertType.SPEC_DIFF_RESPONSE: 1}
        return sorted(
            descriptors.values(),
            key=lambda d: (order[d.alert_type], d.field_path, d.kind.value)
        )


_default_reconciler = SpecReconciler()


def diff_trace_against_spec(session: Session, trace: ApiTrace, endpoint: ApiEndpoint,
                            reconciler: Optional[SpecReconciler] = None) -> List[AlertDescriptor]:
    """
    Compute drift alerts for a trace; failures are logged and yield no alerts.

    Args:
        session: Database session used to load the spec and blocked fields
        trace: Observed trace
        endpoint: Endpoint the trace is attributed to
        reconciler: Reconciler to use, the shared one by default

    Returns:
        Ordered list of AlertDescriptor
    """
    if not endpoint.openapi_spec_name:
        return []

    reconciler = reconciler or _default_reconciler
    try:
        spec = session.get(OpenApiSpec, endpoint.openapi_spec_name)
        blocked = get_blocked_paths(session, endpoint.host, endpoint.method, endpoint.path)
        result = reconciler.reconcile(trace, endpoint, spec, blocked)
    except Exception as e:
        result = DiffResult(error=e)

    if result.error is not None:
        logger.error(
            f"Error finding OpenAPI spec diff for trace {trace.uuid} on "
            f"{endpoint.method} {endpoint.path}: {result.error}",
            exc_info=result.error
        )
        return []
    if result.skipped:
        logger.debug(f"Skipping spec diff for {endpoint.method} {endpoint.path}: {result.skipped}")
    return result.descriptors
