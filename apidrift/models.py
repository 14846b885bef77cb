"""
SQLAlchemy models for the API drift monitor.

Timestamps are stored as naive UTC datetimes so that SQLite and PostgreSQL
round-trip them identically.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint
)
from sqlalchemy.orm import declarative_base

from apidrift.paths import compile_pattern

# SQLAlchemy declarative base for ORM models
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid4())


def generate_fingerprint(endpoint_uuid: str, alert_type: str, field_path: str) -> str:
    """
    Generate the deduplication fingerprint of a drift alert.

    Args:
        endpoint_uuid: Endpoint the alert is raised on
        alert_type: Alert category
        field_path: Dotted path of the offending field

    Returns:
        str: MD5 hash fingerprint
    """
    raw = f"{endpoint_uuid}:{alert_type}:{field_path}"
    return hashlib.md5(raw.encode()).hexdigest()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# Model: OpenApiSpec
# ============================================================================

class OpenApiSpec(Base):
    """An uploaded (or system-generated) API contract."""
    __tablename__ = "open_api_spec"

    name = Column(String, primary_key=True)
    spec = Column(Text, nullable=False)
    spec_object = Column(JSON, nullable=True)
    extension = Column(String, nullable=False, default="json")
    is_auto_generated = Column(Boolean, nullable=False, default=False)
    hosts = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    spec_updated_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self, include_spec: bool = False) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "extension": self.extension,
            "is_auto_generated": self.is_auto_generated,
            "hosts": list(self.hosts or []),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "spec_updated_at": _iso(self.spec_updated_at)
        }
        if include_spec:
            data["spec"] = self.spec
        return data

    def __repr__(self):
        return f"<OpenApiSpec {self.name} auto={self.is_auto_generated}>"


# ============================================================================
# Model: ApiEndpoint
# ============================================================================

class ApiEndpoint(Base):
    """
    The canonical identity of one (host, method, path template) operation.

    For a given host and method no two live endpoints have overlapping
    path patterns.
    """
    __tablename__ = "api_endpoint"

    uuid = Column(String(36), primary_key=True, default=new_uuid)
    host = Column(String, nullable=False)
    method = Column(String, nullable=False)
    path = Column(String, nullable=False)
    path_regex = Column(String, nullable=False)
    number_params = Column(Integer, nullable=False, default=0)
    num_segments = Column(Integer, nullable=False, default=0)
    risk_score = Column(String, nullable=True)
    first_detected = Column(DateTime, nullable=True)
    last_active = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    openapi_spec_name = Column(
        String, ForeignKey("open_api_spec.name"), nullable=True, index=True
    )

    __table_args__ = (
        UniqueConstraint("host", "method", "path", name="uq_endpoint_host_method_path"),
        Index("idx_endpoint_host_method", "host", "method"),
    )

    @classmethod
    def from_path(cls, path: str, method: str, host: str, **kwargs) -> "ApiEndpoint":
        """Build a transient endpoint with its pattern fields filled in."""
        pattern = compile_pattern(path)
        return cls(
            uuid=new_uuid(),
            path=pattern.path,
            path_regex=pattern.regex,
            number_params=pattern.number_params,
            num_segments=pattern.depth,
            method=method,
            host=host,
            **kwargs
        )

    @property
    def pattern(self):
        return compile_pattern(self.path)

    def update_dates(self, seen_at: datetime) -> None:
        """Widen the activity window to include ``seen_at``."""
        if self.first_detected is None or seen_at < self.first_detected:
            self.first_detected = seen_at
        if self.last_active is None or seen_at > self.last_active:
            self.last_active = seen_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "host": self.host,
            "method": self.method,
            "path": self.path,
            "number_params": self.number_params,
            "risk_score": self.risk_score,
            "first_detected": _iso(self.first_detected),
            "last_active": _iso(self.last_active),
            "openapi_spec_name": self.openapi_spec_name
        }

    def __repr__(self):
        return f"<ApiEndpoint {self.method} {self.host}{self.path}>"


# ============================================================================
# Model: ApiTrace
# ============================================================================

class ApiTrace(Base):
    """One observed request/response pair."""
    __tablename__ = "api_trace"

    uuid = Column(String(36), primary_key=True, default=new_uuid)
    path = Column(String, nullable=False)
    method = Column(String, nullable=False)
    host = Column(String, nullable=False)
    request_parameters = Column(JSON, nullable=False, default=list)
    request_headers = Column(JSON, nullable=False, default=list)
    request_body = Column(Text, nullable=True)
    response_status = Column(Integer, nullable=False)
    response_headers = Column(JSON, nullable=False, default=list)
    response_body = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    api_endpoint_uuid = Column(
        String(36), ForeignKey("api_endpoint.uuid"), nullable=True, index=True
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "path": self.path,
            "method": self.method,
            "host": self.host,
            "request_parameters": self.request_parameters,
            "request_headers": self.request_headers,
            "request_body": self.request_body,
            "response_status": self.response_status,
            "response_headers": self.response_headers,
            "response_body": self.response_body,
            "meta": self.meta,
            "created_at": _iso(self.created_at),
            "api_endpoint_uuid": self.api_endpoint_uuid
        }


# ============================================================================
# Model: DataField
# ============================================================================

class DataField(Base):
    """A field observed in an endpoint's request or response payloads."""
    __tablename__ = "data_field"

    uuid = Column(String(36), primary_key=True, default=new_uuid)
    data_section = Column(String, nullable=False)
    data_path = Column(String, nullable=False)
    data_type = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    api_endpoint_uuid = Column(
        String(36), ForeignKey("api_endpoint.uuid"), nullable=False, index=True
    )

    __table_args__ = (
        UniqueConstraint("api_endpoint_uuid", "data_section", "data_path", name="uq_data_field"),
    )


# ============================================================================
# Model: Alert
# ============================================================================

class Alert(Base):
    """A raised finding, deduplicated per endpoint by fingerprint."""
    __tablename__ = "alert"

    uuid = Column(String(36), primary_key=True, default=new_uuid)
    type = Column(String, nullable=False, index=True)
    risk_score = Column(String, nullable=False, default="low")
    description = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    fingerprint = Column(String, nullable=True)
    status = Column(String, nullable=False, default="Open")
    spec_name = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    api_endpoint_uuid = Column(
        String(36), ForeignKey("api_endpoint.uuid"), nullable=False
    )
    api_trace_uuid = Column(String(36), ForeignKey("api_trace.uuid"), nullable=True)

    __table_args__ = (
        Index("idx_alert_endpoint_fingerprint", "api_endpoint_uuid", "fingerprint"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "type": self.type,
            "risk_score": self.risk_score,
            "description": self.description,
            "context": self.context,
            "fingerprint": self.fingerprint,
            "status": self.status,
            "api_endpoint_uuid": self.api_endpoint_uuid,
            "api_trace_uuid": self.api_trace_uuid,
            "created_at": _iso(self.created_at)
        }


# ============================================================================
# Model: AggregateTraceDataHourly
# ============================================================================

class AggregateTraceDataHourly(Base):
    """Number of calls an endpoint received in one clock hour."""
    __tablename__ = "aggregate_trace_data_hourly"

    uuid = Column(String(36), primary_key=True, default=new_uuid)
    hour = Column(DateTime, nullable=False)
    num_calls = Column(Integer, nullable=False, default=0)

    api_endpoint_uuid = Column(
        String(36), ForeignKey("api_endpoint.uuid"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("api_endpoint_uuid", "hour", name="uq_aggregate_endpoint_hour"),
    )


# ============================================================================
# Model: BlockFields
# ============================================================================

class BlockFields(Base):
    """Field paths that are redacted for traffic on a matching path."""
    __tablename__ = "block_fields"

    uuid = Column(String(36), primary_key=True, default=new_uuid)
    host = Column(String, nullable=False)
    method = Column(String, nullable=False)
    path = Column(String, nullable=False)
    path_regex = Column(String, nullable=False)
    disabled_paths = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("host", "method", "path", name="uq_block_fields"),
    )
