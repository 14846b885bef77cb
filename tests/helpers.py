"""
Shared builders for the test suite.

Every test gets its own in-memory SQLite database; specs and traces are built
from small dictionaries so each test states only what it cares about.
"""

import json
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

# Add parent directory to path to import monitor modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from apidrift.database import create_db_engine, get_session_factory, init_db
from apidrift.models import AggregateTraceDataHourly, ApiEndpoint, ApiTrace, OpenApiSpec, utcnow

HOST = "api.example.com"
SERVER_URL = f"https://{HOST}"


def make_session_factory():
    """Create a fresh in-memory database and return its session factory."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return get_session_factory(engine)


def build_openapi(paths: Dict[str, Any], servers: Optional[List[str]] = None,
                  version: str = "3.0.3", components: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    spec = {
        "openapi": version,
        "info": {"title": "Test API", "version": "1.0.0"},
        "servers": [{"url": url} for url in (servers if servers is not None else [SERVER_URL])],
        "paths": paths
    }
    if components:
        spec["components"] = components
    return spec


def spec_text(paths: Dict[str, Any], **kwargs) -> str:
    return json.dumps(build_openapi(paths, **kwargs))


def simple_operation(response_schema: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    """An operation answering 200 with an optional JSON body schema."""
    response = {"description": "OK"}
    if response_schema is not None:
        response["content"] = {"application/json": {"schema": response_schema}}
    operation = {"responses": {"200": response}}
    operation.update(extra)
    return operation


def add_spec(session, name: str, paths: Optional[Dict[str, Any]] = None,
             is_auto_generated: bool = False) -> OpenApiSpec:
    spec_object = build_openapi(paths or {})
    spec = OpenApiSpec(
        name=name,
        spec=json.dumps(spec_object),
        spec_object=spec_object,
        extension="json",
        is_auto_generated=is_auto_generated,
        hosts=[HOST]
    )
    session.add(spec)
    session.flush()
    return spec


def add_endpoint(session, path: str, method: str = "GET", host: str = HOST,
                 spec_name: Optional[str] = None, **kwargs) -> ApiEndpoint:
    endpoint = ApiEndpoint.from_path(path, method, host, openapi_spec_name=spec_name, **kwargs)
    session.add(endpoint)
    session.flush()
    return endpoint


def add_trace(session, endpoint: ApiEndpoint, path: Optional[str] = None,
              created_at: Optional[datetime] = None, **kwargs) -> ApiTrace:
    trace = ApiTrace(
        path=path or endpoint.path,
        method=endpoint.method,
        host=endpoint.host,
        request_parameters=kwargs.pop("request_parameters", []),
        request_headers=kwargs.pop("request_headers", []),
        response_status=kwargs.pop("response_status", 200),
        response_headers=kwargs.pop("response_headers", []),
        created_at=created_at or utcnow(),
        api_endpoint_uuid=endpoint.uuid,
        **kwargs
    )
    session.add(trace)
    session.flush()
    return trace


def add_hourly(session, endpoint: ApiEndpoint, hour: datetime, num_calls: int) -> AggregateTraceDataHourly:
    row = AggregateTraceDataHourly(api_endpoint_uuid=endpoint.uuid, hour=hour, num_calls=num_calls)
    session.add(row)
    session.flush()
    return row


def trace_payload(path: str, method: str = "GET", host: str = HOST, status: int = 200,
                  response_body: Any = None, request_body: Any = None,
                  parameters: Optional[List[Dict[str, str]]] = None,
                  request_headers: Optional[List[Dict[str, str]]] = None,
                  response_headers: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    """An incoming trace in the shape accepted by ingestion."""
    return {
        "request": {
            "url": {"host": host, "path": path, "parameters": parameters or []},
            "method": method,
            "headers": request_headers or [],
            "body": request_body
        },
        "response": {
            "status": status,
            "headers": response_headers or [],
            "body": response_body
        },
        "meta": {"environment": "test"}
    }
