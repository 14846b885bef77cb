"""
Trace ingestion.

Incoming request/response pairs are validated, redacted and pushed onto a
Redis list; :mod:`apidrift.analyzer` consumes them. When the queue is backed
up, new traces are dropped without an error.
"""

import json
from typing import Any, Dict, List, Optional

import redis
from sqlalchemy.orm import sessionmaker

from apidrift.block_fields import get_blocked_paths, redact_blocked_fields
from apidrift.config import get_setting
from apidrift.database import transaction
from apidrift.exceptions import ApiDriftError, BadRequestError, InternalFailure
from apidrift.logger import get_logger
from apidrift.models import utcnow
from apidrift.paths import validate_path

# Get logger
logger = get_logger("ingest")

TRACES_QUEUE = "traces_queue"
MAX_QUEUE_LENGTH = 1000


class TraceQueue:
    """A Redis list carrying JSON ``{"ctx": ..., "trace": ...}`` payloads."""

    def __init__(self, client: redis.Redis, name: str = TRACES_QUEUE):
        self.client = client
        self.name = name

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "TraceQueue":
        client = redis.Redis(
            host=get_setting(config, "redis.host", "localhost"),
            port=get_setting(config, "redis.port", 6379),
            db=get_setting(config, "redis.db", 0),
            password=get_setting(config, "redis.password"),
            decode_responses=True
        )
        return cls(client, get_setting(config, "redis.queue", TRACES_QUEUE))

    def length(self) -> int:
        return int(self.client.llen(self.name))

    def push(self, payload: Dict[str, Any]) -> None:
        self.client.rpush(self.name, json.dumps(payload))

    def pop(self, timeout: int = 1) -> Optional[Dict[str, Any]]:
        """Block up to ``timeout`` seconds for the next payload."""
        item = self.client.blpop([self.name], timeout=timeout)
        if item is None:
            return None
        return json.loads(item[1])


def _pairs(values: Any, field_name: str) -> List[Dict[str, str]]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise BadRequestError(f"{field_name} must be a list of name/value pairs.")
    pairs = []
    for item in values:
        if not isinstance(item, dict) or "name" not in item:
            raise BadRequestError(f"{field_name} must be a list of name/value pairs.")
        value = item.get("value")
        pairs.append({"name": str(item["name"]), "value": "" if value is None else str(value)})
    return pairs


def _body(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def build_queued_trace(trace_params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate an incoming trace payload and flatten it into queue form.

    Args:
        trace_params: {"request": {...}, "response": {...}, "meta": {...}}

    Returns:
        Flat trace dictionary

    Raises:
        BadRequestError: If the payload is malformed (InvalidPathError for the path)
    """
    if not isinstance(trace_params, dict):
        raise BadRequestError("Trace must be an object.")
    request = trace_params.get("request") or {}
    response = trace_params.get("response") or {}
    url = request.get("url") or {}

    host = url.get("host")
    if not host:
        raise BadRequestError("Trace is missing request.url.host.")
    method = str(request.get("method") or "").upper()
    if not method:
        raise BadRequestError("Trace is missing request.method.")
    try:
        status = int(response.get("status"))
    except (TypeError, ValueError):
        raise BadRequestError("Trace is missing a numeric response.status.")

    return {
        "path": validate_path(url.get("path")),
        "method": method,
        "host": host,
        "request_parameters": _pairs(url.get("parameters"), "request.url.parameters"),
        "request_headers": _pairs(request.get("headers"), "request.headers"),
        "request_body": _body(request.get("body")),
        "response_status": status,
        "response_headers": _pairs(response.get("headers"), "response.headers"),
        "response_body": _body(response.get("body")),
        "meta": trace_params.get("meta") or {},
        "created_at": utcnow().isoformat()
    }


class LogRequestService:
    """Accepts traces and queues them for analysis."""

    def __init__(self, queue: TraceQueue, session_factory: Optional[sessionmaker] = None,
                 max_queue_length: int = MAX_QUEUE_LENGTH):
        self.queue = queue
        self.session_factory = session_factory
        self.max_queue_length = max_queue_length

    def _queue_is_full(self) -> bool:
        try:
            length = self.queue.length()
        except redis.RedisError as e:
            logger.warning(f"Unable to read length of queue {self.queue.name}: {str(e)}")
            length = 0
        return length > self.max_queue_length

    def _blocked_paths(self, trace: Dict[str, Any]) -> List[str]:
        if self.session_factory is None:
            return []
        with transaction(self.session_factory) as session:
            return get_blocked_paths(session, trace["host"], trace["method"], trace["path"])

    def log_request(self, ctx: Optional[Dict[str, Any]], trace_params: Dict[str, Any]) -> bool:
        """
        Validate, redact and queue one trace.

        Args:
            ctx: Caller context forwarded to the analyzer
            trace_params: Incoming trace payload

        Returns:
            True if the trace was queued, False if it was dropped for backpressure

        Raises:
            BadRequestError: If the payload is malformed
            InternalFailure: If the trace could not be queued
        """
        if self._queue_is_full():
            logger.debug(f"Queue {self.queue.name} is full, dropping trace")
            return False

        try:
            trace = build_queued_trace(trace_params)
            blocked = self._blocked_paths(trace)
            if blocked:
                trace = redact_blocked_fields(trace, blocked)
            self.queue.push({"ctx": ctx or {}, "trace": trace})
        except ApiDriftError:
            raise
        except Exception as e:
            logger.error(f"Failed to queue trace: {str(e)}")
            raise InternalFailure("Failed to queue trace.") from e
        return True

    def log_request_batch(self, ctx: Optional[Dict[str, Any]], batch: List[Dict[str, Any]]) -> int:
        """Queue a list of traces; returns how many were queued."""
        if not isinstance(batch, list):
            raise BadRequestError("Trace batch must be a list.")
        return sum(1 for trace_params in batch if self.log_request(ctx, trace_params))
