"""
Redacted field registry.

Block-field entries list the field paths (``req.body.password``,
``res.headers.set-cookie``, ...) that must never be stored or alerted on for
traffic matching a host, method and path template.
"""

import copy
import json
import re
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import literal, or_
from sqlalchemy.orm import Session

from apidrift.logger import get_logger
from apidrift.models import BlockFields
from apidrift.paths import compile_pattern, validate_path

# Get logger
logger = get_logger("block_fields")

REDACTED = "[REDACTED]"

_FIELD_TOKEN_RE = re.compile(r"\[\]|[^.\[\]]+")

_PAIR_SECTIONS = {
    "req.query": "request_parameters",
    "req.headers": "request_headers",
    "res.headers": "response_headers"
}
_BODY_SECTIONS = {
    "req.body": "request_body",
    "res.body": "response_body"
}


def get_block_fields_entry(session: Session, host: str, method: str,
                           path: str) -> Optional[BlockFields]:
    """
    Find the block-field entry that applies to a request path.

    An entry for the exact path wins over template entries; among templates
    the one with the fewest parameters wins.
    """
    entries = (
        session.query(BlockFields)
        .filter(
            BlockFields.host == host,
            BlockFields.method == method.upper(),
            or_(BlockFields.path == path, literal(path).regexp_match(BlockFields.path_regex))
        )
        .all()
    )
    if not entries:
        return None
    return min(entries, key=lambda e: (e.path != path, compile_pattern(e.path).number_params, e.path))


def get_blocked_paths(session: Session, host: str, method: str, path: str) -> List[str]:
    entry = get_block_fields_entry(session, host, method, path)
    return list(entry.disabled_paths or []) if entry else []


def set_block_fields(session: Session, host: str, method: str, path: str,
                     disabled_paths: Iterable[str]) -> BlockFields:
    """
    Create or replace the block-field entry for a path template.

    Args:
        session: Database session
        host: Host the entry applies to
        method: HTTP method
        path: Path template
        disabled_paths: Field paths to redact

    Returns:
        The stored BlockFields entry
    """
    pattern = compile_pattern(validate_path(path))
    method = method.upper()
    entry = (
        session.query(BlockFields)
        .filter(BlockFields.host == host, BlockFields.method == method, BlockFields.path == pattern.path)
        .one_or_none()
    )
    if entry is None:
        entry = BlockFields(host=host, method=method, path=pattern.path, path_regex=pattern.regex)
        session.add(entry)
    entry.disabled_paths = sorted(set(disabled_paths))
    session.flush()
    logger.info(f"Blocking {len(entry.disabled_paths)} fields for {method} {host}{pattern.path}")
    return entry


def is_field_blocked(field_path: str, blocked_paths: Iterable[str]) -> bool:
    """Return True when the field is, or is nested under, a blocked path."""
    for blocked in blocked_paths:
        if field_path == blocked or field_path.startswith(blocked + ".") or field_path.startswith(blocked + "["):
            return True
    return False


def _redact_node(node: Any, tokens: List[str]) -> Any:
    if not tokens:
        return REDACTED
    head, rest = tokens[0], tokens[1:]
    if head == "[]":
        if isinstance(node, list):
            return [_redact_node(item, rest) for item in node]
        return node
    if isinstance(node, dict) and head in node:
        node[head] = _redact_node(node[head], rest)
    return node


def _redact_body(body: Optional[str], tokens: List[str]) -> Optional[str]:
    if body is None or body == "":
        return body
    if not tokens:
        return REDACTED
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    return json.dumps(_redact_node(parsed, tokens))


def redact_blocked_fields(trace: Dict[str, Any], blocked_paths: Iterable[str]) -> Dict[str, Any]:
    """
    Return a copy of a queued trace with every blocked field replaced.

    Args:
        trace: Trace in queue form (``request_headers``, ``response_body``, ...)
        blocked_paths: Field paths to redact

    Returns:
        Redacted copy of the trace
    """
    redacted = copy.deepcopy(trace)
    for blocked in blocked_paths:
        for prefix, key in _PAIR_SECTIONS.items():
            if blocked.startswith(prefix + "."):
                name = blocked[len(prefix) + 1:]
                case_insensitive = prefix.endswith("headers")
                for pair in redacted.get(key) or []:
                    pair_name = pair.get("name", "")
                    if pair_name == name or (case_insensitive and pair_name.lower() == name.lower()):
                        pair["value"] = REDACTED
        for prefix, key in _BODY_SECTIONS.items():
            if blocked == prefix or blocked.startswith(prefix + ".") or blocked.startswith(prefix + "["):
                tokens = _FIELD_TOKEN_RE.findall(blocked[len(prefix):])
                redacted[key] = _redact_body(redacted.get(key), tokens)
    return redacted
