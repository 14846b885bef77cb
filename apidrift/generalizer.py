"""
Statistical path generalization.

Suggests path templates for an endpoint from the literal paths of its most
recent traces. A segment token that occurs in less than ``threshold`` of the
sampled paths at its position is treated as a parameter; anything more
frequent is kept as a literal.
"""

from collections import defaultdict
from typing import Dict, List, Sequence, Tuple

from sqlalchemy.orm import Session

from apidrift.exceptions import NotFoundError
from apidrift.logger import get_logger
from apidrift.models import ApiEndpoint, ApiTrace
from apidrift.paths import tokenize

# Get logger
logger = get_logger("generalizer")

TRACE_LIMIT = 10000
THRESHOLD = 0.1
MAX_SUGGESTIONS = 100


def generalize_paths(paths: Sequence[str], threshold: float = THRESHOLD) -> List[Tuple[str, float]]:
    """
    Derive ranked path templates from a sample of literal paths.

    Args:
        paths: Literal request paths, all of the same segment depth
        threshold: Occurrence fraction below which a token is a parameter

    Returns:
        (template, confidence) pairs, best first. Confidence is the mean
        occurrence fraction of the source path's tokens, and the best
        confidence is kept when several paths produce the same template.
    """
    if not paths:
        return []

    token_lists = [tokenize(path) for path in paths]
    num_traces = len(token_lists)

    counters: Dict[int, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for tokens in token_lists:
        for position, token in enumerate(tokens):
            counters[position][token] += 1

    templates: Dict[str, float] = {}
    for tokens in token_lists:
        if not tokens:
            templates["/"] = 1.0
            continue

        parts = []
        total_fraction = 0.0
        param_count = 0
        for position, token in enumerate(tokens):
            fraction = counters[position][token] / num_traces
            total_fraction += fraction
            if fraction < threshold:
                param_count += 1
                parts.append(f"{{param{param_count}}}")
            else:
                parts.append(token)

        template = "/" + "/".join(parts)
        confidence = total_fraction / len(tokens)
        if confidence > templates.get(template, -1.0):
            templates[template] = confidence

    # sorted() is stable, so equal confidences keep first-seen order
    return sorted(templates.items(), key=lambda item: -item[1])


def suggest_path_templates(session: Session, endpoint_uuid: str,
                           trace_limit: int = TRACE_LIMIT,
                           threshold: float = THRESHOLD,
                           max_suggestions: int = MAX_SUGGESTIONS) -> List[Dict[str, object]]:
    """
    Suggest path templates for an endpoint from its recent traffic.

    Read-only: nothing is written.

    Args:
        session: Database session
        endpoint_uuid: Endpoint to generalize
        trace_limit: Maximum number of most recent traces to sample
        threshold: Occurrence fraction below which a token is a parameter
        max_suggestions: Number of templates returned

    Returns:
        List of {"template", "confidence"} dicts, best first

    Raises:
        NotFoundError: If the endpoint does not exist
    """
    endpoint = session.get(ApiEndpoint, endpoint_uuid)
    if endpoint is None:
        raise NotFoundError(f"Endpoint {endpoint_uuid} not found.", {"uuid": endpoint_uuid})

    rows = (
        session.query(ApiTrace.path)
        .filter(ApiTrace.api_endpoint_uuid == endpoint_uuid)
        .order_by(ApiTrace.created_at.desc())
        .limit(trace_limit)
        .all()
    )
    paths = [row.path for row in rows]
    logger.debug(f"Generalizing {len(paths)} sampled paths for endpoint {endpoint.path}")

    suggestions = generalize_paths(paths, threshold)[:max_suggestions]
    return [{"template": template, "confidence": confidence} for template, confidence in suggestions]
