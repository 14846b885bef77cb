"""
Path tokenizing and pattern matching.

Literal request paths (``/users/123``) and path templates (``/users/{id}``)
are compared segment by segment. A ``{name}`` segment matches any single
non-empty literal segment, and two paths can only match when they have the
same number of segments.
"""

import re
from typing import Any, List, Optional

from apidrift.exceptions import InvalidPathError

PARAMETER_TOKEN_RE = re.compile(r"^\{[^/{}]+\}$")
SEGMENT_REGEX = "[^/]+"

_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?$")


def is_parameter_token(segment: str) -> bool:
    """Return True when a segment is a ``{name}`` placeholder."""
    return bool(PARAMETER_TOKEN_RE.match(segment))


def tokenize(path: str) -> List[str]:
    """
    Split a path into its ordered segments.

    Leading and trailing slashes are ignored, so ``/`` has no segments.

    Args:
        path: Literal path or path template

    Returns:
        List of segment tokens

    Raises:
        InvalidPathError: If the path is empty or contains an empty segment
    """
    if path is None or not str(path).strip():
        raise InvalidPathError("No path provided.", {"path": path})

    stripped = str(path).strip().strip("/")
    if not stripped:
        return []

    tokens = stripped.split("/")
    if any(token == "" for token in tokens):
        raise InvalidPathError(f"Path '{path}' contains an empty segment.", {"path": path})
    return tokens


def validate_path(path: str, num_tokens: Optional[int] = None) -> str:
    """
    Validate a path template and return its canonical form.

    The canonical form has a single leading slash and no trailing slash.

    Args:
        path: Path template to validate
        num_tokens: Required number of segments, if any

    Returns:
        Canonical path string

    Raises:
        InvalidPathError: With a human-readable reason when the path is rejected
    """
    if not isinstance(path, str):
        raise InvalidPathError("Path must be a string.", {"path": path})

    tokens = tokenize(path)
    seen_params = set()
    for token in tokens:
        if is_parameter_token(token):
            name = token[1:-1]
            if name in seen_params:
                raise InvalidPathError(
                    f"Path parameter '{name}' appears more than once in '{path}'.",
                    {"path": path}
                )
            seen_params.add(name)
        elif "{" in token or "}" in token:
            raise InvalidPathError(
                f"Invalid parameter segment '{token}' in '{path}'. "
                "Parameters must look like {name}.",
                {"path": path}
            )

    if num_tokens is not None and len(tokens) != num_tokens:
        raise InvalidPathError(
            f"Path '{path}' must have exactly {num_tokens} segments, found {len(tokens)}.",
            {"path": path, "expected_segments": num_tokens}
        )

    return "/" + "/".join(tokens)


class PathPattern:
    """A compiled path template."""

    def __init__(self, path: str):
        self.tokens = tokenize(path)
        self.path = "/" + "/".join(self.tokens)
        self.number_params = sum(1 for t in self.tokens if is_parameter_token(t))
        self.regex = build_path_regex(self.tokens)
        self._compiled = re.compile(self.regex)

    @property
    def depth(self) -> int:
        return len(self.tokens)

    def matches(self, literal_path: str) -> bool:
        """Return True when the literal path is an instance of this template."""
        try:
            return bool(self._compiled.match("/" + "/".join(tokenize(literal_path))))
        except InvalidPathError:
            return False

    def overlaps(self, other: "PathPattern") -> bool:
        return patterns_overlap(self, other)

    def __repr__(self):
        return f"PathPattern({self.path!r})"


def build_path_regex(tokens: List[str]) -> str:
    """Build the anchored regex stored alongside an endpoint's path template."""
    if not tokens:
        return "^/$"
    parts = [SEGMENT_REGEX if is_parameter_token(t) else re.escape(t) for t in tokens]
    return "^/" + "/".join(parts) + "$"


def compile_pattern(path: str) -> PathPattern:
    return PathPattern(path)


def patterns_overlap(a: PathPattern, b: PathPattern) -> bool:
    """
    Return True when some literal path is matched by both patterns.

    This holds when both have the same depth and, at every position, either
    side is a parameter or both literals are equal.
    """
    if a.depth != b.depth:
        return False
    for left, right in zip(a.tokens, b.tokens):
        if is_parameter_token(left) or is_parameter_token(right):
            continue
        if left != right:
            return False
    return True


def parse_path_parameter(segment: str) -> Any:
    """
    Coerce a literal path segment to a number or boolean where possible.

    Never fails; anything that is not a number or boolean comes back unchanged.
    """
    if _INT_RE.match(segment):
        return int(segment)
    if _FLOAT_RE.match(segment):
        return float(segment)
    if segment == "true":
        return True
    if segment == "false":
        return False
    return segment
