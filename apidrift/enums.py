"""
Shared enumerations and the risk score ordering.
"""

from enum import Enum
from typing import Optional


class RestMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    TRACE = "TRACE"
    CONNECT = "CONNECT"


class RiskScore(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    NEW_ENDPOINT = "New Endpoint"
    SPEC_DIFF_REQUEST = "Request Spec Diff"
    SPEC_DIFF_RESPONSE = "Response Spec Diff"
    PII_DATA_DETECTED = "PII Data Detected"
    UNSECURED_ENDPOINT_DETECTED = "Unsecured Endpoint Detected"


class SpecExtension(str, Enum):
    JSON = "json"
    YAML = "yaml"


class ViolationKind(str, Enum):
    MISSING_FIELD = "MISSING_FIELD"
    EXTRA_FIELD = "EXTRA_FIELD"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    ENUM_MISMATCH = "ENUM_MISMATCH"
    UNDECLARED_STATUS = "UNDECLARED_STATUS"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"


# Alerts that describe one endpoint's traffic shape; these are dropped rather
# than repointed when their endpoint is superseded.
STRUCTURAL_ALERT_TYPES = (
    AlertType.NEW_ENDPOINT,
    AlertType.SPEC_DIFF_REQUEST,
    AlertType.SPEC_DIFF_RESPONSE
)

SPEC_DIFF_ALERT_TYPES = (
    AlertType.SPEC_DIFF_REQUEST,
    AlertType.SPEC_DIFF_RESPONSE
)

RISK_SCORE_ORDER = [
    RiskScore.NONE,
    RiskScore.LOW,
    RiskScore.MEDIUM,
    RiskScore.HIGH,
    RiskScore.CRITICAL
]


def risk_rank(score: Optional[str]) -> int:
    """
    Rank a risk score on the total order NONE < LOW < MEDIUM < HIGH < CRITICAL.

    A missing score means "no data" and ranks below NONE.
    """
    if score is None:
        return -1
    return RISK_SCORE_ORDER.index(RiskScore(score))


def max_risk(*scores: Optional[str]) -> Optional[str]:
    """Return the highest ranked score, or None when every score is missing."""
    best = None
    for score in scores:
        if risk_rank(score) > risk_rank(best):
            best = score
    if best is None:
        return None
    return RiskScore(best).value
