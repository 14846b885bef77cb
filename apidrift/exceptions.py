"""
Custom exceptions for the API drift monitor.

Every caller-facing error carries the HTTP status code a transport layer
should map it to, plus a dictionary of structured details.
"""

from typing import Any, Dict, Optional


class ApiDriftError(Exception):
    """Base exception for all monitor errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status_code,
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details
        }


class BadRequestError(ApiDriftError):
    """Exception raised for malformed caller input."""
    status_code = 400


class InvalidPathError(BadRequestError):
    """Exception raised for malformed path templates or bad path input."""
    pass


class NotFoundError(ApiDriftError):
    """Exception raised when an endpoint or spec does not exist."""
    status_code = 404


class ConflictError(ApiDriftError):
    """Exception raised when a path is owned by another user-declared spec."""
    status_code = 409


class UnprocessableContractError(ApiDriftError):
    """Exception raised for unparseable, unsupported or invalid spec documents."""
    status_code = 422


class InternalFailure(ApiDriftError):
    """Exception raised for unexpected persistence or logic failures."""
    status_code = 500


class ConfigError(ApiDriftError):
    """Exception raised for configuration errors."""
    pass
