"""Error taxonomy for the attribution engine.

Every error carries a stable ``category`` and ``code`` so that the reporting
boundary can surface failures without leaking internal exception text.
"""

from __future__ import annotations

from typing import Any


class AttributionError(Exception):
    """Base exception for attribution errors."""

    category = "internal"
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str = "", fields: dict[str, str] | None = None):
        super().__init__(message)
        self.message = message
        self.fields = fields or {}

    def to_payload(self) -> dict[str, Any]:
        """Render the error for API consumers."""
        payload: dict[str, Any] = {
            "category": self.category,
            "code": self.code,
            "message": self.message,
        }
        if self.fields:
            payload["fields"] = dict(self.fields)
        return payload


class ValidationError(AttributionError):
    """Raised when a touchpoint, conversion or spend record is malformed."""

    category = "validation"
    code = "VALIDATION_FAILED"


class InvalidParameters(ValidationError):
    """Raised when model configuration values are out of domain."""

    code = "INVALID_PARAMETERS"


class DataUnavailable(AttributionError):
    """Raised when the touchpoint or spend source cannot be reached."""

    category = "data_unavailable"
    code = "DATA_UNAVAILABLE"
    retryable = True


class Throttled(AttributionError):
    """Raised when the processing queue is full."""

    category = "throttled"
    code = "THROTTLED"
    retryable = True


class Conflict(AttributionError):
    """Raised on an attempt to mutate a persisted result version."""

    category = "conflict"
    code = "RESULT_VERSION_CONFLICT"


class NotFound(AttributionError):
    """Raised when a requested conversion, result or job does not exist."""

    category = "not_found"
    code = "NOT_FOUND"


def internal_error_payload() -> dict[str, Any]:
    """Payload used for unexpected failures at the API boundary."""
    return {
        "category": AttributionError.category,
        "code": AttributionError.code,
        "message": "An internal error occurred",
    }
