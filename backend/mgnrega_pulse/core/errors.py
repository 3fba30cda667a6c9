"""
Error taxonomy shared by the data-freshness core and the HTTP layer.

Every error crossing the core boundary carries a machine-readable ``kind``
and a human message. The HTTP layer maps ``status_code`` onto the response.
"""

from typing import Any, Dict, Optional


class PulseError(Exception):
    """Base exception for the service."""

    kind = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "Internal error", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PulseError):
    """Bad input shape or range. Never retried."""

    kind = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(PulseError):
    kind = "NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ConflictError(PulseError):
    """Duplicate key on a non-idempotent insert path."""

    kind = "CONFLICT"
    status_code = 409

    def __init__(self, message: str = "Resource already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class UpstreamError(PulseError):
    """Base for failures talking to the government API."""

    kind = "UPSTREAM_ERROR"
    status_code = 502


class UpstreamTimeoutError(UpstreamError):
    kind = "UPSTREAM_TIMEOUT"
    status_code = 504

    def __init__(self, message: str = "Request timeout", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class UpstreamFailureError(UpstreamError):
    kind = "UPSTREAM_FAILURE"
    status_code = 502

    def __init__(self, message: str = "Upstream request failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ServiceUnavailableError(PulseError):
    """No data at any tier and the upstream could not provide it."""

    kind = "SERVICE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "Government API unavailable and no cached data found",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class StorageError(PulseError):
    """The durable store is unavailable. Fatal for the request."""

    kind = "STORAGE_ERROR"
    status_code = 500

    def __init__(self, message: str = "Storage unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
