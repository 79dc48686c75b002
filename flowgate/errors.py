"""Error taxonomy shared by services and the HTTP layer."""

from __future__ import annotations

from typing import Any, Optional


class FlowgateError(Exception):
    """Base class for errors that map onto an API response."""

    status_code = 500
    error = "Internal error"

    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        self.message = message or self.error
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthenticationRequired(FlowgateError):
    status_code = 401
    error = "Authentication required"


class PermissionDenied(FlowgateError):
    status_code = 403
    error = "Permission denied"


class NotFound(FlowgateError):
    status_code = 404
    error = "Not found"


class ValidationFailed(FlowgateError):
    """Raised before any mutation when a request or payload is invalid.

    ``errors`` is a list of ``{"field": ..., "message": ...}`` entries; the
    field is ``None`` for payload-level problems.
    """

    status_code = 400
    error = "Validation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        self.errors = errors or []
        super().__init__(message, details=self.errors or None)


class Conflict(FlowgateError):
    status_code = 409
    error = "Conflict"


class Gone(FlowgateError):
    status_code = 410
    error = "Gone"


class ConfigurationError(FlowgateError):
    status_code = 500
    error = "Configuration error"


class EngineError(FlowgateError):
    """Wraps any failure reported by the external execution engine."""

    status_code = 502
    error = "Execution engine error"
