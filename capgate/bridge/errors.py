"""
Error taxonomy for the gateway.

Two layers live here:

- Transport-level exceptions (``TransportError``, ``BackendCallError``) are
  raised by backend transports and never leave the bridge package.
- ``GatewayError`` subclasses are what callers see. Each carries a stable
  ``code`` and an HTTP status so the server can render it without guessing.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TransportError(Exception):
    """Raised when the connection to a backend fails (refused, closed, timed out)."""


class BackendCallError(Exception):
    """Raised when a backend reports a structured business failure."""

    def __init__(self, name: str, message: str):
        super().__init__(f"{name}: {message}")
        self.name = name
        self.message = message


class GatewayError(Exception):
    """Base class for every error the gateway reports to a caller."""

    code = "GatewayError"
    status_code = 500

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        operation: Optional[str] = None,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.backend = backend
        self.operation = operation
        self.field = field
        self.details = details or {}
        super().__init__(self.describe())

    def describe(self) -> str:
        """Message prefixed with the backend and operation involved."""
        where = self.backend or "-"
        if self.operation:
            where = f"{where}.{self.operation}"
        return f"[{where}] {self.message}"

    def to_dict(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "code": self.code,
            "message": self.describe(),
            "backend": self.backend,
            "operation": self.operation,
            "request_id": request_id,
        }
        if self.field is not None:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return {"error": body}


class BackendUnreachableError(GatewayError):
    code = "BackendUnreachable"
    status_code = 503


class BackendUnavailableError(GatewayError):
    code = "BackendUnavailable"
    status_code = 503


class BackendOverloadedError(GatewayError):
    code = "BackendOverloaded"
    status_code = 429


class UnknownRouteError(GatewayError):
    code = "UnknownRoute"
    status_code = 404


class PayloadValidationError(GatewayError):
    code = "ValidationError"
    status_code = 400


class SchemaViolationError(GatewayError):
    code = "SchemaViolation"
    status_code = 502


class InvocationTimeoutError(GatewayError):
    code = "InvocationTimeout"
    status_code = 504


class InvocationCancelledError(GatewayError):
    code = "InvocationCancelled"
    status_code = 499


class BusinessError(GatewayError):
    code = "BusinessError"
    status_code = 422


ERROR_CLASSES = (
    BackendUnreachableError,
    BackendUnavailableError,
    BackendOverloadedError,
    UnknownRouteError,
    PayloadValidationError,
    SchemaViolationError,
    InvocationTimeoutError,
    InvocationCancelledError,
    BusinessError,
)

# JSON schema of the error body, shared by route descriptors and the published document
ERROR_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["error"],
    "properties": {
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {"type": "string", "enum": [cls.code for cls in ERROR_CLASSES]},
                "message": {"type": "string"},
                "backend": {"type": ["string", "null"]},
                "operation": {"type": ["string", "null"]},
                "request_id": {"type": ["string", "null"]},
                "field": {"type": "string"},
                "details": {"type": "object"},
            },
        }
    },
}
