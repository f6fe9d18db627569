"""
Error taxonomy and JSON error bodies.

Every handler failure is raised as a ServiceError subclass and rendered by the
exception handlers registered in main.py. All error responses share one shape:

    {"error": "Human-readable message", ...extra}

`extra` carries additional fields; main.ERROR_FLAGS adds the per-endpoint
flags clients rely on, e.g. {"success": false} or {"paid": false}.

STATUS CODES:
    - 400 InputInvalid:     malformed JSON, missing field, non-positive amount
    - 401 Unauthorized:     missing or invalid bearer token
    - 404 NotFound:         no matching booking, claim or tenant
    - 409 Conflict:         claim already owned by another user
    - 500 InternalFailure:  database write error, unexpected exception
    - 502 UpstreamFailure:  non-2xx from a payment or email provider
    - 503 NotConfigured:    provider credentials missing for the requested scope
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP status and JSON body."""

    status_code: int = 500

    def __init__(self, message: str, extra: Optional[dict[str, Any]] = None):
        self.message = message
        self.extra = dict(extra or {})
        super().__init__(message)


class InputInvalid(ServiceError):
    status_code = 400


class Unauthorized(ServiceError):
    status_code = 401


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class InternalFailure(ServiceError):
    status_code = 500


class UpstreamFailure(ServiceError):
    status_code = 502


class NotConfigured(ServiceError):
    status_code = 503


def error_response(message: str, extra: Optional[dict[str, Any]] = None) -> dict:
    """Create the standard error body."""
    body: dict[str, Any] = {"error": message}
    if extra:
        body.update(extra)
    return body
