"""
Core module - configuration, database, request context, errors and outbound HTTP.
"""
from .config import Settings, get_settings
from .db import Base, get_session, get_session_factory, init_engine
from .errors import (
    Conflict,
    InputInvalid,
    InternalFailure,
    NotConfigured,
    NotFound,
    ServiceError,
    Unauthorized,
    UpstreamFailure,
    error_response,
)
from .http import get_http_client
from .request_context import (
    RequestContext,
    get_request_context,
    require_service_role,
    resolve_request_context,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_session",
    "get_session_factory",
    "init_engine",
    # Errors
    "ServiceError",
    "InputInvalid",
    "Unauthorized",
    "NotFound",
    "Conflict",
    "InternalFailure",
    "UpstreamFailure",
    "NotConfigured",
    "error_response",
    # HTTP
    "get_http_client",
    # Request Context
    "RequestContext",
    "get_request_context",
    "require_service_role",
    "resolve_request_context",
]
