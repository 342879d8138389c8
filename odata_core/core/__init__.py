"""
odata_core.core - Configuration, errors and request context
===========================================================

- ServiceConfig: process-wide settings (service root, paging, FK policy)
- RequestContext: headers, URL and cancellation for one request
- ODataError and subclasses: the error taxonomy with HTTP statuses
- etag: ETag generation and precondition matching

"""

from odata_core.core import etag
from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import (
    AuthorizationError,
    FeatureNotImplemented,
    HookError,
    InternalError,
    MethodNotAllowed,
    NotFoundError,
    ODataError,
    PreconditionFailed,
    RequestHandled,
    ValidationError,
    as_odata_error,
    status_for,
)

__all__ = [
    "etag",
    "ServiceConfig",
    "RequestContext",
    "ODataError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "MethodNotAllowed",
    "PreconditionFailed",
    "FeatureNotImplemented",
    "InternalError",
    "HookError",
    "RequestHandled",
    "as_odata_error",
    "status_for",
]
