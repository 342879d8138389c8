"""
odata_core.core.errors - Error taxonomy
=======================================

Every failure raised by the execution core is an ``ODataError`` subclass that
knows its HTTP status and OData error code. The response layer only needs
``status`` and ``to_dict()`` to write the error body.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ODataError(RuntimeError):
    """
    Base class for errors that map onto an OData error response.

    Attributes
    ----------
    status : int
        HTTP status code
    code : str
        OData error code (short, human readable)
    message : str
        Detail message
    target : str, optional
        The entity or property the error refers to
    details : list of dict, optional
        Additional error details
    """

    status: int = 500
    default_code: str = "Internal error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        target: Optional[str] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.target = target
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        """Render the OData JSON error body."""
        err: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.target:
            err["target"] = self.target
        if self.details:
            err["details"] = list(self.details)
        return {"error": err}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(status={self.status}, code={self.code!r}, message={self.message!r})"


class ValidationError(ODataError):
    """Malformed bind/ref/reference syntax or wrong payload shape."""

    status = 400
    default_code = "Bad request"


class AuthorizationError(ODataError):
    """A before/after hook rejected the request."""

    status = 403
    default_code = "Authorization failed"


class NotFoundError(ODataError):
    """Missing entity, binding target or navigation property."""

    status = 404
    default_code = "Entity not found"


class MethodNotAllowed(ODataError):
    status = 405
    default_code = "Method not allowed"


class PreconditionFailed(ODataError):
    """If-Match did not match the entity's current ETag."""

    status = 412
    default_code = "Precondition failed"


class FeatureNotImplemented(ODataError):
    """A protocol feature was requested that this service does not enable."""

    status = 501
    default_code = "Not implemented"


class InternalError(ODataError):
    """Storage or codec failure."""

    status = 500
    default_code = "Internal error"


class HookError(ODataError):
    """
    Error raised by user hooks that want to choose the response status.

    Hooks may raise any exception to reject a request; plain exceptions are
    reported as 403. Raising ``HookError(status=...)`` overrides that.
    """

    status = 403
    default_code = "Authorization failed"

    def __init__(self, message: str, *, status: Optional[int] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        if status is not None:
            self.status = int(status)


class RequestHandled(Exception):
    """
    Raised by a pipeline stage that already produced the final response.

    The orchestrator returns ``response`` as-is and runs no further stages.
    """

    def __init__(self, response: Any):
        super().__init__("request already handled")
        self.response = response


def status_for(exc: BaseException) -> int:
    """Return the HTTP status an exception maps to (500 for anything unknown)."""
    if isinstance(exc, ODataError):
        return exc.status
    return 500


def as_odata_error(
    exc: BaseException,
    default: type = InternalError,
    default_code: Optional[str] = None,
) -> ODataError:
    """
    Classify an arbitrary exception.

    ``ODataError`` instances pass through untouched; anything else is wrapped
    in ``default`` so it carries a status. The original exception is chained.
    """
    if isinstance(exc, ODataError):
        return exc
    wrapped = default(str(exc) or exc.__class__.__name__, code=default_code)
    wrapped.__cause__ = exc
    return wrapped
