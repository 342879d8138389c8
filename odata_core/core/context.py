"""
odata_core.core.context - Per-request context
=============================================

Carries what the execution core needs from the inbound HTTP request: URL,
precondition and Prefer headers, and the cancellation signal that is
propagated down to the storage layer.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from odata_core.core.errors import InternalError


@dataclass
class RequestContext:
    """
    Request-scoped data passed through pipelines, controllers and hooks.

    Parameters
    ----------
    url : str
        The full request URL (used to derive next and delta links)
    headers : mapping
        Request headers; lookups are case-insensitive
    cancel_event : threading.Event, optional
        Set by the HTTP layer when the client goes away
    deadline : float, optional
        ``time.monotonic()`` value after which the request is cancelled
    state : dict
        Free-form values for hooks (e.g. the authenticated principal)
    """

    url: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    cancel_event: Optional[threading.Event] = None
    deadline: Optional[float] = None
    state: Dict[str, Any] = field(default_factory=dict)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for k, v in self.headers.items():
            if k.lower() == wanted:
                return v
        return default

    @property
    def if_match(self) -> Optional[str]:
        return self.header("If-Match")

    @property
    def if_none_match(self) -> Optional[str]:
        return self.header("If-None-Match")

    @property
    def prefer(self) -> Optional[str]:
        return self.header("Prefer")

    @property
    def cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check_cancelled(self) -> None:
        """Raise if the request was cancelled or ran past its deadline."""
        if self.cancelled:
            raise InternalError("request was cancelled", code="RequestCancelled")

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs: Any) -> "RequestContext":
        return cls(deadline=time.monotonic() + float(seconds), **kwargs)
