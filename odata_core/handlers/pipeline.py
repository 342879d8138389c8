"""
odata_core.handlers.pipeline - Collection execution pipeline
============================================================

Seven stages, each replaceable:

1. parse      - validate query options (400)
2. before_read - authorization hook, returns scopes (403)
3. count      - optional total count (500)
4. fetch      - ``$top + 1`` rows after the skip-token seek (500)
5. next_link  - paging decision and trim (500)
6. after_read - may replace the results (403)
7. write      - hand the result to the responder (500)

The number in parentheses is the status used when a stage fails with an
exception that does not carry its own (``ODataError`` subclasses keep
theirs). A stage that raises ``RequestHandled`` has already produced the
response; the orchestrator returns it and runs nothing else.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from odata_core.core.errors import (
    AuthorizationError,
    InternalError,
    ODataError,
    RequestHandled,
    ValidationError,
    as_odata_error,
)
from odata_core.metadata.descriptors import EntityDescriptor
from odata_core.query.options import QueryOptions
from odata_core.storage.base import Row, Scope


logger = logging.getLogger("odata_core.pipeline")


ParseFn = Callable[[], QueryOptions]
BeforeReadFn = Callable[[QueryOptions], Optional[List[Scope]]]
CountFn = Callable[[QueryOptions, List[Scope]], Optional[int]]
FetchFn = Callable[[QueryOptions, List[Scope]], List[Row]]
NextLinkFn = Callable[[QueryOptions, List[Row]], Tuple[Optional[str], List[Row]]]
AfterReadFn = Callable[[QueryOptions, List[Row]], Optional[List[Row]]]
WriteFn = Callable[[QueryOptions, List[Row], Optional[int], Optional[str]], Any]


STAGE_DEFAULTS: Dict[str, Tuple[Type[ODataError], str]] = {
    "parse": (ValidationError, "Invalid query options"),
    "before_read": (AuthorizationError, "Authorization failed"),
    "count": (InternalError, "Database error"),
    "fetch": (InternalError, "Database error"),
    "next_link": (InternalError, "Internal error"),
    "after_read": (AuthorizationError, "Authorization failed"),
    "write": (InternalError, "Internal error"),
}


@dataclass
class CollectionResult:
    """
    What a collection read produces for the response layer.

    ``rows`` are keyed by field name. For delta responses ``delta_entries``
    holds the ready-made entries (including ``@odata.removed`` ones).
    """

    descriptor: EntityDescriptor
    rows: List[Row] = field(default_factory=list)
    count: Optional[int] = None
    next_link: Optional[str] = None
    delta_link: Optional[str] = None
    delta_entries: Optional[List[Dict[str, Any]]] = None
    preference_applied: str = ""

    def to_payload(self) -> Dict[str, Any]:
        """Minimal OData JSON body."""
        body: Dict[str, Any] = {}
        if self.count is not None:
            body["@odata.count"] = self.count
        if self.delta_entries is not None:
            body["value"] = list(self.delta_entries)
        else:
            body["value"] = [self.descriptor.to_wire(r) for r in self.rows]
        if self.next_link:
            body["@odata.nextLink"] = self.next_link
        if self.delta_link:
            body["@odata.deltaLink"] = self.delta_link
        return body


@dataclass
class CollectionExecutionContext:
    """
    Stage callables for one collection request.

    ``parse_query_options``, ``fetch`` and ``write_response`` are required;
    the optional stages are skipped when None. ``write_error`` receives the
    classified error; without it the error is raised to the caller.
    """

    descriptor: EntityDescriptor
    parse_query_options: ParseFn
    fetch: FetchFn
    write_response: WriteFn
    before_read: Optional[BeforeReadFn] = None
    count: Optional[CountFn] = None
    next_link: Optional[NextLinkFn] = None
    after_read: Optional[AfterReadFn] = None
    write_error: Optional[Callable[[ODataError], Any]] = None


def execute_collection_query(ctx: CollectionExecutionContext) -> Any:
    """
    Run the pipeline.

    Returns
    -------
    Any
        Whatever ``write_response`` returned, the response carried by a
        ``RequestHandled``, or (with ``write_error``) the error response

    Raises
    ------
    ODataError
        The first stage failure, classified, when ``write_error`` is None
    """
    if ctx is None or ctx.parse_query_options is None or ctx.fetch is None or ctx.write_response is None:
        raise InternalError("collection pipeline requires parse_query_options, fetch and write_response")

    entity_set = ctx.descriptor.entity_set
    stage = "parse"
    started = time.perf_counter()
    try:
        options = ctx.parse_query_options()

        stage = "before_read"
        scopes: List[Scope] = []
        if ctx.before_read is not None:
            scopes = list(ctx.before_read(options) or [])

        stage = "count"
        total: Optional[int] = None
        if ctx.count is not None:
            total = ctx.count(options, scopes)

        stage = "fetch"
        rows = ctx.fetch(options, scopes)

        stage = "next_link"
        next_link: Optional[str] = None
        if ctx.next_link is not None:
            next_link, rows = ctx.next_link(options, rows)

        stage = "after_read"
        if ctx.after_read is not None:
            override = ctx.after_read(options, rows)
            if override is not None:
                rows = override

        stage = "write"
        response = ctx.write_response(options, rows, total, next_link)
    except RequestHandled as handled:
        logger.debug(f"{entity_set}: stage {stage} handled the request")
        return handled.response
    except Exception as e:
        default, code = STAGE_DEFAULTS[stage]
        err = as_odata_error(e, default, code)
        if err.status >= 500:
            logger.error(f"{entity_set}: stage {stage} failed: {e!r}")
        else:
            logger.debug(f"{entity_set}: stage {stage} rejected request ({err.status}): {err.message}")
        if ctx.write_error is not None:
            return ctx.write_error(err)
        if err is e:
            raise
        raise err from e

    logger.debug(f"{entity_set}: {len(rows)} row(s) in {(time.perf_counter() - started) * 1000:.1f} ms")
    return response
