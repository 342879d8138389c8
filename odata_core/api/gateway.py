"""
odata_core.api.gateway - FastAPI development gateway
====================================================

Optional HTTP front end over the execution core. Routing and JSON
formatting live here; every decision about paging, binding, preconditions
and errors is made by the handlers.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

from fastapi import Body, FastAPI, Path as PathParam, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from odata_core import __version__
from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import FeatureNotImplemented, NotFoundError, ODataError, ValidationError
from odata_core.handlers.collection import CollectionReader
from odata_core.handlers.entity import EntityReader, EntityResult
from odata_core.handlers.mutation import MutationController, MutationResult
from odata_core.handlers.pipeline import CollectionResult
from odata_core.handlers.refs import ReferenceController
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.options import FilterExpression, QueryOptions
from odata_core.query.references import parse_entity_reference
from odata_core.storage.base import RowStore
from odata_core.tracking.tracker import ChangeTracker
from odata_core.api import sample
from odata_core.api.models import (
    ERROR_RESPONSES,
    EXAMPLE_ENTITY_SET,
    EXAMPLE_KEY_SEGMENT,
    EntitySetInfo,
    ReferenceBody,
    ServiceDocument,
)


logger = logging.getLogger("odata_core.api")

FilterParser = Callable[[str], FilterExpression]


class ODataGateway:
    """
    Handlers for one registry/store pair.

    Parameters
    ----------
    registry : EntityRegistry
    store : RowStore
    config : ServiceConfig, optional
        Defaults to ``ServiceConfig.from_env()``
    tracker : ChangeTracker, optional
        Every entity set that tracks changes is registered with it
    filter_parser : callable, optional
        ``$filter`` text -> ``FilterExpression``. Without one, ``$filter``
        is answered with 501.
    """

    def __init__(
        self,
        registry: EntityRegistry,
        store: RowStore,
        config: Optional[ServiceConfig] = None,
        tracker: Optional[ChangeTracker] = None,
        filter_parser: Optional[FilterParser] = None,
    ):
        self.registry = registry
        self.store = store
        self.config = config or ServiceConfig.from_env()
        self.tracker = tracker
        self.filter_parser = filter_parser

        self.reader = CollectionReader(registry, store, self.config, tracker)
        self.entities = EntityReader(registry, store, self.config)
        self.writer = MutationController(registry, store, self.config, tracker)
        self.refs = ReferenceController(registry, store, self.config, tracker, self.writer.resolver)

        if tracker is not None:
            for descriptor in registry:
                if descriptor.track_changes:
                    tracker.register(descriptor.entity_set)

    @property
    def prefix(self) -> str:
        """URL path of the service root, without the trailing slash."""
        return urlsplit(self.config.service_root).path.rstrip("/")

    def context(self, request: Request) -> RequestContext:
        return RequestContext(url=str(request.url), headers=dict(request.headers))

    def options(self, request: Request) -> QueryOptions:
        """
        Query options from the request URL.

        Raises
        ------
        ValidationError
            Malformed scalar options or ``$filter``
        FeatureNotImplemented
            ``$filter`` without a configured parser
        """
        params = request.query_params
        try:
            options = QueryOptions.from_params(params)
        except ValueError as e:
            raise ValidationError(str(e), code="Invalid query options") from e
        raw_filter = params.get("$filter")
        if raw_filter:
            if self.filter_parser is None:
                raise FeatureNotImplemented("$filter is not enabled on this service", code="Unsupported query option")
            try:
                options.filter = self.filter_parser(raw_filter)
            except ValueError as e:
                raise ValidationError(f"invalid $filter: {e}", code="Invalid $filter") from e
        return options

    # ---------------- response formatting ----------------

    def context_url(self, fragment: str) -> str:
        return f"{self.config.service_root}$metadata#{fragment}"

    def collection_response(self, result: CollectionResult) -> JSONResponse:
        entity_set = result.descriptor.entity_set
        fragment = f"{entity_set}/$delta" if result.delta_entries is not None else entity_set
        body: Dict[str, Any] = {"@odata.context": self.context_url(fragment)}
        body.update(result.to_payload())
        headers = {"Preference-Applied": result.preference_applied} if result.preference_applied else {}
        return JSONResponse(jsonable_encoder(body), headers=headers)

    def entity_response(self, result: EntityResult) -> Response:
        headers = {"ETag": result.etag} if result.etag else {}
        if result.status == 304:
            return Response(status_code=304, headers=headers)
        body: Dict[str, Any] = {"@odata.context": self.context_url(f"{result.descriptor.entity_set}/$entity")}
        body.update(result.to_payload() or {})
        return JSONResponse(jsonable_encoder(body), headers=headers)

    def mutation_response(self, result: MutationResult) -> Response:
        payload = result.to_payload()
        if payload is None:
            return Response(status_code=result.status, headers=result.headers)
        body: Dict[str, Any] = {"@odata.context": self.context_url(f"{result.descriptor.entity_set}/$entity")}
        body.update(payload)
        return JSONResponse(jsonable_encoder(body), status_code=result.status, headers=result.headers)


def split_segment(segment: str) -> Tuple[str, Optional[str]]:
    """``Orders`` -> ("Orders", None); ``Orders(1)`` -> ("Orders", "1")."""
    if "(" not in segment:
        return segment, None
    return parse_entity_reference(segment)


def default_gateway() -> ODataGateway:
    """The seeded demo service, configured from the environment."""
    config = ServiceConfig.from_env()
    registry, store, tracker = sample.build_service()
    return ODataGateway(registry, store, config, tracker)


def create_app(gateway: Optional[ODataGateway] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Parameters
    ----------
    gateway : ODataGateway, optional
        Service to expose. If None, the demo service is built from the
        environment.

    Returns
    -------
    FastAPI
        Configured FastAPI application
    """
    gw = gateway or default_gateway()
    prefix = gw.prefix

    app = FastAPI(
        title="OData Execution Core Gateway",
        description="""
## OData v4.01 development gateway

Collection reads with server-driven paging, `@odata.bind` on create and
update, ETag preconditions and `$ref` relationship edits.

### Quick Start
- `GET Orders?$top=2` and follow `@odata.nextLink`
- `POST Orders` with `{"Customer@odata.bind": "Customers(5)"}`
- `PUT Orders(1)/Customer/$ref` with `{"@odata.id": "Customers(2)"}`
        """,
        version=__version__,
        openapi_tags=[
            {"name": "Service", "description": "Service document and health"},
            {"name": "Entities", "description": "Entity set and entity operations"},
            {"name": "References", "description": "Relationship edges ($ref)"},
        ],
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "Location", "OData-EntityId", "Preference-Applied"],
    )

    @app.exception_handler(ODataError)
    def odata_error(request: Request, exc: ODataError) -> JSONResponse:
        return JSONResponse(status_code=exc.status, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        err = ValidationError("request body is not valid", details=jsonable_encoder(exc.errors()))
        return JSONResponse(status_code=err.status, content=jsonable_encoder(err.to_dict()))

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Any) -> Any:
        started = time.perf_counter()
        response = await call_next(request)
        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({(time.perf_counter() - started) * 1000:.1f} ms)"
        )
        return response

    # -------------------------------------------------------------------------
    # Service
    # -------------------------------------------------------------------------

    @app.get("/health", tags=["Service"])
    def health() -> Dict[str, Any]:
        """Health check endpoint."""
        return {"ok": True, "version": __version__}

    @app.get(prefix + "/", tags=["Service"], response_model=ServiceDocument, response_model_by_alias=True)
    def service_document() -> ServiceDocument:
        return ServiceDocument(
            context=gw.context_url("").rstrip("#"),
            value=[EntitySetInfo(name=name, url=name) for name in gw.registry.entity_sets()],
        )

    # -------------------------------------------------------------------------
    # Entity sets and entities
    # -------------------------------------------------------------------------

    @app.get(prefix + "/{segment}", tags=["Entities"], responses=ERROR_RESPONSES)
    def read(
        request: Request,
        segment: str = PathParam(..., examples=[EXAMPLE_ENTITY_SET, EXAMPLE_KEY_SEGMENT]),
    ) -> Response:
        """Read an entity set (``Orders``) or one entity (``Orders(1)``)."""
        entity_set, key = split_segment(segment)
        ctx, options = gw.context(request), gw.options(request)
        if key is None:
            return gw.reader.read(ctx, entity_set, options, responder=gw.collection_response)
        return gw.entity_response(gw.entities.read(ctx, entity_set, key, options))

    @app.post(prefix + "/{segment}", tags=["Entities"], status_code=201, responses=ERROR_RESPONSES)
    def create(
        request: Request,
        segment: str = PathParam(..., examples=[EXAMPLE_ENTITY_SET]),
        payload: Any = Body(None),
    ) -> Response:
        """Create an entity; ``@odata.bind`` entries link it on the way in."""
        entity_set, key = split_segment(segment)
        if key is not None:
            raise ValidationError("POST must address an entity set, not an entity")
        return gw.mutation_response(gw.writer.create(gw.context(request), entity_set, payload))

    @app.patch(prefix + "/{segment}", tags=["Entities"], responses=ERROR_RESPONSES)
    def patch(
        request: Request,
        segment: str = PathParam(..., examples=[EXAMPLE_KEY_SEGMENT]),
        payload: Any = Body(None),
    ) -> Response:
        entity_set, key = _entity(segment)
        return gw.mutation_response(gw.writer.update(gw.context(request), entity_set, key, payload))

    @app.put(prefix + "/{segment}", tags=["Entities"], responses=ERROR_RESPONSES)
    def put(
        request: Request,
        segment: str = PathParam(..., examples=[EXAMPLE_KEY_SEGMENT]),
        payload: Any = Body(None),
    ) -> Response:
        entity_set, key = _entity(segment)
        return gw.mutation_response(gw.writer.update(gw.context(request), entity_set, key, payload, replace=True))

    @app.delete(prefix + "/{segment}", tags=["Entities"], status_code=204, responses=ERROR_RESPONSES)
    def delete(request: Request, segment: str = PathParam(..., examples=[EXAMPLE_KEY_SEGMENT])) -> Response:
        entity_set, key = _entity(segment)
        return gw.mutation_response(gw.writer.delete(gw.context(request), entity_set, key))

    @app.get(prefix + "/{segment}/{navigation}", tags=["Entities"], responses=ERROR_RESPONSES)
    def read_navigation(
        request: Request,
        segment: str = PathParam(..., examples=[EXAMPLE_KEY_SEGMENT]),
        navigation: str = PathParam(..., examples=["Products"]),
    ) -> Response:
        """Related entities: a paged collection, or the single related entity."""
        entity_set, key = _entity(segment)
        ctx, options = gw.context(request), gw.options(request)
        nav = gw.registry.by_set(entity_set).find_navigation(navigation)
        if nav is None:
            raise NotFoundError(f"navigation property '{navigation}' not found on '{entity_set}'", target=navigation)
        if nav.navigation_is_array:
            return gw.reader.read_navigation(
                ctx, entity_set, key, navigation, options, responder=gw.collection_response
            )
        related = gw.refs.list_references(ctx, entity_set, key, navigation)
        if not related:
            return Response(status_code=204)
        target_set, target_key = parse_entity_reference(related[0])
        return gw.entity_response(gw.entities.read(ctx, target_set, target_key, options))

    # -------------------------------------------------------------------------
    # References
    # -------------------------------------------------------------------------

    @app.get(prefix + "/{segment}/{navigation}/$ref", tags=["References"], responses=ERROR_RESPONSES)
    def list_references(request: Request, segment: str, navigation: str) -> Dict[str, Any]:
        entity_set, key = _entity(segment)
        urls = gw.refs.list_references(gw.context(request), entity_set, key, navigation)
        nav = gw.registry.by_set(entity_set).find_navigation(navigation)
        if nav is not None and not nav.navigation_is_array:
            if not urls:
                raise NotFoundError(f"'{navigation}' of '{segment}' is not set", target=navigation)
            return {"@odata.context": gw.context_url("$ref"), "@odata.id": urls[0]}
        return {
            "@odata.context": gw.context_url("Collection($ref)"),
            "value": [{"@odata.id": u} for u in urls],
        }

    @app.put(prefix + "/{segment}/{navigation}/$ref", tags=["References"], status_code=204, responses=ERROR_RESPONSES)
    def set_reference(request: Request, segment: str, navigation: str, body: ReferenceBody) -> Response:
        entity_set, key = _entity(segment)
        result = gw.refs.set_reference(gw.context(request), entity_set, key, navigation, body.odata_id)
        return gw.mutation_response(result)

    @app.post(prefix + "/{segment}/{navigation}/$ref", tags=["References"], status_code=204, responses=ERROR_RESPONSES)
    def add_reference(request: Request, segment: str, navigation: str, body: ReferenceBody) -> Response:
        entity_set, key = _entity(segment)
        result = gw.refs.add_reference(gw.context(request), entity_set, key, navigation, body.odata_id)
        return gw.mutation_response(result)

    @app.delete(prefix + "/{segment}/{navigation}/$ref", tags=["References"], status_code=204, responses=ERROR_RESPONSES)
    def remove_reference(request: Request, segment: str, navigation: str) -> Response:
        """Unlink; collection navigations name the edge with ``$id``."""
        entity_set, key = _entity(segment)
        target = request.query_params.get("$id")
        result = gw.refs.remove_reference(gw.context(request), entity_set, key, navigation, target)
        return gw.mutation_response(result)

    logger.info(f"gateway ready at {gw.config.service_root} ({len(gw.registry)} entity sets)")
    return app


def _entity(segment: str) -> Tuple[str, str]:
    entity_set, key = split_segment(segment)
    if key is None:
        raise ValidationError(f"'{segment}' does not address a single entity")
    return entity_set, key
