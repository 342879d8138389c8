"""
OData Execution Core (odata_core)
=================================

Server-side execution core for OData v4.01 services: collection reads with
skip-token paging, ``@odata.bind`` resolution, ETag-guarded writes and
``$ref`` relationship edits, all against a transactional row store.

Usage
-----
>>> from odata_core import CollectionReader, MutationController, RequestContext
>>> from odata_core.storage import MemoryStore
>>>
>>> store = MemoryStore(registry)
>>> writer = MutationController(registry, store, config)
>>> order = writer.create(RequestContext(), "Orders", {"Customer@odata.bind": "Customers(5)"})
>>> page = CollectionReader(registry, store, config).read(ctx, "Orders", QueryOptions(top=2))

Subpackages
-----------
- odata_core.core: configuration, errors, request context, ETags
- odata_core.metadata: entity descriptors, registry, CSDL loading
- odata_core.query: query options, references, skip tokens, Prefer header
- odata_core.storage: row-store interface and the in-memory store
- odata_core.handlers: collection pipeline, entity reads, mutations, $ref
- odata_core.tracking: change tracking for delta responses
- odata_core.api: optional FastAPI development gateway

"""

__version__ = "0.3.0"

from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import (
    AuthorizationError,
    FeatureNotImplemented,
    HookError,
    InternalError,
    NotFoundError,
    ODataError,
    PreconditionFailed,
    RequestHandled,
    ValidationError,
)

from odata_core.metadata import EntityDescriptor, EntityHooks, EntityRegistry, PropertyDescriptor
from odata_core.query import QueryOptions, OrderByItem, FilterExpression
from odata_core.handlers import (
    CollectionReader,
    CollectionResult,
    EntityReader,
    MutationController,
    NavigationBindingResolver,
    ReferenceController,
    execute_collection_query,
)
from odata_core.tracking import ChangeTracker, ChangeType

__all__ = [
    # Version
    "__version__",
    # Core
    "ServiceConfig",
    "RequestContext",
    "ODataError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "PreconditionFailed",
    "FeatureNotImplemented",
    "InternalError",
    "HookError",
    "RequestHandled",
    # Metadata
    "EntityDescriptor",
    "EntityHooks",
    "EntityRegistry",
    "PropertyDescriptor",
    # Query
    "QueryOptions",
    "OrderByItem",
    "FilterExpression",
    # Handlers
    "CollectionReader",
    "CollectionResult",
    "EntityReader",
    "MutationController",
    "NavigationBindingResolver",
    "ReferenceController",
    "execute_collection_query",
    # Tracking
    "ChangeTracker",
    "ChangeType",
]
