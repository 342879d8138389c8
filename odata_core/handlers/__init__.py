"""
odata_core.handlers - Request execution
=======================================

- execute_collection_query: the seven-stage collection pipeline
- CollectionReader: default stages for entity sets and navigation paths
- EntityReader: single entity reads with If-None-Match
- MutationController: create/update/delete with binds and ETags
- ReferenceController: $ref reads and edge writes
- NavigationBindingResolver: @odata.bind resolution

"""

from odata_core.handlers.binding import NavigationBindingResolver, PendingCollectionBinding
from odata_core.handlers.collection import CollectionReader, CollectionRequest
from odata_core.handlers.entity import EntityReader, EntityResult
from odata_core.handlers.mutation import MutationController, MutationResult
from odata_core.handlers.pipeline import (
    CollectionExecutionContext,
    CollectionResult,
    execute_collection_query,
)
from odata_core.handlers.refs import ReferenceController

__all__ = [
    "execute_collection_query",
    "CollectionExecutionContext",
    "CollectionResult",
    "CollectionReader",
    "CollectionRequest",
    "EntityReader",
    "EntityResult",
    "MutationController",
    "MutationResult",
    "ReferenceController",
    "NavigationBindingResolver",
    "PendingCollectionBinding",
]
