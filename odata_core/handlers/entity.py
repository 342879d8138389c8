"""
odata_core.handlers.entity - Single entity reads
================================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from odata_core.core import etag as etags
from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import NotFoundError
from odata_core.handlers.collection import reject_expand
from odata_core.handlers.keys import parse_key
from odata_core.handlers.mutation import call_hook
from odata_core.metadata.descriptors import EntityDescriptor
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.options import QueryOptions
from odata_core.query.search import apply_select
from odata_core.storage.base import Query, Row, RowStore, Scope, key_predicate


logger = logging.getLogger("odata_core.entity")


@dataclass
class EntityResult:
    """A single entity, or status 304 (``row`` None) when the client's copy is current."""

    descriptor: EntityDescriptor
    row: Optional[Row]
    etag: str = ""
    status: int = 200

    def to_payload(self) -> Optional[Dict[str, Any]]:
        if self.row is None:
            return None
        body = self.descriptor.to_wire(self.row)
        if self.etag:
            body["@odata.etag"] = self.etag
        return body


class EntityReader:
    """
    ``GET <EntitySet>(<key>)``.

    The before-read hook may return scopes (rows outside them read as not
    found); the after-read hook may return a replacement row.
    """

    def __init__(self, registry: EntityRegistry, store: RowStore, config: Optional[ServiceConfig] = None):
        self.registry = registry
        self.store = store
        self.config = config or ServiceConfig()

    def read(
        self, ctx: RequestContext, entity_set: str, key: str, options: Optional[QueryOptions] = None
    ) -> EntityResult:
        """
        Raises
        ------
        NotFoundError
            No entity with that key (or hidden by a hook's scope)
        AuthorizationError
            A read hook rejected the request
        FeatureNotImplemented
            ``$expand`` was requested
        """
        descriptor = self.registry.by_set(entity_set)
        options = options or QueryOptions()
        reject_expand(options, descriptor)
        hooks = descriptor.hooks

        scopes: List[Scope] = []
        if hooks.before_read_entity is not None:
            scopes = list(call_hook(hooks.before_read_entity, ctx, options) or [])

        query = Query(entity_set).where(key_predicate(parse_key(descriptor, key))).scoped(scopes)
        with self.store.transaction(ctx) as tx:
            row = tx.first(query)
        if row is None:
            raise NotFoundError(f"entity '{entity_set}({key})' not found", target=entity_set)

        if hooks.after_read_entity is not None:
            override = call_hook(hooks.after_read_entity, ctx, options, row)
            if override is not None:
                row = override

        tag = etags.generate(row, descriptor, weak=self.config.weak_etags)
        if tag and not etags.none_match(ctx.if_none_match, tag):
            logger.debug(f"{entity_set}({key}) not modified")
            return EntityResult(descriptor, None, tag, 304)
        if options.select:
            row = apply_select([row], options.select, descriptor)[0]
        return EntityResult(descriptor, row, tag, 200)
