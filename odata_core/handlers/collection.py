"""
odata_core.handlers.collection - Collection reads
=================================================

Default implementations of the pipeline stages for entity sets and for
collection-valued navigation paths (``Orders(1)/Products``). Navigation
reads reuse every stage and only add a scope restricting the rows to the
related keys, so ``$top``, ``$count`` and skip tokens behave identically.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import FeatureNotImplemented, NotFoundError, RequestHandled, ValidationError
from odata_core.handlers.keys import parse_key
from odata_core.handlers.pipeline import CollectionExecutionContext, CollectionResult, execute_collection_query
from odata_core.metadata.descriptors import EntityDescriptor
from odata_core.metadata.registry import EntityRegistry
from odata_core.query import links, skiptoken
from odata_core.query.options import FilterExpression, QueryOptions
from odata_core.query.preference import Preference
from odata_core.query.references import format_entity_reference
from odata_core.query.search import apply_search, apply_select
from odata_core.storage.base import KeyIn, Query, Row, RowStore, Scope
from odata_core.tracking.tracker import ChangeTracker, ChangeType


logger = logging.getLogger("odata_core.pipeline")

Responder = Callable[[CollectionResult], Any]


def _identity(result: CollectionResult) -> CollectionResult:
    return result


def reject_expand(options: QueryOptions, descriptor: EntityDescriptor) -> None:
    """Related entities are not inlined; ``$expand`` is answered with 501."""
    if options.expand:
        raise FeatureNotImplemented(
            f"$expand is not supported on '{descriptor.entity_set}': {','.join(options.expand)}",
            code="Unsupported query option",
        )


class CollectionRequest:
    """
    Stage implementations bound to one request.

    Parameters
    ----------
    reader : CollectionReader
    ctx : RequestContext
    descriptor : EntityDescriptor
    options : QueryOptions
        Externally parsed options (validated in ``parse``)
    base_scopes : list, optional
        Scopes applied before the hook's (navigation restriction)
    responder : callable, optional
        Turns a ``CollectionResult`` into the response object
    """

    def __init__(
        self,
        reader: "CollectionReader",
        ctx: RequestContext,
        descriptor: EntityDescriptor,
        options: QueryOptions,
        *,
        base_scopes: Optional[Callable[[], List[Scope]]] = None,
        responder: Optional[Responder] = None,
        allow_delta: bool = True,
    ):
        self.reader = reader
        self.ctx = ctx
        self.descriptor = descriptor
        self.options = options
        self.base_scopes = base_scopes
        self.responder = responder or _identity
        self.allow_delta = allow_delta
        self.preference = Preference.parse(ctx.prefer)

    @property
    def registry(self) -> EntityRegistry:
        return self.reader.registry

    @property
    def store(self) -> RowStore:
        return self.reader.store

    @property
    def config(self) -> ServiceConfig:
        return self.reader.config

    def _in_memory_search(self, options: QueryOptions) -> bool:
        return bool(options.search) and not self.store.capabilities.native_search

    def execution_context(self) -> CollectionExecutionContext:
        return CollectionExecutionContext(
            descriptor=self.descriptor,
            parse_query_options=self.parse,
            before_read=self.before_read,
            count=self.count,
            fetch=self.fetch,
            next_link=self.next_link,
            after_read=self.after_read,
            write_response=self.write,
        )

    # ---------------- 1. parse ----------------

    def parse(self) -> QueryOptions:
        options = self.options
        if options.top is not None and options.top < 0:
            raise ValidationError("$top must be a non-negative integer", code="Invalid $top")
        if options.skip is not None and options.skip < 0:
            raise ValidationError("$skip must be a non-negative integer", code="Invalid $skip")
        reject_expand(options, self.descriptor)

        if options.delta_token:
            raise RequestHandled(self.responder(self.delta(options.delta_token)))

        if options.skip_token:
            try:
                token = skiptoken.decode(options.skip_token)
                skiptoken.seek_predicate(token, self.descriptor, options.order_by)
            except ValueError as e:
                raise ValidationError(f"invalid skiptoken: {e}", code="Invalid $skiptoken") from e

        self.validate_property_usage(options)

        page = self.preference.max_page_size
        if page is not None:
            self.preference.apply_max_page_size()
        if self.config.max_page_size is not None:
            page = min(page, self.config.max_page_size) if page is not None else self.config.max_page_size
        if page is not None and (options.top is None or options.top > page):
            options = options.with_top(page)

        if self.preference.track_changes_requested:
            self._require_tracking()
            self.preference.apply_track_changes()
        return options

    def validate_property_usage(self, options: QueryOptions) -> None:
        """Reject filter/orderby on navigation or complex properties outside lambdas."""
        aliases = options.computed_aliases()
        if options.filter is not None:
            self._validate_filter(options.filter, False, aliases)
        for item in options.order_by:
            if item.property in aliases:
                continue
            prop = self._resolve(item.property)
            if prop.is_navigation:
                raise ValidationError(
                    f"ordering by navigation property '{item.property}' is not supported",
                    code="Unsupported query option",
                )
            if prop.is_complex:
                raise ValidationError(
                    f"ordering by complex type property '{item.property}' is not supported",
                    code="Unsupported query option",
                )
        for name in options.select:
            if name != "*" and self.descriptor.find_property(name.split("/", 1)[0]) is None:
                raise ValidationError(f"property '{name}' in $select does not exist on '{self.descriptor.name}'")

    def _resolve(self, path: str):
        try:
            return self.registry.resolve_property_path(self.descriptor, path)
        except (ValueError, NotFoundError):
            raise ValidationError(
                f"property path '{path}' is not supported", code="Unsupported query option"
            ) from None

    def _validate_filter(self, node: FilterExpression, inside_lambda: bool, aliases: Set[str]) -> None:
        if node is None:
            return
        name = node.property
        if not inside_lambda and name and not name.startswith("_") and name not in aliases:
            if name == "$it":
                if node.operator not in ("isof", "eq", "ne"):
                    raise ValidationError(
                        "property path '$it' can only be used with isof()", code="Unsupported query option"
                    )
            elif node.is_lambda:
                if not self._resolve(name).is_navigation:
                    raise ValidationError(
                        f"lambda operator '{node.operator}' can only be used with navigation properties",
                        code="Unsupported query option",
                    )
            else:
                prop = self._resolve(name)
                if prop.is_navigation:
                    raise ValidationError(
                        f"filtering by navigation property '{name}' is not supported (use any/all operators)",
                        code="Unsupported query option",
                    )
                if prop.is_complex:
                    raise ValidationError(
                        f"filtering by complex type property '{name}' is not supported",
                        code="Unsupported query option",
                    )
        self._validate_filter(node.left, inside_lambda or node.is_lambda, aliases)
        self._validate_filter(node.right, inside_lambda, aliases)

    # ---------------- delta ----------------

    def _require_tracking(self) -> ChangeTracker:
        tracker = self.reader.tracker
        if (
            not self.allow_delta
            or tracker is None
            or not self.config.track_changes
            or not self.descriptor.track_changes
        ):
            raise FeatureNotImplemented(
                f"change tracking is not enabled for '{self.descriptor.entity_set}'",
                code="Change tracking not supported",
            )
        return tracker

    def delta(self, token: str) -> CollectionResult:
        """Build the delta response for ``$deltatoken``."""
        tracker = self._require_tracking()
        if tracker.entity_set_from_token(token) != self.descriptor.entity_set:
            raise ValidationError("delta token does not belong to this entity set", code="Invalid $deltatoken")
        events, next_token = tracker.changes_since(token)
        entries: List[Dict[str, Any]] = []
        for event in events:
            if event.type == ChangeType.DELETED:
                entries.append(
                    {
                        "@odata.id": format_entity_reference(
                            event.entity_set, event.key_values, self.config.service_root
                        ),
                        "@odata.removed": {"reason": "deleted"},
                        **event.key_values,
                    }
                )
            else:
                entries.append(dict(event.data or event.key_values))
        return CollectionResult(
            descriptor=self.descriptor,
            delta_entries=entries,
            delta_link=links.delta_link(self.ctx.url, next_token, self.config.service_root),
        )

    # ---------------- 2. before read ----------------

    def before_read(self, options: QueryOptions) -> List[Scope]:
        scopes: List[Scope] = list(self.base_scopes() if self.base_scopes else [])
        hook = self.descriptor.hooks.before_read_collection
        if hook is not None:
            scopes.extend(hook(self.ctx, options) or [])
        return scopes

    # ---------------- 3. count ----------------

    def _base_query(self, options: QueryOptions, scopes: List[Scope]) -> Query:
        return Query(
            self.descriptor.entity_set,
            filter=options.filter,
            apply=tuple(options.apply),
            compute=tuple(options.compute),
        ).scoped(scopes)

    def count(self, options: QueryOptions, scopes: List[Scope]) -> Optional[int]:
        if not options.count:
            return None
        query = self._base_query(options, scopes)
        with self.store.transaction(self.ctx) as tx:
            if self._in_memory_search(options):
                return len(apply_search(tx.find(query), options.search or "", self.descriptor))
            if options.search:
                query = replace(query, search=options.search)
            return tx.count(query)

    # ---------------- 4. fetch ----------------

    def fetch(self, options: QueryOptions, scopes: List[Scope]) -> List[Row]:
        query = self._base_query(options, scopes)
        if options.skip_token:
            token = skiptoken.decode(options.skip_token)
            query = query.where(skiptoken.seek_predicate(token, self.descriptor, options.order_by))

        for item in options.order_by:
            prop = self.descriptor.find_property(item.property)
            query = query.order(prop.name if prop is not None else item.property, item.descending)
        ordered = {p.name for p in (self.descriptor.find_property(i.property) for i in options.order_by) if p}
        for key in self.descriptor.key_properties:
            if key.name not in ordered:
                query = query.order(key.name)

        limit = options.top + 1 if options.top is not None else None
        memory_search = self._in_memory_search(options)
        native_select = self.store.capabilities.native_select
        if not memory_search:
            query = query.skip(options.skip).take(limit)
            if options.search:
                query = replace(query, search=options.search)
        if options.select and native_select:
            query = replace(query, select=tuple(options.select))

        with self.store.transaction(self.ctx) as tx:
            rows = tx.find(query)

        if memory_search:
            rows = apply_search(rows, options.search or "", self.descriptor)
            start = options.skip or 0
            rows = rows[start : start + limit if limit is not None else None]
        if options.select and not native_select:
            rows = apply_select(rows, options.select, self.descriptor)
        return rows

    # ---------------- 5. next link ----------------

    def next_link(self, options: QueryOptions, rows: List[Row]) -> Tuple[Optional[str], List[Row]]:
        top = options.top
        if top is None or len(rows) <= top:
            return None, rows
        if top == 0:
            return None, []
        root = self.config.service_root
        try:
            token = skiptoken.extract_from_row(rows[top - 1], self.descriptor, options.order_by)
            link = links.next_link_with_skiptoken(self.ctx.url, skiptoken.encode(token), root)
        except ValueError as e:
            logger.warning(f"{self.descriptor.entity_set}: skip token unavailable ({e}); using $skip")
            link = links.next_link_with_skip(self.ctx.url, (options.skip or 0) + top, root)
        return link, rows[:top]

    # ---------------- 6. after read ----------------

    def after_read(self, options: QueryOptions, rows: List[Row]) -> Optional[List[Row]]:
        hook = self.descriptor.hooks.after_read_collection
        if hook is None:
            return None
        return hook(self.ctx, options, rows)

    # ---------------- 7. write ----------------

    def write(
        self, options: QueryOptions, rows: List[Row], total: Optional[int], next_link: Optional[str]
    ) -> Any:
        result = CollectionResult(descriptor=self.descriptor, rows=list(rows), count=total, next_link=next_link)
        if self.preference.track_changes_applied and next_link is None:
            token = self.reader.tracker.current_token(self.descriptor.entity_set)
            result.delta_link = links.delta_link(self.ctx.url, token, self.config.service_root)
        result.preference_applied = self.preference.preference_applied()
        return self.responder(result)


class CollectionReader:
    """
    Entry point for collection reads.

    Parameters
    ----------
    registry : EntityRegistry
    store : RowStore
    config : ServiceConfig, optional
    tracker : ChangeTracker, optional
        Required for ``$deltatoken`` and ``Prefer: odata.track-changes``

    Examples
    --------
    >>> reader = CollectionReader(registry, store, config)
    >>> ctx = RequestContext(url="http://localhost/odata/Orders?$top=2")
    >>> page = reader.read(ctx, "Orders", QueryOptions(top=2))
    >>> page.next_link
    'http://localhost/odata/Orders?$top=2&$skiptoken=...'
    """

    def __init__(
        self,
        registry: EntityRegistry,
        store: RowStore,
        config: Optional[ServiceConfig] = None,
        tracker: Optional[ChangeTracker] = None,
    ):
        self.registry = registry
        self.store = store
        self.config = config or ServiceConfig()
        self.tracker = tracker

    def request(self, ctx: RequestContext, entity_set: str, options: QueryOptions, **kwargs: Any) -> CollectionRequest:
        return CollectionRequest(self, ctx, self.registry.by_set(entity_set), options, **kwargs)

    def read(
        self,
        ctx: RequestContext,
        entity_set: str,
        options: Optional[QueryOptions] = None,
        *,
        responder: Optional[Responder] = None,
        write_error: Optional[Callable[..., Any]] = None,
    ) -> Any:
        """
        Read a page of an entity set.

        Returns
        -------
        CollectionResult
            Or whatever ``responder`` / ``write_error`` return

        Raises
        ------
        ODataError
            When a stage fails and no ``write_error`` is given
        """
        req = self.request(ctx, entity_set, options or QueryOptions(), responder=responder)
        exec_ctx = req.execution_context()
        exec_ctx.write_error = write_error
        return execute_collection_query(exec_ctx)

    def read_navigation(
        self,
        ctx: RequestContext,
        entity_set: str,
        key: str,
        navigation: str,
        options: Optional[QueryOptions] = None,
        *,
        responder: Optional[Responder] = None,
        write_error: Optional[Callable[..., Any]] = None,
    ) -> Any:
        """
        Read a collection-valued navigation, e.g. ``Orders(1)/Products``.

        Raises
        ------
        NotFoundError
            Unknown navigation or missing parent entity
        ValidationError
            The navigation is single-valued
        """
        owner = self.registry.by_set(entity_set)
        nav = owner.find_navigation(navigation)
        if nav is None:
            raise NotFoundError(f"navigation property '{navigation}' not found on '{owner.name}'", target=navigation)
        if not nav.navigation_is_array:
            raise ValidationError(f"navigation property '{navigation}' is not collection-valued")
        target = self.registry.target_of(nav)
        owner_key = parse_key(owner, key)
        key_fields = tuple(p.name for p in target.key_properties)

        def related_scope() -> List[Scope]:
            with self.store.transaction(ctx) as tx:
                related = frozenset(tx.association_keys(entity_set, owner_key, nav.name))
            return [lambda q: q.where(KeyIn(key_fields, related))]

        req = CollectionRequest(
            self,
            ctx,
            target,
            options or QueryOptions(),
            base_scopes=related_scope,
            responder=responder,
            allow_delta=False,
        )
        exec_ctx = req.execution_context()
        exec_ctx.write_error = write_error
        return execute_collection_query(exec_ctx)
