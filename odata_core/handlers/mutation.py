"""
odata_core.handlers.mutation - Create, update and delete
========================================================

Each mutation runs in one transaction:

1. fetch the existing row (update/delete), 404 when absent
2. ``If-Match`` against the current ETag, 412 on mismatch
3. payload validation; ``@odata.bind`` entries are split off
4. bind resolution (foreign keys set now, collection bindings deferred)
5. before-hook (403 unless the hook raises its own ``HookError``)
6. storage write
7. deferred bindings, now that the row has its key
8. after-hook; failures are logged only

The change event for delta responses is recorded once the transaction has
committed, so readers of the change feed never see a rolled-back write.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from odata_core.core import etag as etags
from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import (
    AuthorizationError,
    NotFoundError,
    ODataError,
    PreconditionFailed,
    ValidationError,
    as_odata_error,
)
from odata_core.handlers.binding import NavigationBindingResolver, split_bind_annotations
from odata_core.handlers.keys import parse_key
from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.preference import Preference
from odata_core.query.references import format_entity_reference
from odata_core.storage.base import Row, RowStore, Transaction
from odata_core.tracking.tracker import ChangeTracker, ChangeType


logger = logging.getLogger("odata_core.mutation")


@dataclass
class MutationResult:
    """
    Outcome of a create, update or delete.

    ``row`` is None when the response carries no body (204, or the entity
    was deleted). ``location`` is the canonical URL of the entity.
    """

    descriptor: EntityDescriptor
    status: int
    row: Optional[Row] = None
    etag: str = ""
    location: str = ""
    preference_applied: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Optional[Dict[str, Any]]:
        if self.row is None:
            return None
        body = self.descriptor.to_wire(self.row)
        if self.etag:
            body["@odata.etag"] = self.etag
        return body


def call_hook(hook: Any, *args: Any) -> Any:
    """
    Run a before-hook.

    ``ODataError`` subclasses (including ``HookError``) keep their status;
    any other exception is a rejection and becomes ``AuthorizationError``.
    """
    try:
        return hook(*args)
    except ODataError:
        raise
    except Exception as e:
        raise as_odata_error(e, AuthorizationError) from e


def check_if_match(ctx: RequestContext, descriptor: EntityDescriptor, row: Mapping[str, Any], weak: bool = True) -> str:
    """
    Verify ``If-Match`` against the row's current ETag.

    Returns the current ETag. Entity types without an ETag property accept
    any precondition.

    Raises
    ------
    PreconditionFailed
        When the header does not match
    """
    current = etags.generate(row, descriptor, weak=weak)
    if descriptor.etag is None:
        return current
    if not etags.matches(ctx.if_match, current):
        logger.debug(f"{descriptor.entity_set}: If-Match {ctx.if_match!r} does not match {current}")
        raise PreconditionFailed(
            f"the entity's ETag does not match If-Match for '{descriptor.entity_set}'",
            target=descriptor.entity_set,
        )
    return current


def stamp_version(
    descriptor: EntityDescriptor,
    target: Dict[str, Any],
    *,
    created: bool,
    current: Optional[Mapping[str, Any]] = None,
) -> None:
    """Maintain a computed integer or datetime ETag property in ``target``."""
    prop: Optional[PropertyDescriptor] = descriptor.etag
    if prop is None or not prop.is_auto:
        return
    if prop.type is int:
        previous = (current or {}).get(prop.name) or 0
        target[prop.name] = 1 if created else int(previous) + 1
    elif prop.type is dt.datetime:
        target[prop.name] = dt.datetime.now(dt.timezone.utc)


class WriteController:
    """
    State shared by the entity and reference write controllers.

    Parameters
    ----------
    registry : EntityRegistry
    store : RowStore
    config : ServiceConfig, optional
    tracker : ChangeTracker, optional
        Receives Added/Updated/Deleted events for entity sets that track
        changes; without it no events are recorded
    resolver : NavigationBindingResolver, optional
    """

    def __init__(
        self,
        registry: EntityRegistry,
        store: RowStore,
        config: Optional[ServiceConfig] = None,
        tracker: Optional[ChangeTracker] = None,
        resolver: Optional[NavigationBindingResolver] = None,
    ):
        self.registry = registry
        self.store = store
        self.config = config or ServiceConfig()
        self.tracker = tracker
        self.resolver = resolver or NavigationBindingResolver(registry, self.config)

    # ---------------- helpers ----------------

    def _fetch(self, tx: Transaction, descriptor: EntityDescriptor, key: str) -> Row:
        row = tx.get(descriptor.entity_set, parse_key(descriptor, key))
        if row is None:
            raise NotFoundError(f"entity '{descriptor.entity_set}({key})' not found", target=descriptor.entity_set)
        return row

    @staticmethod
    def _row_key(descriptor: EntityDescriptor, row: Mapping[str, Any]) -> Dict[str, Any]:
        return {p.name: row.get(p.name) for p in descriptor.key_properties}

    def _reload(self, tx: Transaction, descriptor: EntityDescriptor, row: Mapping[str, Any]) -> Row:
        stored = tx.get(descriptor.entity_set, self._row_key(descriptor, row))
        return stored if stored is not None else dict(row)

    def _after_hook(self, name: str, hook: Any, ctx: RequestContext, row: Row) -> None:
        try:
            hook(ctx, row)
        except Exception as e:
            logger.error(f"{name} hook failed (write is kept): {e!r}")

    def _record(self, descriptor: EntityDescriptor, row: Mapping[str, Any], change_type: ChangeType) -> None:
        if self.tracker is None or not self.config.track_changes or not descriptor.track_changes:
            return
        data = None if change_type is ChangeType.DELETED else descriptor.to_wire(row)
        try:
            self.tracker.record_change(descriptor.entity_set, descriptor.key_values(row), data, change_type)
        except Exception as e:
            logger.error(f"failed to record {change_type.value} change for {descriptor.entity_set}: {e!r}")


class MutationController(WriteController):
    """
    Entity writes for every entity set in a registry.

    Examples
    --------
    >>> controller = MutationController(registry, store, config)
    >>> result = controller.create(ctx, "Orders", {"Customer@odata.bind": "Customers(5)"})
    >>> result.row["CustomerID"]
    5
    """

    # ---------------- public API ----------------

    def create(self, ctx: RequestContext, entity_set: str, payload: Any) -> MutationResult:
        """
        Insert a new entity.

        Returns status 201 with the stored row, or 204 when the client
        prefers ``return=minimal``.
        """
        descriptor = self.registry.by_set(entity_set)
        prefs = Preference.parse(ctx.prefer)
        hooks = descriptor.hooks

        with self.store.transaction(ctx) as tx:
            binds, values = self._validate_payload(descriptor, payload)
            row = descriptor.new_row()
            for prop in descriptor.key_properties:
                if prop.is_auto:
                    row[prop.name] = None
            row.update(values)

            pending = self.resolver.resolve_for_create(tx, descriptor, row, binds)
            supplied = set(values) | self._bound_fields(descriptor, binds)
            self._check_required(descriptor, row, supplied, require_all=True)
            stamp_version(descriptor, row, created=True)

            if hooks.before_create is not None:
                call_hook(hooks.before_create, ctx, row)

            created = tx.create(entity_set, row)
            if pending:
                self.resolver.apply_pending(tx, descriptor, created, pending)
            if hooks.after_create is not None:
                self._after_hook("after_create", hooks.after_create, ctx, created)
            stored = self._reload(tx, descriptor, created)

        logger.info(f"created {entity_set}{descriptor.key_tuple(stored)}")
        self._record(descriptor, stored, ChangeType.ADDED)
        return self._result(descriptor, stored, prefs, is_create=True)

    def update(
        self,
        ctx: RequestContext,
        entity_set: str,
        key: str,
        payload: Any,
        *,
        replace: bool = False,
    ) -> MutationResult:
        """
        PATCH (merge) or, with ``replace=True``, PUT an existing entity.

        With PUT every non-key, non-computed property absent from the
        payload is reset to its default. Returns 204, or 200 with the row
        when the client prefers ``return=representation``.
        """
        descriptor = self.registry.by_set(entity_set)
        prefs = Preference.parse(ctx.prefer)
        hooks = descriptor.hooks

        with self.store.transaction(ctx) as tx:
            current = self._fetch(tx, descriptor, key)
            check_if_match(ctx, descriptor, current, self.config.weak_etags)

            binds, values = self._validate_payload(descriptor, payload)
            for prop in descriptor.key_properties:
                if prop.name in values and values.pop(prop.name) != current.get(prop.name):
                    raise ValidationError(
                        f"key property '{prop.wire_name}' cannot be modified", target=prop.wire_name
                    )

            working = dict(current)
            fk_changes, pending = self.resolver.resolve_for_update(tx, descriptor, working, binds)
            changes: Dict[str, Any] = dict(values)
            for wire, value in fk_changes.items():
                changes[descriptor.find_property(wire).name] = value
            supplied = set(changes)
            if replace:
                for prop in descriptor.structural_properties:
                    if prop.is_key or prop.is_auto or prop.name in changes:
                        continue
                    changes[prop.name] = prop.default
            stamp_version(descriptor, changes, created=False, current=current)
            working.update(changes)
            self._check_required(descriptor, working, supplied, require_all=replace)

            if hooks.before_update is not None:
                call_hook(hooks.before_update, ctx, working, changes)

            row_key = self._row_key(descriptor, current)
            updated = tx.update(entity_set, row_key, changes)
            if pending:
                self.resolver.apply_pending(tx, descriptor, updated, pending)
            if hooks.after_update is not None:
                self._after_hook("after_update", hooks.after_update, ctx, updated)
            stored = self._reload(tx, descriptor, updated)

        logger.info(f"updated {entity_set}{descriptor.key_tuple(stored)} ({'PUT' if replace else 'PATCH'})")
        self._record(descriptor, stored, ChangeType.UPDATED)
        return self._result(descriptor, stored, prefs, is_create=False)

    def delete(self, ctx: RequestContext, entity_set: str, key: str) -> MutationResult:
        """Remove an entity; returns status 204."""
        descriptor = self.registry.by_set(entity_set)
        hooks = descriptor.hooks

        with self.store.transaction(ctx) as tx:
            current = self._fetch(tx, descriptor, key)
            check_if_match(ctx, descriptor, current, self.config.weak_etags)
            if hooks.before_delete is not None:
                call_hook(hooks.before_delete, ctx, current)
            tx.delete(entity_set, self._row_key(descriptor, current))
            if hooks.after_delete is not None:
                self._after_hook("after_delete", hooks.after_delete, ctx, current)

        logger.info(f"deleted {entity_set}{descriptor.key_tuple(current)}")
        self._record(descriptor, current, ChangeType.DELETED)
        return MutationResult(descriptor, 204)

    # ---------------- validation ----------------

    def _validate_payload(self, descriptor: EntityDescriptor, payload: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Split and type-check a JSON object.

        Returns
        -------
        tuple of (dict, dict)
            (navigation name -> bind value, field name -> converted value)
        """
        if not isinstance(payload, Mapping):
            raise ValidationError(f"request body must be a JSON object, got {type(payload).__name__}")
        binds, rest = split_bind_annotations(payload)
        values: Dict[str, Any] = {}
        unknown: List[str] = []
        for name, value in rest.items():
            if name.startswith("@") or "@" in name:
                continue
            prop = descriptor.find_property(name)
            if prop is None:
                unknown.append(name)
                continue
            if prop.is_navigation:
                raise ValidationError(
                    f"navigation property '{name}' cannot be written inline; use '{name}@odata.bind'",
                    target=name,
                )
            if prop.is_auto:
                continue
            values[prop.name] = prop.convert(value)
        if unknown and self.config.strict_payloads:
            raise ValidationError(
                f"properties {sorted(unknown)} do not exist on '{descriptor.name}'", target=unknown[0]
            )
        for nav_name in binds:
            if descriptor.find_navigation(nav_name) is None:
                raise ValidationError(
                    f"navigation property '{nav_name}' not found in entity '{descriptor.name}'",
                    target=f"{nav_name}@odata.bind",
                )
        return binds, values

    @staticmethod
    def _bound_fields(descriptor: EntityDescriptor, binds: Mapping[str, Any]) -> set:
        names = set()
        for nav_name in binds:
            nav = descriptor.find_navigation(nav_name)
            if nav is not None:
                names.update(dep.name for dep, _ in descriptor.iter_constraints(nav))
        return names

    @staticmethod
    def _check_required(
        descriptor: EntityDescriptor, row: Mapping[str, Any], supplied: set, *, require_all: bool
    ) -> None:
        """
        Required properties must be supplied (create, PUT) and may never be
        set to null; non-nullable ones may not be nulled either.
        """
        missing: List[str] = []
        for prop in descriptor.structural_properties:
            if prop.is_key or prop.is_auto:
                continue
            if require_all and prop.is_required and prop.name not in supplied:
                missing.append(prop.wire_name)
            elif prop.name in supplied and row.get(prop.name) is None and (prop.is_required or not prop.nullable):
                raise ValidationError(
                    f"property '{prop.wire_name}' cannot be null", target=prop.wire_name
                )
        if missing:
            raise ValidationError(
                f"missing required properties: {', '.join(missing)}", target=missing[0]
            )

    # ---------------- response ----------------

    def _result(self, descriptor: EntityDescriptor, row: Row, prefs: Preference, *, is_create: bool) -> MutationResult:
        tag = etags.generate(row, descriptor, weak=self.config.weak_etags)
        location = format_entity_reference(
            descriptor.entity_set, descriptor.key_values(row), self.config.service_root
        )
        with_body = prefs.should_return_content(is_create)
        if is_create:
            status = 201 if with_body else 204
        else:
            status = 200 if with_body else 204
        headers = {"Location": location} if is_create else {}
        if status == 204:
            headers["OData-EntityId"] = location
        if tag:
            headers["ETag"] = tag
        applied = prefs.preference_applied()
        if applied:
            headers["Preference-Applied"] = applied
        return MutationResult(
            descriptor,
            status,
            row=row if with_body else None,
            etag=tag,
            location=location,
            preference_applied=applied,
            headers=headers,
        )
