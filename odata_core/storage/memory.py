"""
odata_core.storage.memory - In-memory row store
===============================================

A complete ``RowStore`` kept in process memory. Used by the test suite and
the development gateway.

- Transactions are serialised by one lock (not re-entrant: a nested
  transaction on the same thread is an error) and work on a private copy of
  all tables; commit swaps the copy in, rollback drops it.
- Single integer keys flagged ``is_auto`` are generated on create.
- Associations are stored as foreign keys where the metadata declares
  referential constraints (on the owner, or on the partner of a collection
  navigation) and in link tables otherwise.
- ``$filter`` trees are evaluated by a pluggable ``filter_evaluator``.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from odata_core.core.context import RequestContext
from odata_core.core.errors import FeatureNotImplemented, InternalError, NotFoundError, ValidationError
from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.options import FilterExpression
from odata_core.storage.base import (
    Comparison,
    KeyTuple,
    Query,
    Row,
    RowStore,
    StoreCapabilities,
    Transaction,
    sort_key,
)


logger = logging.getLogger("odata_core.storage")

FilterEvaluator = Callable[[Any, Mapping[str, Any], EntityDescriptor], bool]
LinkTables = Dict[Tuple[str, str], Dict[KeyTuple, List[KeyTuple]]]


# ---------------- filter evaluation ----------------


def _field(expr: FilterExpression, descriptor: EntityDescriptor) -> str:
    name = expr.property or ""
    prop = descriptor.find_property(name)
    if prop is None or prop.is_navigation:
        raise FeatureNotImplemented(f"the in-memory store cannot filter on '{name}'")
    return prop.name


def evaluate_filter(expr: Any, row: Mapping[str, Any], descriptor: EntityDescriptor) -> bool:
    """
    Default evaluator for ``FilterExpression`` trees.

    Supports comparisons, ``and``/``or``/``not``, ``in`` and the string
    functions ``contains``, ``startswith`` and ``endswith``.
    """
    op = (expr.operator or "").lower()
    if op == "and":
        return evaluate_filter(expr.left, row, descriptor) and evaluate_filter(expr.right, row, descriptor)
    if op == "or":
        return evaluate_filter(expr.left, row, descriptor) or evaluate_filter(expr.right, row, descriptor)
    if op == "not":
        return not evaluate_filter(expr.left, row, descriptor)
    if op in ("eq", "ne", "gt", "ge", "lt", "le"):
        return Comparison(_field(expr, descriptor), op, expr.value).matches(row)
    if op == "in":
        return row.get(_field(expr, descriptor)) in tuple(expr.value or ())
    if op in ("contains", "startswith", "endswith"):
        value = row.get(_field(expr, descriptor))
        if not isinstance(value, str) or not isinstance(expr.value, str):
            return False
        if op == "contains":
            return expr.value in value
        return value.startswith(expr.value) if op == "startswith" else value.endswith(expr.value)
    raise FeatureNotImplemented(f"the in-memory store does not support the '{expr.operator}' operator")


# ---------------- store ----------------


class MemoryStore(RowStore):
    """
    Thread-safe in-memory store.

    Parameters
    ----------
    registry : EntityRegistry
        One table is created per entity set
    filter_evaluator : callable, optional
        ``(filter_tree, row, descriptor) -> bool``; defaults to
        ``evaluate_filter``

    Examples
    --------
    >>> store = MemoryStore(registry)
    >>> store.seed("Customers", [{"ID": 5, "Name": "Contoso"}])
    >>> with store.transaction() as tx:
    ...     tx.get("Customers", {"ID": 5})["Name"]
    'Contoso'
    """

    capabilities = StoreCapabilities(native_search=False, native_select=False, native_filter=True)

    def __init__(self, registry: EntityRegistry, *, filter_evaluator: Optional[FilterEvaluator] = None):
        self.registry = registry
        self.filter_evaluator: FilterEvaluator = filter_evaluator or evaluate_filter
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._tables: Dict[str, Dict[KeyTuple, Row]] = {d.entity_set: {} for d in registry}
        self._links: LinkTables = {}
        self._sequences: Dict[str, int] = {}

    def begin(self, ctx: Optional[RequestContext] = None) -> "MemoryTransaction":
        """
        Open a transaction, waiting for any other thread's to finish.

        Raises
        ------
        InternalError
            When this thread already has a transaction open on the store
        """
        if self._owner == threading.get_ident():
            raise InternalError(
                "a transaction is already open on this thread; nested transactions are not supported",
                code="Nested transaction",
            )
        self._lock.acquire()
        self._owner = threading.get_ident()
        try:
            return MemoryTransaction(self, ctx)
        except BaseException:
            self._release()
            raise

    def _release(self) -> None:
        self._owner = None
        self._lock.release()

    def seed(self, entity_set: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        """Insert rows in one transaction; returns the stored rows."""
        with self.transaction() as tx:
            return [tx.create(entity_set, r) for r in rows]

    def link(self, entity_set: str, key: Mapping[str, Any], navigation: str, targets: Sequence[KeyTuple]) -> None:
        """Seed association edges."""
        with self.transaction() as tx:
            tx.append_association(entity_set, key, navigation, targets)


class MemoryTransaction(Transaction):
    """Works on deep copies of the store's tables until commit."""

    def __init__(self, store: MemoryStore, ctx: Optional[RequestContext] = None):
        super().__init__(ctx)
        self.store = store
        self.registry = store.registry
        self._tables = copy.deepcopy(store._tables)
        self._links: LinkTables = copy.deepcopy(store._links)
        self._sequences = dict(store._sequences)
        self._open = True

    # ---------------- lifecycle ----------------

    def commit(self) -> None:
        if not self._open:
            raise InternalError("transaction already finished")
        self._open = False
        self.store._tables = self._tables
        self.store._links = self._links
        self.store._sequences = self._sequences
        self.store._release()

    def rollback(self) -> None:
        if not self._open:
            return
        self._open = False
        self.store._release()

    # ---------------- helpers ----------------

    def _table(self, entity_set: str) -> Dict[KeyTuple, Row]:
        table = self._tables.get(entity_set)
        if table is None:
            raise NotFoundError(f"entity set '{entity_set}' not found", target=entity_set)
        return table

    def _key_tuple(self, descriptor: EntityDescriptor, key: Mapping[str, Any]) -> KeyTuple:
        try:
            return tuple(key[p.name] for p in descriptor.key_properties)
        except KeyError as e:
            raise ValidationError(f"missing key property {e.args[0]!r} for '{descriptor.name}'") from None

    def _row(self, entity_set: str, key: Mapping[str, Any]) -> Tuple[EntityDescriptor, Row]:
        descriptor = self.registry.by_set(entity_set)
        row = self._table(entity_set).get(self._key_tuple(descriptor, key))
        if row is None:
            raise NotFoundError(f"entity '{entity_set}' with key {dict(key)} not found", target=entity_set)
        return descriptor, row

    def _nav(self, descriptor: EntityDescriptor, navigation: str) -> PropertyDescriptor:
        nav = descriptor.find_navigation(navigation)
        if nav is None:
            raise NotFoundError(
                f"navigation property '{navigation}' not found on '{descriptor.name}'", target=navigation
            )
        return nav

    def _target_row(self, target: EntityDescriptor, key: KeyTuple) -> Row:
        row = self._table(target.entity_set).get(tuple(key))
        if row is None:
            raise NotFoundError(f"entity '{target.entity_set}' with key {tuple(key)} not found")
        return row

    @staticmethod
    def _unlink_fields(row: Row, descriptor: EntityDescriptor, nav: PropertyDescriptor) -> None:
        for dep, _ in descriptor.iter_constraints(nav):
            if not dep.nullable:
                raise ValidationError(
                    f"cannot unlink '{nav.name}': '{dep.wire_name}' is not nullable", target=dep.wire_name
                )
            row[dep.name] = None

    @staticmethod
    def _link_fields(row: Row, descriptor: EntityDescriptor, nav: PropertyDescriptor, principal: Row, target: EntityDescriptor) -> None:
        for dep, principal_name in descriptor.iter_constraints(nav):
            row[dep.name] = dep.convert(principal.get(target.find_property(principal_name).name))

    # ---------------- reads ----------------

    def find(self, query: Query) -> List[Row]:
        self._check()
        if query.apply or query.compute:
            raise FeatureNotImplemented(
                "$apply and $compute are not supported by the in-memory store", code="Unsupported query option"
            )
        descriptor = self.registry.by_set(query.entity_set)
        rows = [r for r in self._table(query.entity_set).values() if all(p.matches(r) for p in query.predicates)]
        if query.filter is not None:
            rows = [r for r in rows if self.store.filter_evaluator(query.filter, r, descriptor)]
        try:
            for field_name, descending in reversed(query.order_by):
                rows.sort(key=lambda r: sort_key(r.get(field_name)), reverse=descending)
        except TypeError as e:
            raise InternalError(f"cannot order '{query.entity_set}': {e}") from e
        start = query.offset or 0
        end = start + query.limit if query.limit is not None else None
        return [dict(r) for r in rows[start:end]]

    def count(self, query: Query) -> int:
        return len(self.find(query.unpaged()))

    # ---------------- writes ----------------

    def create(self, entity_set: str, row: Mapping[str, Any]) -> Row:
        self._check()
        descriptor = self.registry.by_set(entity_set)
        table = self._table(entity_set)
        new = descriptor.new_row()
        for name, value in row.items():
            prop = descriptor.find_property(name)
            if prop is None or prop.is_navigation:
                raise ValidationError(f"'{name}' is not a structural property of '{descriptor.name}'")
            new[prop.name] = value

        keys = descriptor.key_properties
        auto = len(keys) == 1 and keys[0].is_auto and keys[0].type is int
        if auto and not new.get(keys[0].name):
            new[keys[0].name] = self._sequences.get(entity_set, 0) + 1
        key = descriptor.key_tuple(new)
        if any(v is None for v in key):
            raise ValidationError(f"key of '{descriptor.name}' must be provided")
        if key in table:
            raise ValidationError(f"'{entity_set}' with key {key} already exists", code="Entity already exists")
        if auto:
            self._sequences[entity_set] = max(self._sequences.get(entity_set, 0), int(key[0]))
        table[key] = new
        logger.debug(f"created {entity_set}{key}")
        return dict(new)

    def update(self, entity_set: str, key: Mapping[str, Any], changes: Mapping[str, Any]) -> Row:
        self._check()
        descriptor, row = self._row(entity_set, key)
        for name, value in changes.items():
            prop = descriptor.find_property(name)
            if prop is None or prop.is_navigation:
                raise ValidationError(f"'{name}' is not a structural property of '{descriptor.name}'")
            if prop.is_key and value != row.get(prop.name):
                raise ValidationError(f"key property '{prop.wire_name}' cannot be modified", target=prop.wire_name)
            row[prop.name] = value
        return dict(row)

    def delete(self, entity_set: str, key: Mapping[str, Any]) -> None:
        self._check()
        descriptor, _ = self._row(entity_set, key)
        kt = self._key_tuple(descriptor, key)
        del self._tables[entity_set][kt]
        for (owner_set, nav_name), edges in self._links.items():
            if owner_set == entity_set:
                edges.pop(kt, None)
                continue
            nav = self.registry.by_set(owner_set).find_navigation(nav_name)
            if nav is not None and nav.navigation_target == descriptor.name:
                for owner, targets in edges.items():
                    edges[owner] = [t for t in targets if t != kt]
        logger.debug(f"deleted {entity_set}{kt}")

    # ---------------- associations ----------------

    def association_keys(self, entity_set: str, key: Mapping[str, Any], navigation: str) -> List[KeyTuple]:
        self._check()
        descriptor, owner = self._row(entity_set, key)
        nav = self._nav(descriptor, navigation)
        target = self.registry.target_of(nav)

        partner = self.registry.foreign_key_partner(nav)
        if partner is not None:
            _, back = partner
            pairs = [(dep.name, target_principal) for dep, target_principal in target.iter_constraints(back)]
            return [
                target.key_tuple(r)
                for r in self._table(target.entity_set).values()
                if all(r.get(dep) == owner.get(descriptor.find_property(p).name) for dep, p in pairs)
            ]
        if nav.referential_constraints:
            pairs = [(dep.name, target.find_property(p).name) for dep, p in descriptor.iter_constraints(nav)]
            if any(owner.get(dep) is None for dep, _ in pairs):
                return []
            return [
                target.key_tuple(r)
                for r in self._table(target.entity_set).values()
                if all(r.get(p) == owner.get(dep) for dep, p in pairs)
            ]
        owner_key = descriptor.key_tuple(owner)
        return list(self._links.get((entity_set, nav.name), {}).get(owner_key, []))

    def append_association(
        self, entity_set: str, key: Mapping[str, Any], navigation: str, targets: Sequence[KeyTuple]
    ) -> None:
        self._check()
        descriptor, owner = self._row(entity_set, key)
        nav = self._nav(descriptor, navigation)
        target = self.registry.target_of(nav)
        target_rows = [self._target_row(target, t) for t in targets]

        partner = self.registry.foreign_key_partner(nav)
        if partner is not None:
            for row in target_rows:
                self._link_fields(row, target, partner[1], owner, descriptor)
            return
        if nav.referential_constraints:
            if len(target_rows) != 1:
                raise ValidationError(f"'{nav.name}' is single-valued; exactly one target is required")
            self._link_fields(owner, descriptor, nav, target_rows[0], target)
            return
        edges = self._links.setdefault((entity_set, nav.name), {})
        owner_key = descriptor.key_tuple(owner)
        if not nav.navigation_is_array:
            if len(targets) != 1:
                raise ValidationError(f"'{nav.name}' is single-valued; exactly one target is required")
            edges[owner_key] = [tuple(targets[0])]
            return
        current = edges.setdefault(owner_key, [])
        for t in targets:
            if tuple(t) not in current:
                current.append(tuple(t))

    def replace_association(
        self, entity_set: str, key: Mapping[str, Any], navigation: str, targets: Sequence[KeyTuple]
    ) -> None:
        self._check()
        descriptor, owner = self._row(entity_set, key)
        nav = self._nav(descriptor, navigation)
        target = self.registry.target_of(nav)
        wanted = list(dict.fromkeys(tuple(t) for t in targets))
        for t in wanted:
            self._target_row(target, t)

        partner = self.registry.foreign_key_partner(nav)
        if partner is not None:
            for t in self.association_keys(entity_set, key, navigation):
                if t not in wanted:
                    self._unlink_fields(self._target_row(target, t), target, partner[1])
            self.append_association(entity_set, key, navigation, wanted)
            return
        if nav.referential_constraints:
            if not wanted:
                self._unlink_fields(owner, descriptor, nav)
            else:
                self.append_association(entity_set, key, navigation, wanted)
            return
        if not nav.navigation_is_array and len(wanted) > 1:
            raise ValidationError(f"'{nav.name}' is single-valued; at most one target is allowed")
        self._links.setdefault((entity_set, nav.name), {})[descriptor.key_tuple(owner)] = wanted

    def delete_association(
        self,
        entity_set: str,
        key: Mapping[str, Any],
        navigation: str,
        target: Optional[KeyTuple] = None,
    ) -> None:
        self._check()
        descriptor, owner = self._row(entity_set, key)
        nav = self._nav(descriptor, navigation)
        target_d = self.registry.target_of(nav)
        current = self.association_keys(entity_set, key, navigation)
        if target is not None and tuple(target) not in current:
            raise NotFoundError(f"'{nav.name}' of '{entity_set}' does not reference {tuple(target)}")
        doomed = [tuple(target)] if target is not None else current

        partner = self.registry.foreign_key_partner(nav)
        if partner is not None:
            for t in doomed:
                self._unlink_fields(self._target_row(target_d, t), target_d, partner[1])
            return
        if nav.referential_constraints:
            if doomed:
                self._unlink_fields(owner, descriptor, nav)
            return
        edges = self._links.setdefault((entity_set, nav.name), {})
        owner_key = descriptor.key_tuple(owner)
        edges[owner_key] = [t for t in edges.get(owner_key, []) if t not in doomed]
