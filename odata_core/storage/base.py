"""
odata_core.storage.base - Transactional row-store interface
===========================================================

The execution core talks to persistence only through this interface:

- ``RowStore.transaction(ctx)``: begin, then commit on success or roll back
  on any exception (including cancellation)
- ``Transaction``: predicate-based find/count, create, update, delete and a
  relationship-association API (append/replace/delete)
- ``Query``: an immutable, chainable description of one read
- Predicates: ``Comparison``, ``And``, ``Or``, ``Not``, ``KeyIn``

Scopes returned by before-read hooks are plain callables ``Query -> Query``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple

from odata_core.core.context import RequestContext


logger = logging.getLogger("odata_core.storage")

Row = Dict[str, Any]
KeyTuple = Tuple[Any, ...]


def sort_key(value: Any) -> Tuple[int, Any]:
    """Total order used for comparisons and sorting: ``None`` sorts lowest."""
    if value is None:
        return (0, 0)
    return (1, value)


# ---------------- predicates ----------------


class Predicate:
    """Base class; stores that evaluate in memory call ``matches``."""

    def matches(self, row: Mapping[str, Any]) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "ge": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "le": lambda a, b: a <= b,
}


@dataclass(frozen=True)
class Comparison(Predicate):
    """``field <op> value`` with op in eq, ne, gt, ge, lt, le."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _COMPARATORS:
            raise ValueError(f"unsupported comparison operator {self.op!r}")

    def matches(self, row: Mapping[str, Any]) -> bool:
        left, right = row.get(self.field), self.value
        if self.op in ("eq", "ne"):
            return _COMPARATORS[self.op](left, right)
        try:
            return _COMPARATORS[self.op](sort_key(left), sort_key(right))
        except TypeError:
            return False


@dataclass(frozen=True)
class And(Predicate):
    items: Tuple[Predicate, ...]

    def matches(self, row: Mapping[str, Any]) -> bool:
        return all(p.matches(row) for p in self.items)


@dataclass(frozen=True)
class Or(Predicate):
    items: Tuple[Predicate, ...]

    def matches(self, row: Mapping[str, Any]) -> bool:
        return any(p.matches(row) for p in self.items)


@dataclass(frozen=True)
class Not(Predicate):
    item: Predicate

    def matches(self, row: Mapping[str, Any]) -> bool:
        return not self.item.matches(row)


@dataclass(frozen=True)
class KeyIn(Predicate):
    """Row's ``fields`` tuple is one of ``values``."""

    fields: Tuple[str, ...]
    values: FrozenSet[KeyTuple]

    def matches(self, row: Mapping[str, Any]) -> bool:
        return tuple(row.get(f) for f in self.fields) in self.values


def key_predicate(key: Mapping[str, Any]) -> Predicate:
    """Equality on every key field."""
    items = tuple(Comparison(k, "eq", v) for k, v in key.items())
    return items[0] if len(items) == 1 else And(items)


# ---------------- query ----------------


@dataclass(frozen=True)
class Query:
    """
    Immutable read description.

    ``filter``, ``apply`` and ``compute`` carry the externally parsed
    expression trees; ``search`` and ``select`` are only honoured by stores
    whose capabilities say so (the pipeline applies them in memory otherwise).
    """

    entity_set: str
    predicates: Tuple[Predicate, ...] = ()
    order_by: Tuple[Tuple[str, bool], ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    filter: Any = None
    apply: Tuple[Any, ...] = ()
    compute: Tuple[Any, ...] = ()
    search: Optional[str] = None
    select: Tuple[str, ...] = ()

    def where(self, *predicates: Predicate) -> "Query":
        return replace(self, predicates=self.predicates + tuple(predicates))

    def order(self, field_name: str, descending: bool = False) -> "Query":
        return replace(self, order_by=self.order_by + ((field_name, descending),))

    def take(self, limit: Optional[int]) -> "Query":
        return replace(self, limit=limit)

    def skip(self, offset: Optional[int]) -> "Query":
        return replace(self, offset=offset)

    def with_filter(self, expression: Any) -> "Query":
        return replace(self, filter=expression)

    def unpaged(self) -> "Query":
        """Same rows, no ordering or paging (used for counts)."""
        return replace(self, order_by=(), limit=None, offset=None, select=())

    def scoped(self, scopes: Optional[Sequence["Scope"]]) -> "Query":
        q = self
        for scope in scopes or ():
            q = scope(q)
        return q


Scope = Callable[[Query], Query]


@dataclass(frozen=True)
class StoreCapabilities:
    """What the store evaluates natively."""

    native_search: bool = False
    native_select: bool = False
    native_filter: bool = True


# ---------------- transaction / store ----------------


class Transaction(ABC):
    """
    One unit of work. Every method checks the request's cancellation signal
    first, so a cancelled request fails fast and the enclosing
    ``RowStore.transaction`` block rolls back.

    Keys are mappings of key *field names* to values.
    """

    def __init__(self, ctx: Optional[RequestContext] = None):
        self.ctx = ctx

    def _check(self) -> None:
        if self.ctx is not None:
            self.ctx.check_cancelled()

    @abstractmethod
    def find(self, query: Query) -> List[Row]:
        ...

    @abstractmethod
    def count(self, query: Query) -> int:
        ...

    def first(self, query: Query) -> Optional[Row]:
        rows = self.find(query.take(1))
        return rows[0] if rows else None

    def get(self, entity_set: str, key: Mapping[str, Any]) -> Optional[Row]:
        return self.first(Query(entity_set).where(key_predicate(key)))

    @abstractmethod
    def create(self, entity_set: str, row: Mapping[str, Any]) -> Row:
        """Insert a row; returns it with generated values filled in."""

    @abstractmethod
    def update(self, entity_set: str, key: Mapping[str, Any], changes: Mapping[str, Any]) -> Row:
        """Apply ``changes`` (field name -> value); returns the stored row."""

    @abstractmethod
    def delete(self, entity_set: str, key: Mapping[str, Any]) -> None:
        ...

    @abstractmethod
    def association_keys(self, entity_set: str, key: Mapping[str, Any], navigation: str) -> List[KeyTuple]:
        """Key tuples of the rows currently related through ``navigation``."""

    @abstractmethod
    def append_association(
        self, entity_set: str, key: Mapping[str, Any], navigation: str, targets: Sequence[KeyTuple]
    ) -> None:
        ...

    @abstractmethod
    def replace_association(
        self, entity_set: str, key: Mapping[str, Any], navigation: str, targets: Sequence[KeyTuple]
    ) -> None:
        """Membership becomes exactly ``targets`` (empty clears)."""

    @abstractmethod
    def delete_association(
        self,
        entity_set: str,
        key: Mapping[str, Any],
        navigation: str,
        target: Optional[KeyTuple] = None,
    ) -> None:
        """Remove one edge, or every edge when ``target`` is None."""

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class RowStore(ABC):
    """Factory for transactions."""

    capabilities: StoreCapabilities = StoreCapabilities()

    @abstractmethod
    def begin(self, ctx: Optional[RequestContext] = None) -> Transaction:
        ...

    @contextmanager
    def transaction(self, ctx: Optional[RequestContext] = None) -> Iterator[Transaction]:
        """
        Run a block in one transaction.

        Examples
        --------
        >>> with store.transaction(ctx) as tx:
        ...     row = tx.create("Orders", {"CustomerID": 5})
        """
        tx = self.begin(ctx)
        try:
            yield tx
            if ctx is not None:
                ctx.check_cancelled()
        except BaseException:
            logger.debug("rolling back transaction")
            tx.rollback()
            raise
        tx.commit()
