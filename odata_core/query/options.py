"""
odata_core.query.options - Parsed query options
===============================================

The grammar for ``$filter``, ``$apply`` and ``$compute`` lives outside this
package. What arrives here is already parsed: simple scalars for the paging
options and an opaque expression tree for the filter. The execution core
only walks the tree far enough to validate property usage.
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Set, Tuple


LAMBDA_OPERATORS = ("any", "all")


@dataclass(frozen=True)
class OrderByItem:
    """One ``$orderby`` term."""

    property: str
    descending: bool = False

    def __str__(self) -> str:
        return f"{self.property} desc" if self.descending else self.property


@dataclass(frozen=True)
class FilterExpression:
    """
    A node of a parsed ``$filter`` tree.

    Only ``property``, ``operator``, ``left`` and ``right`` are interpreted by
    the execution core; ``value`` and ``args`` are passed to the storage
    layer's filter evaluator untouched. For ``any``/``all`` nodes,
    ``property`` names the navigation property and ``left`` holds the lambda
    predicate.
    """

    operator: str = ""
    property: Optional[str] = None
    value: Any = None
    left: Optional["FilterExpression"] = None
    right: Optional["FilterExpression"] = None
    args: Tuple[Any, ...] = ()

    # the `property` field shadows the builtin in this class body
    @builtins.property
    def is_lambda(self) -> bool:
        return self.operator in LAMBDA_OPERATORS


@dataclass(frozen=True)
class ComputeExpression:
    """A ``$compute`` item; only the alias matters here."""

    alias: str
    expression: Any = None


@dataclass
class QueryOptions:
    """
    Parsed system query options for one request.

    Attributes
    ----------
    top, skip : int, optional
        Paging options
    order_by : list of OrderByItem
    select, expand : list of str
    count : bool
        ``$count=true``
    search : str, optional
    skip_token, delta_token : str, optional
        Opaque cursors issued by this server
    filter : FilterExpression, optional
    apply : list
        Opaque ``$apply`` transformations; items may expose an ``aliases``
        attribute listing the names they introduce
    compute : list of ComputeExpression
    """

    top: Optional[int] = None
    skip: Optional[int] = None
    order_by: List[OrderByItem] = field(default_factory=list)
    select: List[str] = field(default_factory=list)
    expand: List[str] = field(default_factory=list)
    count: bool = False
    search: Optional[str] = None
    skip_token: Optional[str] = None
    delta_token: Optional[str] = None
    filter: Optional[FilterExpression] = None
    apply: List[Any] = field(default_factory=list)
    compute: List[ComputeExpression] = field(default_factory=list)

    def computed_aliases(self) -> Set[str]:
        """Names introduced by ``$compute`` and ``$apply``."""
        aliases = {c.alias for c in self.compute if c.alias}
        for transformation in self.apply:
            aliases.update(getattr(transformation, "aliases", ()) or ())
        return aliases

    def with_top(self, top: Optional[int]) -> "QueryOptions":
        return replace(self, top=top)

    @classmethod
    def from_params(cls, params: Any) -> "QueryOptions":
        """
        Build options from raw URL parameters.

        Handles the scalar options only (``$top``, ``$skip``, ``$orderby``,
        ``$select``, ``$expand``, ``$count``, ``$search``, ``$skiptoken``,
        ``$deltatoken``); expression options need the external parser.

        Raises
        ------
        ValueError
            On malformed numbers or booleans
        """
        get = params.get

        def _int(name: str) -> Optional[int]:
            raw = get(name)
            if raw is None or raw == "":
                return None
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{name} must be an integer, got {raw!r}") from None

        def _list(name: str) -> List[str]:
            raw = get(name) or ""
            return [p.strip() for p in raw.split(",") if p.strip()]

        order_by: List[OrderByItem] = []
        for term in _list("$orderby"):
            parts = term.split()
            if len(parts) > 2 or (len(parts) == 2 and parts[1].lower() not in ("asc", "desc")):
                raise ValueError(f"invalid $orderby term {term!r}")
            order_by.append(OrderByItem(parts[0], len(parts) == 2 and parts[1].lower() == "desc"))

        count_raw = (get("$count") or "").strip().lower()
        if count_raw not in ("", "true", "false"):
            raise ValueError(f"$count must be true or false, got {count_raw!r}")

        return cls(
            top=_int("$top"),
            skip=_int("$skip"),
            order_by=order_by,
            select=_list("$select"),
            expand=_list("$expand"),
            count=count_raw == "true",
            search=get("$search") or None,
            skip_token=get("$skiptoken") or None,
            delta_token=get("$deltatoken") or None,
        )
