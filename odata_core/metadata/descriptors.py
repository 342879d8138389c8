"""
odata_core.metadata.descriptors - Entity and property descriptors
=================================================================

Declarative, immutable descriptions of entity types. Rows are plain dicts
keyed by property *name*; descriptors provide the typed getters/setters,
key extraction and wire-name mapping the handlers need, so no component
has to introspect row objects.
"""

from __future__ import annotations

import datetime as dt
import decimal
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from odata_core.core.errors import ValidationError


_ZERO_VALUES: Dict[type, Any] = {
    int: 0,
    float: 0.0,
    str: "",
    bool: False,
    decimal.Decimal: decimal.Decimal(0),
}


@dataclass(frozen=True)
class PropertyDescriptor:
    """
    One structural or navigation property of an entity type.

    Attributes
    ----------
    name : str
        Field identity; the key used in row dicts
    wire_name : str
        Name used in JSON payloads, skip tokens and change events
        (defaults to ``name``)
    type : type
        Python type of structural values (int, str, float, bool, Decimal,
        datetime, date, UUID)
    is_key : bool
        Part of the entity key
    nullable : bool
        Whether ``None`` is a legal value
    is_required : bool
        Must be supplied on create
    is_auto : bool
        Server generated (auto-increment key, computed column)
    is_navigation : bool
        Relationship to another entity type
    navigation_target : str, optional
        Entity type name of the related type
    navigation_is_array : bool
        Collection-valued navigation
    referential_constraints : mapping
        dependent property name (on this type) -> principal property name
        (on the target type)
    is_complex : bool
        Complex-typed structural property (not filterable/sortable directly)
    is_searchable : bool
        Considered by in-memory ``$search``
    partner : str, optional
        Navigation property on the target type pointing back here. A
        collection navigation whose partner carries the referential
        constraints is stored as a foreign key on the target rows.
    """

    name: str
    wire_name: str = ""
    type: type = str
    is_key: bool = False
    nullable: bool = True
    is_required: bool = False
    is_auto: bool = False
    is_navigation: bool = False
    navigation_target: Optional[str] = None
    navigation_is_array: bool = False
    referential_constraints: Mapping[str, str] = field(default_factory=dict)
    is_complex: bool = False
    is_searchable: bool = False
    partner: Optional[str] = None
    default: Any = None

    def __post_init__(self) -> None:
        if not self.wire_name:
            object.__setattr__(self, "wire_name", self.name)
        object.__setattr__(
            self, "referential_constraints", MappingProxyType(dict(self.referential_constraints))
        )
        if self.is_key:
            object.__setattr__(self, "nullable", False)
        if self.is_navigation and not self.navigation_target:
            raise ValueError(f"navigation property '{self.name}' needs a navigation_target")

    # ---------------- constructors ----------------

    @classmethod
    def key(cls, name: str, type_: type = int, *, auto: bool = False, **kw: Any) -> "PropertyDescriptor":
        return cls(name, type=type_, is_key=True, is_auto=auto, **kw)

    @classmethod
    def navigation(
        cls,
        name: str,
        target: str,
        *,
        many: bool = False,
        constraints: Optional[Mapping[str, str]] = None,
        **kw: Any,
    ) -> "PropertyDescriptor":
        return cls(
            name,
            is_navigation=True,
            navigation_target=target,
            navigation_is_array=many,
            referential_constraints=constraints or {},
            type=object,
            **kw,
        )

    # ---------------- values ----------------

    def zero_value(self) -> Any:
        """The type's zero value (``None`` when the type has none)."""
        return _ZERO_VALUES.get(self.type)

    def convert(self, value: Any) -> Any:
        """
        Convert a JSON-decoded value to this property's Python type.

        Raises
        ------
        ValidationError
            When the value cannot represent this type
        """
        if value is None or self.is_navigation or self.type is object:
            return value
        t = self.type
        try:
            if isinstance(value, t) and not (t is int and isinstance(value, bool)):
                return value
            if t is bool:
                if isinstance(value, str) and value.lower() in ("true", "false"):
                    return value.lower() == "true"
                raise TypeError("not a boolean")
            if t is int:
                if isinstance(value, bool):
                    raise TypeError("boolean is not an integer")
                if isinstance(value, float) and not value.is_integer():
                    raise TypeError("fractional value")
                return int(value)
            if t is float:
                if isinstance(value, bool):
                    raise TypeError("boolean is not a number")
                return float(value)
            if t is decimal.Decimal:
                return decimal.Decimal(str(value))
            if t is dt.datetime and isinstance(value, str):
                return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
            if t is dt.date and isinstance(value, str):
                return dt.date.fromisoformat(value)
            if t is uuid.UUID and isinstance(value, str):
                return uuid.UUID(value)
            if t is str:
                if isinstance(value, (dict, list, bool)):
                    raise TypeError("not a string")
                return str(value)
        except (TypeError, ValueError, decimal.InvalidOperation) as e:
            raise ValidationError(
                f"invalid value for property '{self.wire_name}': {value!r} ({e})",
                code="Invalid data type",
                target=self.wire_name,
            ) from e
        raise ValidationError(
            f"invalid value for property '{self.wire_name}': expected {t.__name__}, got {type(value).__name__}",
            code="Invalid data type",
            target=self.wire_name,
        )

    def convert_literal(self, text: str) -> Any:
        """Convert a URL key literal (already unquoted) to this property's type."""
        if self.type is str:
            return text
        if text == "null":
            return None
        return self.convert(text)


def copy_nullable(value: Any, dependent: PropertyDescriptor, policy: str = "error") -> Any:
    """
    The one conversion used when a principal value is copied onto a dependent
    (foreign key) property.

    - non-null value: converted to the dependent's type
    - null onto a nullable dependent: stays ``None``
    - null onto a non-nullable dependent: ``policy="error"`` raises
      ``ValidationError``; ``policy="zero"`` stores the type's zero value
    """
    if value is not None:
        return dependent.convert(value)
    if dependent.nullable:
        return None
    if policy == "zero":
        return dependent.zero_value()
    raise ValidationError(
        f"cannot assign null to non-nullable property '{dependent.wire_name}'",
        target=dependent.wire_name,
    )


# Hook signatures:
#   before_read_collection(ctx, options) -> list of scopes or None
#   after_read_collection(ctx, options, rows) -> replacement rows or None
#   before_read_entity(ctx, options) -> list of scopes or None
#   after_read_entity(ctx, options, row) -> replacement row or None
#   before_create / after_create(ctx, row)
#   before_update(ctx, row, changes) / after_update(ctx, row)
#   before_delete / after_delete(ctx, row)
HookFn = Callable[..., Any]


@dataclass(frozen=True)
class EntityHooks:
    """Optional lifecycle callbacks for one entity type."""

    before_read_collection: Optional[HookFn] = None
    after_read_collection: Optional[HookFn] = None
    before_read_entity: Optional[HookFn] = None
    after_read_entity: Optional[HookFn] = None
    before_create: Optional[HookFn] = None
    after_create: Optional[HookFn] = None
    before_update: Optional[HookFn] = None
    after_update: Optional[HookFn] = None
    before_delete: Optional[HookFn] = None
    after_delete: Optional[HookFn] = None

    def has(self, name: str) -> bool:
        return getattr(self, name, None) is not None


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Immutable description of an entity type and the entity set exposing it.

    Parameters
    ----------
    name : str
        Entity type name, e.g. "Order"
    entity_set : str
        Entity set name, e.g. "Orders"
    properties : sequence of PropertyDescriptor
        Structural and navigation properties, in declaration order
    etag_property : str, optional
        Name of the property whose value versions the entity
    hooks : EntityHooks
        Lifecycle callbacks
    track_changes : bool
        Record change events for delta responses

    Examples
    --------
    >>> P = PropertyDescriptor
    >>> orders = EntityDescriptor(
    ...     "Order", "Orders",
    ...     [P.key("ID", int, auto=True), P("CustomerID", type=int),
    ...      P.navigation("Customer", "Customer", constraints={"CustomerID": "ID"})],
    ... )
    """

    name: str
    entity_set: str
    properties: Tuple[PropertyDescriptor, ...]
    etag_property: Optional[str] = None
    hooks: EntityHooks = field(default_factory=EntityHooks)
    track_changes: bool = False
    namespace: str = "ODataService"

    def __post_init__(self) -> None:
        props = tuple(self.properties)
        object.__setattr__(self, "properties", props)
        keys = tuple(p for p in props if p.is_key)
        if not keys:
            raise ValueError(f"entity type '{self.name}' must declare at least one key property")
        lookup: Dict[str, PropertyDescriptor] = {}
        for p in props:
            if p.name in lookup:
                raise ValueError(f"duplicate property '{p.name}' on entity type '{self.name}'")
            lookup[p.name] = p
        for p in props:
            lookup.setdefault(p.wire_name, p)
        object.__setattr__(self, "_keys", keys)
        object.__setattr__(self, "_lookup", MappingProxyType(lookup))
        if self.etag_property is not None:
            ep = lookup.get(self.etag_property)
            if ep is None or ep.is_navigation:
                raise ValueError(
                    f"etag property '{self.etag_property}' is not a structural property of '{self.name}'"
                )

    # ---------------- lookups ----------------

    @property
    def key_properties(self) -> Tuple[PropertyDescriptor, ...]:
        return self._keys  # type: ignore[attr-defined]

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"

    @property
    def structural_properties(self) -> List[PropertyDescriptor]:
        return [p for p in self.properties if not p.is_navigation]

    @property
    def navigation_properties(self) -> List[PropertyDescriptor]:
        return [p for p in self.properties if p.is_navigation]

    @property
    def etag(self) -> Optional[PropertyDescriptor]:
        return self.find_property(self.etag_property) if self.etag_property else None

    def find_property(self, name: str) -> Optional[PropertyDescriptor]:
        """Find a property by field name or wire name."""
        return self._lookup.get(name)  # type: ignore[attr-defined]

    def find_navigation(self, name: str) -> Optional[PropertyDescriptor]:
        prop = self.find_property(name)
        return prop if prop is not None and prop.is_navigation else None

    # ---------------- row access ----------------

    def get_field(self, row: Mapping[str, Any], name: str) -> Any:
        prop = self.find_property(name)
        if prop is None:
            raise KeyError(f"'{self.name}' has no property '{name}'")
        return row.get(prop.name)

    def set_field(self, row: Dict[str, Any], name: str, value: Any) -> None:
        prop = self.find_property(name)
        if prop is None:
            raise KeyError(f"'{self.name}' has no property '{name}'")
        row[prop.name] = value

    def key_values(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Key values keyed by wire name."""
        return {p.wire_name: row.get(p.name) for p in self.key_properties}

    def key_tuple(self, row: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(row.get(p.name) for p in self.key_properties)

    def to_wire(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Structural values keyed by wire name, in declaration order."""
        out: Dict[str, Any] = {}
        for p in self.structural_properties:
            if p.name in row:
                out[p.wire_name] = row[p.name]
        return out

    def new_row(self) -> Dict[str, Any]:
        """A row with every structural property set to its default."""
        return {p.name: p.default for p in self.structural_properties}

    def iter_constraints(self, nav: PropertyDescriptor) -> Iterable[Tuple[PropertyDescriptor, str]]:
        """Yield (dependent property descriptor, principal property name) pairs."""
        for dependent, principal in nav.referential_constraints.items():
            dep = self.find_property(dependent)
            if dep is None:
                raise ValueError(f"dependent property '{dependent}' not found on '{self.name}'")
            yield dep, principal
