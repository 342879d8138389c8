"""
odata_core.handlers.binding - @odata.bind resolution
====================================================

Turns ``"<Nav>@odata.bind"`` payload entries into writes:

- single-valued navigation with referential constraints: the principal's
  current values are copied onto the dependent (foreign key) fields of the
  row before it is written
- single-valued navigation without constraints, and every collection
  navigation: the fetched target rows are packaged as a
  ``PendingCollectionBinding`` and applied with replace semantics once the
  owning row is persisted and has its key

Every resolution happens inside the caller's transaction; any failure
aborts it, so no entity is left half-bound.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from odata_core.core.config import ServiceConfig
from odata_core.core.errors import NotFoundError, ValidationError
from odata_core.handlers.keys import parse_key
from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor, copy_nullable
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.references import parse_entity_reference
from odata_core.storage.base import KeyTuple, Row, Transaction


logger = logging.getLogger("odata_core.binding")

BIND_SUFFIX = "@odata.bind"


@dataclass
class PendingCollectionBinding:
    """
    A deferred association replacement.

    An empty ``targets`` list is a request to clear the navigation, which
    is different from having no binding at all.
    """

    navigation: PropertyDescriptor
    target: EntityDescriptor
    targets: List[Row] = field(default_factory=list)

    @property
    def target_keys(self) -> List[KeyTuple]:
        return [self.target.key_tuple(r) for r in self.targets]


def split_bind_annotations(payload: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Separate ``@odata.bind`` entries from the rest of a payload.

    Returns
    -------
    tuple of (dict, dict)
        (navigation name -> bind value, remaining payload)
    """
    binds: Dict[str, Any] = {}
    rest: Dict[str, Any] = {}
    for k, v in payload.items():
        if k.endswith(BIND_SUFFIX):
            binds[k[: -len(BIND_SUFFIX)]] = v
        else:
            rest[k] = v
    return binds, rest


class NavigationBindingResolver:
    """
    Resolves ``@odata.bind`` annotations against the registry and the open
    transaction.

    Parameters
    ----------
    registry : EntityRegistry
    config : ServiceConfig, optional
        ``null_fk_policy`` decides how a null principal value is copied onto
        a non-nullable dependent
    """

    def __init__(self, registry: EntityRegistry, config: Optional[ServiceConfig] = None):
        self.registry = registry
        self.config = config or ServiceConfig()

    # ---------------- public API ----------------

    def resolve_for_create(
        self,
        tx: Transaction,
        descriptor: EntityDescriptor,
        row: Dict[str, Any],
        binds: Mapping[str, Any],
    ) -> List[PendingCollectionBinding]:
        """
        Resolve binds for a new row.

        Foreign key values are set on ``row`` in place; deferred bindings are
        returned for ``apply_pending`` after the row is created.
        """
        pending: List[PendingCollectionBinding] = []
        for nav_name, value in binds.items():
            nav = self._navigation(descriptor, nav_name)
            assignments, deferred = self._resolve(tx, descriptor, nav, value)
            for dep, v in assignments:
                row[dep.name] = v
            if deferred is not None:
                pending.append(deferred)
        return pending

    def resolve_for_update(
        self,
        tx: Transaction,
        descriptor: EntityDescriptor,
        row: Dict[str, Any],
        binds: Mapping[str, Any],
    ) -> Tuple[Dict[str, Any], List[PendingCollectionBinding]]:
        """
        Resolve binds for an existing row.

        Returns
        -------
        tuple of (dict, list)
            ``{wire name: value}`` foreign key changes for the caller to merge
            into the update, and the deferred bindings
        """
        changes: Dict[str, Any] = {}
        pending: List[PendingCollectionBinding] = []
        for nav_name, value in binds.items():
            nav = self._navigation(descriptor, nav_name)
            assignments, deferred = self._resolve(tx, descriptor, nav, value)
            for dep, v in assignments:
                row[dep.name] = v
                changes[dep.wire_name] = v
            if deferred is not None:
                pending.append(deferred)
        return changes, pending

    def apply_pending(
        self,
        tx: Transaction,
        descriptor: EntityDescriptor,
        row: Mapping[str, Any],
        pending: List[PendingCollectionBinding],
    ) -> None:
        """Replace each navigation's membership with exactly the bound targets."""
        key = {p.name: row.get(p.name) for p in descriptor.key_properties}
        for binding in pending:
            keys = binding.target_keys
            logger.debug(
                f"replacing {descriptor.entity_set}{tuple(key.values())}/{binding.navigation.name} "
                f"with {len(keys)} target(s)"
            )
            tx.replace_association(descriptor.entity_set, key, binding.navigation.name, keys)

    # ---------------- resolution ----------------

    def _navigation(self, descriptor: EntityDescriptor, name: str) -> PropertyDescriptor:
        nav = descriptor.find_navigation(name)
        if nav is None:
            raise ValidationError(
                f"navigation property '{name}' not found in entity '{descriptor.name}'",
                target=f"{name}{BIND_SUFFIX}",
            )
        return nav

    def _resolve(
        self,
        tx: Transaction,
        descriptor: EntityDescriptor,
        nav: PropertyDescriptor,
        value: Any,
    ) -> Tuple[List[Tuple[PropertyDescriptor, Any]], Optional[PendingCollectionBinding]]:
        if nav.navigation_is_array:
            return [], self._resolve_collection(tx, nav, value)
        if not isinstance(value, str):
            raise ValidationError(
                f"@odata.bind value for single-valued navigation property '{nav.name}' must be a string, "
                f"got {type(value).__name__}",
                target=f"{nav.name}{BIND_SUFFIX}",
            )
        target, target_row = self.fetch_reference(tx, nav, value)
        if not nav.referential_constraints:
            return [], PendingCollectionBinding(nav, target, [target_row])

        assignments: List[Tuple[PropertyDescriptor, Any]] = []
        for dep, principal_name in descriptor.iter_constraints(nav):
            principal = target.find_property(principal_name)
            if principal is None:
                raise ValidationError(f"principal property '{principal_name}' not found in '{target.name}'")
            assignments.append(
                (dep, copy_nullable(target_row.get(principal.name), dep, self.config.null_fk_policy))
            )
        logger.debug(f"bound {descriptor.name}.{nav.name} -> {value}")
        return assignments, None

    def _resolve_collection(
        self, tx: Transaction, nav: PropertyDescriptor, value: Any
    ) -> PendingCollectionBinding:
        if not isinstance(value, list):
            raise ValidationError(
                f"@odata.bind value for collection navigation property '{nav.name}' must be an array, "
                f"got {type(value).__name__}",
                target=f"{nav.name}{BIND_SUFFIX}",
            )
        target = self.registry.target_of(nav)
        if not value:
            return PendingCollectionBinding(nav, target, [])

        entity_set: Optional[str] = None
        rows: List[Row] = []
        for i, ref in enumerate(value):
            if not isinstance(ref, str):
                raise ValidationError(
                    f"@odata.bind array elements must be strings; element {i} is {type(ref).__name__}",
                    target=f"{nav.name}{BIND_SUFFIX}",
                )
            ref_set, _ = parse_entity_reference(ref)
            if entity_set is None:
                entity_set = ref_set
            elif ref_set != entity_set:
                raise ValidationError(
                    f"all references in collection must be from the same entity set; element {i} "
                    f"references '{ref_set}', expected '{entity_set}'",
                    target=f"{nav.name}{BIND_SUFFIX}",
                )
            _, row = self.fetch_reference(tx, nav, ref)
            rows.append(row)
        return PendingCollectionBinding(nav, target, rows)

    def fetch_reference(self, tx: Transaction, nav: PropertyDescriptor, ref: str) -> Tuple[EntityDescriptor, Row]:
        """
        Load the entity an ``@odata.bind`` or ``@odata.id`` value points at.

        Raises
        ------
        NotFoundError
            Unknown entity set or missing entity
        ValidationError
            Malformed reference, or an entity set of the wrong type
        """
        entity_set, key_text = parse_entity_reference(ref)
        target = self.registry.get(entity_set)
        if target is None:
            raise NotFoundError(f"entity set '{entity_set}' not found", target=entity_set)
        if target.name != nav.navigation_target:
            raise ValidationError(
                f"entity set '{entity_set}' does not match navigation target '{nav.navigation_target}'",
                target=nav.name,
            )
        key = parse_key(target, key_text)
        row = tx.get(entity_set, key)
        if row is None:
            raise NotFoundError(f"referenced entity '{entity_set}({key_text})' not found", target=entity_set)
        return target, row
