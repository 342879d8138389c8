"""
odata_core.handlers.refs - Relationship edges ($ref)
====================================================

Direct reads and writes of ``<EntitySet>(<key>)/<Nav>/$ref``:

- GET    lists the ``@odata.id`` of every related entity
- PUT    single-valued navigation: point it at one entity
- POST   collection navigation: append one edge
- DELETE single-valued: unlink (the foreign key is cleared, nothing is
  deleted); collection-valued: remove exactly the named edge

Payload validation and ``@odata.bind`` resolution do not apply; the parent
must exist, the target must exist (except for an unlink), and ``If-Match``
is checked against the parent's ETag.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from odata_core.core.context import RequestContext
from odata_core.core.errors import NotFoundError, ValidationError
from odata_core.handlers.keys import key_from_tuple, parse_key
from odata_core.handlers.mutation import MutationResult, WriteController, check_if_match, stamp_version
from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor, copy_nullable
from odata_core.query.references import format_entity_reference
from odata_core.storage.base import KeyTuple, Row, Transaction
from odata_core.tracking.tracker import ChangeType


logger = logging.getLogger("odata_core.refs")

ODATA_ID = "@odata.id"


class ReferenceController(WriteController):
    """
    ``$ref`` operations for every entity set in a registry.

    Examples
    --------
    >>> refs = ReferenceController(registry, store, config)
    >>> result = refs.set_reference(ctx, "Orders", "1", "Customer", "Customers(5)")
    >>> refs.list_references(ctx, "Orders", "1", "Customer")
    ['http://localhost/odata/Customers(5)']
    """

    # ---------------- public API ----------------

    def list_references(self, ctx: RequestContext, entity_set: str, key: str, navigation: str) -> List[str]:
        """Canonical URLs of the entities related through ``navigation``."""
        descriptor, nav = self._navigation(entity_set, navigation)
        target = self.registry.target_of(nav)
        with self.store.transaction(ctx) as tx:
            parent = self._fetch(tx, descriptor, key)
            keys = tx.association_keys(entity_set, self._row_key(descriptor, parent), nav.name)
        return [self._url(target, k) for k in keys]

    def set_reference(
        self, ctx: RequestContext, entity_set: str, key: str, navigation: str, odata_id: Any
    ) -> MutationResult:
        """
        PUT ``$ref``: point a single-valued navigation at ``odata_id``.

        Raises
        ------
        ValidationError
            Collection navigation, or a malformed reference
        NotFoundError
            Missing parent or target
        PreconditionFailed
            ``If-Match`` does not match the parent
        """
        descriptor, nav = self._navigation(entity_set, navigation)
        if nav.navigation_is_array:
            raise ValidationError(
                f"PUT $ref requires a single-valued navigation property; '{nav.name}' is a collection, use POST",
                target=nav.name,
            )
        ref = self._odata_id(odata_id)

        with self.store.transaction(ctx) as tx:
            parent = self._fetch(tx, descriptor, key)
            check_if_match(ctx, descriptor, parent, self.config.weak_etags)
            target, target_row = self.resolver.fetch_reference(tx, nav, ref)
            parent_key = self._row_key(descriptor, parent)

            if nav.referential_constraints:
                changes: Dict[str, Any] = {}
                for dep, principal_name in descriptor.iter_constraints(nav):
                    principal = target.find_property(principal_name)
                    changes[dep.name] = copy_nullable(
                        target_row.get(principal.name), dep, self.config.null_fk_policy
                    )
                self._write(tx, descriptor, parent, changes)
            else:
                tx.replace_association(entity_set, parent_key, nav.name, [target.key_tuple(target_row)])
                self._touch(tx, descriptor, parent)
            stored = self._reload(tx, descriptor, parent)

        logger.info(f"{entity_set}{descriptor.key_tuple(parent)}/{nav.name} -> {ref}")
        self._record(descriptor, stored, ChangeType.UPDATED)
        return MutationResult(descriptor, 204)

    def add_reference(
        self, ctx: RequestContext, entity_set: str, key: str, navigation: str, odata_id: Any
    ) -> MutationResult:
        """
        POST ``$ref``: append one edge to a collection navigation.

        Appending an entity that is already related is a no-op.
        """
        descriptor, nav = self._navigation(entity_set, navigation)
        if not nav.navigation_is_array:
            raise ValidationError(
                f"POST $ref requires a collection navigation property; '{nav.name}' is single-valued, use PUT",
                target=nav.name,
            )
        ref = self._odata_id(odata_id)

        with self.store.transaction(ctx) as tx:
            parent = self._fetch(tx, descriptor, key)
            check_if_match(ctx, descriptor, parent, self.config.weak_etags)
            target, target_row = self.resolver.fetch_reference(tx, nav, ref)
            tx.append_association(
                entity_set, self._row_key(descriptor, parent), nav.name, [target.key_tuple(target_row)]
            )
            self._touch(tx, descriptor, parent)
            stored = self._reload(tx, descriptor, parent)

        logger.info(f"{entity_set}{descriptor.key_tuple(parent)}/{nav.name} += {ref}")
        self._record(descriptor, stored, ChangeType.UPDATED)
        return MutationResult(descriptor, 204)

    def remove_reference(
        self,
        ctx: RequestContext,
        entity_set: str,
        key: str,
        navigation: str,
        target: Optional[str] = None,
    ) -> MutationResult:
        """
        DELETE ``$ref``.

        Parameters
        ----------
        target : str, optional
            For collection navigations, the edge to remove: either a key
            (``2``) or a reference (``Products(2)``, as given by ``$id``).
            Ignored for single-valued navigations, which are unlinked.
        """
        descriptor, nav = self._navigation(entity_set, navigation)
        if nav.navigation_is_array and not target:
            raise ValidationError(
                f"DELETE $ref on collection '{nav.name}' requires the key of the entity to unlink",
                target=nav.name,
            )

        with self.store.transaction(ctx) as tx:
            parent = self._fetch(tx, descriptor, key)
            check_if_match(ctx, descriptor, parent, self.config.weak_etags)
            parent_key = self._row_key(descriptor, parent)

            if not nav.navigation_is_array:
                if nav.referential_constraints:
                    changes = {
                        dep.name: copy_nullable(None, dep, "zero") for dep, _ in descriptor.iter_constraints(nav)
                    }
                    self._write(tx, descriptor, parent, changes)
                else:
                    tx.delete_association(entity_set, parent_key, nav.name)
                    self._touch(tx, descriptor, parent)
            else:
                target_key = self._target_key(tx, nav, target)
                tx.delete_association(entity_set, parent_key, nav.name, target_key)
                self._touch(tx, descriptor, parent)
            stored = self._reload(tx, descriptor, parent)

        logger.info(f"{entity_set}{descriptor.key_tuple(parent)}/{nav.name} unlinked {target or ''}")
        self._record(descriptor, stored, ChangeType.UPDATED)
        return MutationResult(descriptor, 204)

    # ---------------- helpers ----------------

    def _navigation(self, entity_set: str, navigation: str) -> Tuple[EntityDescriptor, PropertyDescriptor]:
        descriptor = self.registry.by_set(entity_set)
        nav = descriptor.find_navigation(navigation)
        if nav is None:
            raise NotFoundError(
                f"navigation property '{navigation}' not found on '{descriptor.name}'", target=navigation
            )
        return descriptor, nav

    @staticmethod
    def _odata_id(body: Any) -> str:
        """Accept either the ``{"@odata.id": ...}`` body or the bare string."""
        value = body.get(ODATA_ID) if isinstance(body, dict) else body
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"request body must carry a non-empty '{ODATA_ID}'", target=ODATA_ID)
        return value.strip()

    def _target_key(self, tx: Transaction, nav: PropertyDescriptor, text: str) -> KeyTuple:
        target = self.registry.target_of(nav)
        if "(" in text:
            _, row = self.resolver.fetch_reference(tx, nav, text)
            return target.key_tuple(row)
        key = parse_key(target, text)
        row = tx.get(target.entity_set, key)
        if row is None:
            raise NotFoundError(f"entity '{target.entity_set}({text})' not found", target=target.entity_set)
        return target.key_tuple(row)

    def _write(self, tx: Transaction, descriptor: EntityDescriptor, parent: Row, changes: Dict[str, Any]) -> None:
        stamp_version(descriptor, changes, created=False, current=parent)
        tx.update(descriptor.entity_set, self._row_key(descriptor, parent), changes)

    def _touch(self, tx: Transaction, descriptor: EntityDescriptor, parent: Row) -> None:
        """Advance a server-maintained version after a link-table change."""
        changes: Dict[str, Any] = {}
        stamp_version(descriptor, changes, created=False, current=parent)
        if changes:
            tx.update(descriptor.entity_set, self._row_key(descriptor, parent), changes)

    def _url(self, target: EntityDescriptor, key: KeyTuple) -> str:
        row = key_from_tuple(target, key)
        return format_entity_reference(target.entity_set, target.key_values(row), self.config.service_root)
