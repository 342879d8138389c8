"""
odata_core.metadata.registry - Entity metadata registry
=======================================================

Immutable map from entity-set name to ``EntityDescriptor``. Built once at
startup, validated, and then passed explicitly to every component. Safe
for concurrent reads.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from odata_core.core.errors import NotFoundError
from odata_core.metadata.csdl import parse_csdl
from odata_core.metadata.descriptors import EntityDescriptor, EntityHooks, PropertyDescriptor


class EntityRegistry:
    """
    Validated, read-only collection of entity descriptors.

    Parameters
    ----------
    descriptors : iterable of EntityDescriptor

    Raises
    ------
    ValueError
        On duplicate entity sets or types, navigation targets that do not
        exist, or referential constraints naming missing properties

    Examples
    --------
    >>> registry = EntityRegistry([customers, orders])
    >>> registry.by_set("Orders").name
    'Order'
    """

    def __init__(self, descriptors: Iterable[EntityDescriptor]):
        by_set: Dict[str, EntityDescriptor] = {}
        by_type: Dict[str, EntityDescriptor] = {}
        for d in descriptors:
            if d.entity_set in by_set:
                raise ValueError(f"duplicate entity set '{d.entity_set}'")
            if d.name in by_type:
                raise ValueError(f"entity type '{d.name}' is exposed by more than one entity set")
            by_set[d.entity_set] = d
            by_type[d.name] = d
        self._by_set: Mapping[str, EntityDescriptor] = MappingProxyType(by_set)
        self._by_type: Mapping[str, EntityDescriptor] = MappingProxyType(by_type)
        self._validate()

    def _validate(self) -> None:
        for d in self._by_set.values():
            for nav in d.navigation_properties:
                target = self._by_type.get(nav.navigation_target or "")
                if target is None:
                    raise ValueError(
                        f"navigation '{d.name}.{nav.name}' targets unknown entity type '{nav.navigation_target}'"
                    )
                for dependent, principal in nav.referential_constraints.items():
                    if d.find_property(dependent) is None:
                        raise ValueError(
                            f"referential constraint on '{d.name}.{nav.name}': "
                            f"dependent property '{dependent}' not found on '{d.name}'"
                        )
                    if target.find_property(principal) is None:
                        raise ValueError(
                            f"referential constraint on '{d.name}.{nav.name}': "
                            f"principal property '{principal}' not found on '{target.name}'"
                        )
                if nav.partner and target.find_navigation(nav.partner) is None:
                    raise ValueError(
                        f"partner '{nav.partner}' of '{d.name}.{nav.name}' is not a navigation on '{target.name}'"
                    )

    # ---------------- lookups ----------------

    def __contains__(self, entity_set: object) -> bool:
        return entity_set in self._by_set

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self._by_set.values())

    def __len__(self) -> int:
        return len(self._by_set)

    def entity_sets(self) -> List[str]:
        """Sorted entity set names."""
        return sorted(self._by_set)

    def get(self, entity_set: str) -> Optional[EntityDescriptor]:
        return self._by_set.get(entity_set)

    def by_set(self, entity_set: str) -> EntityDescriptor:
        """
        Look up an entity set.

        Raises
        ------
        NotFoundError
            When the entity set does not exist
        """
        d = self._by_set.get(entity_set)
        if d is None:
            raise NotFoundError(f"entity set '{entity_set}' not found", target=entity_set)
        return d

    def by_type(self, entity_type: str) -> Optional[EntityDescriptor]:
        """Look up by entity type name (namespace qualification is ignored)."""
        return self._by_type.get(entity_type.rsplit(".", 1)[-1])

    def target_of(self, nav: PropertyDescriptor) -> EntityDescriptor:
        target = self.by_type(nav.navigation_target or "")
        if target is None:
            raise NotFoundError(f"navigation target '{nav.navigation_target}' not found")
        return target

    def foreign_key_partner(
        self, nav: PropertyDescriptor
    ) -> Optional[Tuple[EntityDescriptor, PropertyDescriptor]]:
        """
        For a collection navigation backed by a foreign key on the target
        rows, return ``(target descriptor, partner navigation)``.
        """
        if not nav.navigation_is_array or not nav.partner:
            return None
        target = self.target_of(nav)
        partner = target.find_navigation(nav.partner)
        if partner is None or partner.navigation_is_array or not partner.referential_constraints:
            return None
        return target, partner

    def resolve_property_path(self, descriptor: EntityDescriptor, path: str) -> PropertyDescriptor:
        """
        Resolve ``Prop`` or ``Nav/Prop`` to the final property.

        A path that continues past a complex property resolves to that
        complex property.

        Raises
        ------
        ValueError
            When a segment does not exist or continues past a collection
        """
        current = descriptor
        segments = [s for s in path.split("/") if s]
        if not segments:
            raise ValueError(f"empty property path {path!r}")
        for i, segment in enumerate(segments):
            prop = current.find_property(segment)
            if prop is None:
                raise ValueError(f"property '{segment}' not found on '{current.name}'")
            last = i == len(segments) - 1
            if last or prop.is_complex:
                return prop
            if not prop.is_navigation or prop.navigation_is_array:
                raise ValueError(f"property path '{path}' cannot continue past '{segment}'")
            current = self.target_of(prop)
        raise ValueError(f"invalid property path {path!r}")  # pragma: no cover

    # ---------------- construction ----------------

    @classmethod
    def from_csdl(
        cls,
        xml_text: str,
        *,
        hooks: Optional[Mapping[str, EntityHooks]] = None,
        track_changes: Iterable[str] = (),
    ) -> "EntityRegistry":
        """
        Build a registry from a CSDL ``$metadata`` document.

        Parameters
        ----------
        xml_text : str
            CSDL XML
        hooks : mapping, optional
            entity set name -> EntityHooks
        track_changes : iterable of str
            Entity sets that record change events
        """
        return cls(parse_csdl(xml_text, hooks=hooks, track_changes=track_changes))

    def __repr__(self) -> str:
        return f"EntityRegistry({', '.join(self.entity_sets())})"
