"""
odata_core.metadata.csdl - CSDL $metadata parsing
=================================================

Builds entity descriptors from a CSDL XML document (OData v4).
"""

from __future__ import annotations

import datetime as dt
import decimal
import uuid
import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from odata_core.metadata.descriptors import EntityDescriptor, EntityHooks, PropertyDescriptor


EDM_TYPES: Dict[str, type] = {
    "Edm.String": str,
    "Edm.Boolean": bool,
    "Edm.Byte": int,
    "Edm.SByte": int,
    "Edm.Int16": int,
    "Edm.Int32": int,
    "Edm.Int64": int,
    "Edm.Single": float,
    "Edm.Double": float,
    "Edm.Decimal": decimal.Decimal,
    "Edm.DateTimeOffset": dt.datetime,
    "Edm.Date": dt.date,
    "Edm.Guid": uuid.UUID,
}


def _strip_ns(tag: str) -> str:
    """Strip XML namespace from a tag name."""
    return tag.split("}", 1)[-1] if "}" in tag else tag


def _children(node: ET.Element, tag: str) -> List[ET.Element]:
    return [c for c in node if _strip_ns(c.tag) == tag]


def _is_term(node: ET.Element, term: str) -> bool:
    """Match an annotation by the last segment of its term (namespace or alias qualified)."""
    return _strip_ns(node.tag) == "Annotation" and node.attrib.get("Term", "").rsplit(".", 1)[-1] == term


def _annotated(node: ET.Element, term: str) -> bool:
    for a in _children(node, "Annotation"):
        if _is_term(a, term):
            return a.attrib.get("Bool", "true").lower() != "false"
    return False


def _concurrency_property(node: ET.Element) -> Optional[str]:
    """First PropertyPath of a Core.OptimisticConcurrency annotation."""
    for a in _children(node, "Annotation"):
        if not _is_term(a, "OptimisticConcurrency"):
            continue
        for n in a.iter():
            if _strip_ns(n.tag) == "PropertyPath" and (n.text or "").strip():
                return n.text.strip()
    return None


def _parse_property(node: ET.Element, keys: Iterable[str]) -> PropertyDescriptor:
    name = node.attrib["Name"]
    edm = node.attrib.get("Type", "Edm.String")
    is_key = name in keys
    py_type = EDM_TYPES.get(edm)
    computed = _annotated(node, "Computed")
    nullable = node.attrib.get("Nullable", "true").lower() != "false"
    return PropertyDescriptor(
        name,
        type=py_type if py_type is not None else dict,
        is_key=is_key,
        nullable=nullable,
        is_required=not nullable and not computed and not is_key,
        is_auto=computed,
        is_complex=py_type is None and not edm.startswith("Collection(Edm."),
        is_searchable=py_type is str,
    )


def _parse_navigation(node: ET.Element) -> PropertyDescriptor:
    raw_type = node.attrib.get("Type", "")
    many = raw_type.startswith("Collection(") and raw_type.endswith(")")
    target = raw_type[len("Collection(") : -1] if many else raw_type
    constraints = {
        c.attrib["Property"]: c.attrib["ReferencedProperty"]
        for c in _children(node, "ReferentialConstraint")
        if "Property" in c.attrib and "ReferencedProperty" in c.attrib
    }
    return PropertyDescriptor.navigation(
        node.attrib["Name"],
        target.rsplit(".", 1)[-1],
        many=many,
        constraints=constraints,
        partner=node.attrib.get("Partner") or None,
        nullable=node.attrib.get("Nullable", "true").lower() != "false",
    )


def parse_csdl(
    xml_text: str,
    *,
    hooks: Optional[Mapping[str, EntityHooks]] = None,
    track_changes: Iterable[str] = (),
) -> List[EntityDescriptor]:
    """
    Parse entity types and entity sets from CSDL XML.

    Parameters
    ----------
    xml_text : str
        The ``$metadata`` document
    hooks : mapping, optional
        entity set name -> EntityHooks
    track_changes : iterable of str
        Entity sets that record change events

    Returns
    -------
    list of EntityDescriptor
        One per entity set, in document order

    Raises
    ------
    ValueError
        When the document is not well-formed or an entity set references an
        unknown type
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise ValueError(f"invalid CSDL document: {e}") from e

    hooks = hooks or {}
    tracked = set(track_changes)

    # Collect EntityType -> (namespace, properties, etag)
    types: Dict[str, Tuple[str, List[PropertyDescriptor], Optional[str]]] = {}
    for schema in root.iter():
        if _strip_ns(schema.tag) != "Schema":
            continue
        namespace = schema.attrib.get("Namespace", "ODataService")
        for node in _children(schema, "EntityType"):
            et_name = node.attrib.get("Name")
            if not et_name:
                continue
            keys = [
                ref.attrib["Name"]
                for key in _children(node, "Key")
                for ref in _children(key, "PropertyRef")
                if "Name" in ref.attrib
            ]
            props: List[PropertyDescriptor] = []
            for c in node:
                tag = _strip_ns(c.tag)
                if tag == "Property" and c.attrib.get("Name"):
                    props.append(_parse_property(c, keys))
                elif tag == "NavigationProperty" and c.attrib.get("Name"):
                    props.append(_parse_navigation(c))
            types[et_name] = (namespace, props, _concurrency_property(node))

    # Find EntitySets in EntityContainer
    descriptors: List[EntityDescriptor] = []
    for node in root.iter():
        if _strip_ns(node.tag) != "EntitySet":
            continue
        es_name = node.attrib.get("Name")
        et_full = node.attrib.get("EntityType")
        if not es_name or not et_full:
            continue
        et_name = et_full.rsplit(".", 1)[-1]
        if et_name not in types:
            raise ValueError(f"entity set '{es_name}' references unknown entity type '{et_full}'")
        namespace, props, type_etag = types[et_name]
        descriptors.append(
            EntityDescriptor(
                et_name,
                es_name,
                tuple(props),
                etag_property=_concurrency_property(node) or type_etag,
                hooks=hooks.get(es_name, EntityHooks()),
                track_changes=es_name in tracked,
                namespace=namespace,
            )
        )
    return descriptors
