"""
odata_core.handlers.keys - Entity key resolution
================================================

Turns the raw key text of ``EntitySet(<key>)`` into typed key values.
"""

from __future__ import annotations

from typing import Any, Dict

from odata_core.core.errors import ValidationError
from odata_core.metadata.descriptors import EntityDescriptor
from odata_core.query.references import parse_composite_key, unquote_literal


def parse_key(descriptor: EntityDescriptor, key: str) -> Dict[str, Any]:
    """
    Parse key text against an entity type.

    Parameters
    ----------
    descriptor : EntityDescriptor
        Entity type the key addresses
    key : str
        ``1``, ``'ALFKI'`` or ``OrderID=1,Line=2``

    Returns
    -------
    dict
        key field name -> typed value

    Raises
    ------
    ValidationError
        When parts are missing, unknown or of the wrong type
    """
    keys = descriptor.key_properties
    try:
        parts = parse_composite_key(key)
    except ValueError:
        if len(keys) != 1:
            raise ValidationError(
                f"entity '{descriptor.name}' has a composite key; all of "
                f"{[p.wire_name for p in keys]} must be named"
            ) from None
        prop = keys[0]
        return {prop.name: prop.convert_literal(unquote_literal(key))}

    out: Dict[str, Any] = {}
    for name, literal in parts.items():
        prop = descriptor.find_property(name)
        if prop is None or not prop.is_key:
            raise ValidationError(f"'{name}' is not a key property of '{descriptor.name}'")
        out[prop.name] = prop.convert_literal(literal)
    missing = [p.wire_name for p in keys if p.name not in out]
    if missing:
        raise ValidationError(f"missing key properties {missing} for '{descriptor.name}'")
    return out


def key_from_tuple(descriptor: EntityDescriptor, values: tuple) -> Dict[str, Any]:
    return {p.name: v for p, v in zip(descriptor.key_properties, values)}
