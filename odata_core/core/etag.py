"""
odata_core.core.etag - Entity tags
==================================

ETags are derived from the single property an entity type declares as its
concurrency token. The value is hashed, so clients never see the raw
version column.
"""

from __future__ import annotations

import datetime as dt
import hashlib
from typing import Any, List, Mapping, Optional

from odata_core.metadata.descriptors import EntityDescriptor


def _source_text(value: Any) -> str:
    if isinstance(value, dt.datetime):
        return str(int(value.timestamp()))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def generate(row: Mapping[str, Any], descriptor: EntityDescriptor, *, weak: bool = True) -> str:
    """
    Compute the ETag of a row.

    Parameters
    ----------
    row : mapping
        Row keyed by field name (wire names are accepted too, for projected rows)
    descriptor : EntityDescriptor
        The row's entity type
    weak : bool
        Prefix with ``W/``

    Returns
    -------
    str
        ``W/"<sha256 hex>"``, or "" when the type has no ETag property or the
        value is missing
    """
    prop = descriptor.etag
    if prop is None:
        return ""
    value = row.get(prop.name)
    if value is None:
        value = row.get(prop.wire_name)
    if value is None:
        return ""
    digest = hashlib.sha256(_source_text(value).encode("utf-8")).hexdigest()
    return f'W/"{digest}"' if weak else f'"{digest}"'


def parse(header: Optional[str]) -> str:
    """Strip the weak prefix and the surrounding quotes from one entity tag."""
    if not header:
        return ""
    value = header.strip()
    if value.startswith("W/"):
        value = value[2:]
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


def _candidates(header: str) -> List[str]:
    return [parse(part) for part in header.split(",") if part.strip()]


def matches(if_match: Optional[str], current: str) -> bool:
    """
    Evaluate an ``If-Match`` precondition.

    An absent header always passes. ``*`` passes for any existing entity
    (one that has an ETag). Otherwise any listed tag must equal the current
    one (weak comparison).
    """
    if not if_match or not if_match.strip():
        return True
    if if_match.strip() == "*":
        return current != ""
    return parse(current) in _candidates(if_match)


def none_match(if_none_match: Optional[str], current: str) -> bool:
    """
    Evaluate an ``If-None-Match`` precondition.

    Returns False when the client's copy is current (the caller answers 304).
    """
    if not if_none_match or not if_none_match.strip():
        return True
    if if_none_match.strip() == "*":
        return current == ""
    return parse(current) not in _candidates(if_none_match)
