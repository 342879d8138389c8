"""
odata_core.query.skiptoken - Server-driven paging cursors
=========================================================

A skip token records the sort-column and key values of the last row of a
page. The next request resumes strictly after that row with a seek
predicate, so paging stays correct when rows are inserted or deleted
between requests (unlike ``$skip`` offsets).

Ordering is made total by appending every key column (ascending) after the
``$orderby`` terms; the seek predicate compares the full tuple
lexicographically, so duplicate values in any sort column can neither skip
nor repeat rows at a page boundary.

The encoding is base64url JSON and is not stable across server versions.
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt
import decimal
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor
from odata_core.query.options import OrderByItem
from odata_core.storage.base import And, Comparison, Or, Predicate


@dataclass
class SkipToken:
    """Key and ``$orderby`` values of one row, keyed by wire name."""

    key_values: Dict[str, Any] = field(default_factory=dict)
    order_by_values: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SeekColumn:
    """One column of the total order used for paging."""

    prop: PropertyDescriptor
    descending: bool = False
    from_order_by: bool = True


def _json_default(value: Any) -> Any:
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, (decimal.Decimal, uuid.UUID)):
        return str(value)
    raise TypeError(f"value of type {type(value).__name__} cannot be stored in a skip token")


def encode(token: SkipToken) -> str:
    """
    Serialise a token.

    Raises
    ------
    ValueError
        When the token is missing or holds values JSON cannot represent
    """
    if token is None:
        raise ValueError("cannot encode an empty skip token")
    try:
        payload = json.dumps(
            {"k": token.key_values, "o": token.order_by_values},
            default=_json_default,
            separators=(",", ":"),
            sort_keys=True,
        )
    except TypeError as e:
        raise ValueError(str(e)) from e
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode(text: str) -> SkipToken:
    """
    Parse a token issued by ``encode``.

    Values come back as JSON types; ``seek_predicate`` converts them to the
    property types.

    Raises
    ------
    ValueError
        When the text is empty, not base64url, or not a token
    """
    if not text:
        raise ValueError("empty skip token")
    try:
        raw = base64.urlsafe_b64decode(text.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValueError(f"malformed skip token: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("malformed skip token: not an object")
    keys, order = data.get("k"), data.get("o", {})
    if not isinstance(keys, dict) or not keys or not isinstance(order, dict):
        raise ValueError("malformed skip token: missing key values")
    return SkipToken(key_values=keys, order_by_values=order)


def seek_columns(descriptor: EntityDescriptor, order_by: Sequence[OrderByItem]) -> List[SeekColumn]:
    """
    The ``$orderby`` terms followed by every key column not already sorted
    on (ascending).

    Raises
    ------
    ValueError
        When a term is not a direct structural property (property paths and
        computed aliases cannot be sought on)
    """
    columns: List[SeekColumn] = []
    seen = set()
    for item in order_by:
        prop = descriptor.find_property(item.property)
        if prop is None or prop.is_navigation or prop.is_complex:
            raise ValueError(f"cannot page on ordering term '{item.property}'")
        if prop.name in seen:
            continue
        seen.add(prop.name)
        columns.append(SeekColumn(prop, item.descending, True))
    for prop in descriptor.key_properties:
        if prop.name not in seen:
            seen.add(prop.name)
            columns.append(SeekColumn(prop, False, False))
    return columns


def _row_value(row: Mapping[str, Any], prop: PropertyDescriptor) -> Any:
    if prop.name in row:
        return row[prop.name]
    if prop.wire_name in row:
        return row[prop.wire_name]
    raise KeyError(prop.wire_name)


def extract_from_row(
    row: Mapping[str, Any], descriptor: EntityDescriptor, order_by: Sequence[OrderByItem]
) -> SkipToken:
    """
    Build the token for ``row`` (the last row of a page).

    Raises
    ------
    ValueError
        When the row lacks a key or sort column (e.g. projected away)
    """
    token = SkipToken()
    try:
        for prop in descriptor.key_properties:
            token.key_values[prop.wire_name] = _row_value(row, prop)
        for col in seek_columns(descriptor, order_by):
            if col.from_order_by:
                token.order_by_values[col.prop.wire_name] = _row_value(row, col.prop)
    except KeyError as e:
        raise ValueError(f"row has no value for {e.args[0]!r}") from None
    return token


def _token_value(token: SkipToken, col: SeekColumn) -> Any:
    source = token.order_by_values if col.from_order_by else token.key_values
    wire = col.prop.wire_name
    if wire not in source:
        if wire in token.key_values:
            source = token.key_values
        else:
            raise ValueError(f"skip token has no value for '{wire}'")
    return col.prop.convert(source[wire])


def seek_predicate(token: SkipToken, descriptor: EntityDescriptor, order_by: Sequence[OrderByItem]) -> Predicate:
    """
    Rows strictly after the token's row in the total order.

    For columns c1..cn with token values v1..vn::

        (c1 > v1) OR (c1 = v1 AND c2 > v2) OR ... OR (c1 = v1 AND ... AND cn > vn)

    with ``<`` in place of ``>`` for descending columns.

    Raises
    ------
    ValueError
        When the token does not fit the current ordering
    """
    columns = seek_columns(descriptor, order_by)
    values = [_token_value(token, c) for c in columns]
    branches: List[Predicate] = []
    for i, col in enumerate(columns):
        terms: List[Predicate] = [Comparison(columns[j].prop.name, "eq", values[j]) for j in range(i)]
        terms.append(Comparison(col.prop.name, "lt" if col.descending else "gt", values[i]))
        branches.append(terms[0] if len(terms) == 1 else And(tuple(terms)))
    return branches[0] if len(branches) == 1 else Or(tuple(branches))
