"""
odata_core.query.references - Entity reference parsing
======================================================

Entity references appear in ``@odata.bind`` values, ``@odata.id`` bodies of
``$ref`` requests and in ``$ref`` responses. Accepted forms::

    Categories(1)
    /service/Categories(1)
    http://host/service/Categories(1)
    Products(ProductID=1,LanguageKey='en')
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlsplit

from odata_core.core.errors import ValidationError


def escape_odata_literal(value: str) -> str:
    """
    Escape a string value for use inside single quotes.

    Examples
    --------
    >>> escape_odata_literal("O'Brien")
    "O''Brien"
    """
    return value.replace("'", "''")


def parse_entity_reference(ref: str) -> Tuple[str, str]:
    """
    Split an entity reference into entity set name and raw key text.

    Parameters
    ----------
    ref : str
        Bare, root-relative or absolute reference

    Returns
    -------
    tuple of (str, str)
        ``("Categories", "1")`` or ``("Products", "ProductID=1,LanguageKey='en'")``

    Raises
    ------
    ValidationError
        When there is no key in parentheses or the parentheses are unbalanced
    """
    if not isinstance(ref, str):
        raise ValidationError(f"entity reference must be a string, got {type(ref).__name__}")
    text = ref.strip()
    if text.startswith(("http://", "https://")):
        text = urlsplit(text).path
    text = unquote(text).lstrip("/")

    open_paren = text.find("(")
    if open_paren == -1:
        raise ValidationError(f"entity reference must include key in parentheses: {ref!r}")
    close_paren = text.rfind(")")
    if close_paren <= open_paren:
        raise ValidationError(f"entity reference has invalid key format: {ref!r}")
    if _paren_depth_error(text[open_paren : close_paren + 1]):
        raise ValidationError(f"entity reference has unbalanced parentheses: {ref!r}")

    entity_set = text[:open_paren].rsplit("/", 1)[-1]
    if not entity_set:
        raise ValidationError(f"entity reference has no entity set name: {ref!r}")
    key = text[open_paren + 1 : close_paren]
    if not key.strip():
        raise ValidationError(f"entity reference has an empty key: {ref!r}")
    return entity_set, key


def _paren_depth_error(segment: str) -> bool:
    depth = 0
    in_quote = False
    for ch in segment:
        if ch == "'":
            in_quote = not in_quote
        elif in_quote:
            continue
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return True
    return depth != 0


def _split_top_level(text: str) -> List[str]:
    parts: List[str] = []
    buf: List[str] = []
    quote: Optional[str] = None
    for ch in text:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            buf.append(ch)
        elif ch == ",":
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return parts


def _has_top_level_equals(text: str) -> bool:
    quote: Optional[str] = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "=":
            return True
    return False


def unquote_literal(value: str) -> str:
    """Strip single or double quotes from a key literal, undoing ``''`` escapes."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        inner = value[1:-1]
        return inner.replace("''", "'") if value[0] == "'" else inner
    return value


def parse_composite_key(key: str) -> Dict[str, str]:
    """
    Split ``K1=V1,K2='V2'`` into ``{"K1": "V1", "K2": "V2"}``.

    Raises
    ------
    ValueError
        When no ``=`` appears outside quotes, meaning the key is a single
        unnamed value such as ``'a=b'``;
        callers fall back to single-key handling.
    ValidationError
        When a named key part is malformed
    """
    if not _has_top_level_equals(key):
        raise ValueError(f"not a composite key: {key!r}")
    out: Dict[str, str] = {}
    for part in _split_top_level(key):
        name, sep, value = part.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ValidationError(f"invalid key segment {part!r} in {key!r}")
        if name in out:
            raise ValidationError(f"duplicate key property '{name}' in {key!r}")
        out[name] = unquote_literal(value)
    return out


def format_key_literal(value: Any) -> str:
    """Render one key value as a URL key literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return f"'{escape_odata_literal(str(value))}'"


def format_key(key_values: Mapping[str, Any]) -> str:
    """``{"ID": 1}`` -> ``1``; composite keys render as ``A=1,B='x'``."""
    if len(key_values) == 1:
        return format_key_literal(next(iter(key_values.values())))
    return ",".join(f"{k}={format_key_literal(v)}" for k, v in key_values.items())


def format_entity_reference(entity_set: str, key_values: Mapping[str, Any], service_root: str = "") -> str:
    """
    Build the canonical reference for an entity.

    Examples
    --------
    >>> format_entity_reference("Categories", {"ID": 1})
    'Categories(1)'
    >>> format_entity_reference("Lines", {"OrderID": 1, "Line": 2}, "http://h/odata/")
    'http://h/odata/Lines(OrderID=1,Line=2)'
    """
    return f"{service_root}{entity_set}({format_key(key_values)})"
