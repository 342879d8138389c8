"""
odata_core.query.search - In-memory $search and $select
=======================================================

Applied after the fetch when the store does not evaluate these options
natively.
"""

from __future__ import annotations

import shlex
from typing import Any, Dict, List, Mapping, Sequence

from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor


def _searchable(descriptor: EntityDescriptor) -> List[PropertyDescriptor]:
    props = [p for p in descriptor.structural_properties if p.is_searchable]
    return props or [p for p in descriptor.structural_properties if p.type is str]


def _tokens(search: str) -> List[str]:
    try:
        return shlex.split(search)
    except ValueError:
        return search.split()


def _term_matches(term: str, haystack: List[str]) -> bool:
    needle = term.lower()
    return any(needle in h for h in haystack)


def matches_search(row: Mapping[str, Any], search: str, descriptor: EntityDescriptor) -> bool:
    """
    Evaluate a ``$search`` expression against one row.

    Terms are case-insensitive substring matches over the searchable string
    properties. Adjacent terms (or ``AND``) must all match, ``OR`` separates
    alternatives, ``NOT`` negates the following term. Quoted phrases are one
    term.
    """
    haystack = [str(row.get(p.name) or "").lower() for p in _searchable(descriptor)]
    groups: List[List[bool]] = [[]]
    negate = False
    for tok in _tokens(search):
        if tok == "OR":
            groups.append([])
            continue
        if tok == "AND":
            continue
        if tok == "NOT":
            negate = not negate
            continue
        hit = _term_matches(tok, haystack)
        groups[-1].append(not hit if negate else hit)
        negate = False
    return any(all(g) for g in groups if g)


def apply_search(
    rows: Sequence[Mapping[str, Any]], search: str, descriptor: EntityDescriptor
) -> List[Mapping[str, Any]]:
    if not search or not search.strip():
        return list(rows)
    return [r for r in rows if matches_search(r, search, descriptor)]


def apply_select(
    rows: Sequence[Mapping[str, Any]], select: Sequence[str], descriptor: EntityDescriptor
) -> List[Dict[str, Any]]:
    """
    Project rows onto the selected structural properties.

    Key properties are always kept so the rows stay addressable (and so a
    skip token can still be built from them). ``*`` selects everything.
    """
    if not select or "*" in select:
        return [dict(r) for r in rows]
    keep = [p.name for p in descriptor.key_properties]
    for name in select:
        prop = descriptor.find_property(name.split("/", 1)[0])
        if prop is not None and not prop.is_navigation and prop.name not in keep:
            keep.append(prop.name)
    return [{k: r[k] for k in keep if k in r} for r in rows]
