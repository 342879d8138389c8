"""
odata_core.query.links - Next and delta links
=============================================

Links are derived from the request URL so every other query option the
client sent is carried over unchanged.
"""

from __future__ import annotations

from typing import Iterable, List, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urljoin, urlsplit, urlunsplit


_SAFE = "$,'()/:=*"


def _rewrite(url: str, drop: Iterable[str], add: List[Tuple[str, str]], service_root: str = "") -> str:
    if service_root and not urlsplit(url).scheme:
        url = urljoin(service_root, url)
    parts = urlsplit(url)
    dropped = set(drop) | {name for name, _ in add}
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in dropped]
    params.extend(add)
    query = urlencode(params, quote_via=quote, safe=_SAFE)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


def next_link_with_skiptoken(url: str, token: str, service_root: str = "") -> str:
    """Replace ``$skip``/``$skiptoken`` with the new token."""
    return _rewrite(url, ("$skip", "$skiptoken"), [("$skiptoken", token)], service_root)


def next_link_with_skip(url: str, skip: int, service_root: str = "") -> str:
    """Offset fallback used when no token can be built for the page."""
    return _rewrite(url, ("$skip", "$skiptoken"), [("$skip", str(int(skip)))], service_root)


def delta_link(url: str, token: str, service_root: str = "") -> str:
    return _rewrite(url, ("$skip", "$skiptoken", "$deltatoken"), [("$deltatoken", token)], service_root)
