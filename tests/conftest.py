"""
Pytest configuration and shared fixtures.
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

import pytest

from odata_core.api import sample
from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.handlers.collection import CollectionReader
from odata_core.handlers.entity import EntityReader
from odata_core.handlers.mutation import MutationController
from odata_core.handlers.refs import ReferenceController
from odata_core.metadata.descriptors import EntityHooks
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.options import QueryOptions
from odata_core.storage.memory import MemoryStore
from odata_core.tracking.tracker import ChangeTracker


SERVICE_ROOT = "http://localhost/odata/"


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig(service_root=SERVICE_ROOT)


@pytest.fixture
def registry():
    """Customers / Orders / Products / Categories demo model."""
    return sample.build_registry()


@pytest.fixture
def store(registry) -> MemoryStore:
    """Seeded in-memory store (5 customers, 2 categories, 4 products, 3 orders)."""
    s = MemoryStore(registry)
    sample.seed(s)
    return s


@pytest.fixture
def tracker(registry) -> ChangeTracker:
    t = ChangeTracker()
    for d in registry:
        if d.track_changes:
            t.register(d.entity_set)
    return t


@pytest.fixture
def reader(registry, store, config, tracker) -> CollectionReader:
    return CollectionReader(registry, store, config, tracker)


@pytest.fixture
def entities(registry, store, config) -> EntityReader:
    return EntityReader(registry, store, config)


@pytest.fixture
def writer(registry, store, config, tracker) -> MutationController:
    return MutationController(registry, store, config, tracker)


@pytest.fixture
def refs(registry, store, config, tracker) -> ReferenceController:
    return ReferenceController(registry, store, config, tracker)


@pytest.fixture
def make_ctx():
    """Build a RequestContext; ``path`` is relative to the service root."""

    def _make(path: str = "", headers: Optional[Dict[str, str]] = None) -> RequestContext:
        url = path if path.startswith("http") else SERVICE_ROOT + path
        return RequestContext(url=url, headers=headers or {})

    return _make


def options_from_url(url: str) -> QueryOptions:
    """QueryOptions for the query string of ``url`` (e.g. a next link)."""
    return QueryOptions.from_params(dict(parse_qsl(urlsplit(url).query, keep_blank_values=True)))


def walk_pages(reader: CollectionReader, entity_set: str, first_url: str, **kwargs: Any) -> List[List[Dict[str, Any]]]:
    """Follow next links from ``first_url``; returns the rows of each page."""
    pages: List[List[Dict[str, Any]]] = []
    url: Optional[str] = first_url
    while url:
        ctx = RequestContext(url=url)
        result = reader.read(ctx, entity_set, options_from_url(url), **kwargs)
        pages.append(result.rows)
        url = result.next_link
        assert len(pages) < 50, "paging did not terminate"
    return pages


@pytest.fixture
def link_options():
    return options_from_url


@pytest.fixture
def walk():
    return walk_pages


@pytest.fixture
def with_hooks():
    """Copy of a registry with hooks installed on one entity set."""

    def _with_hooks(registry: EntityRegistry, entity_set: str, **hooks: Any) -> EntityRegistry:
        return EntityRegistry(
            [replace(d, hooks=EntityHooks(**hooks)) if d.entity_set == entity_set else d for d in registry]
        )

    return _with_hooks
