"""
Tests for skip-token paging.
"""

import base64
import logging

import pytest

from odata_core.core.config import ServiceConfig
from odata_core.core.context import RequestContext
from odata_core.core.errors import ValidationError
from odata_core.handlers.collection import CollectionReader
from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor as P
from odata_core.metadata.registry import EntityRegistry
from odata_core.query import links, skiptoken
from odata_core.query.options import OrderByItem, QueryOptions
from odata_core.query.skiptoken import SkipToken
from odata_core.storage.base import And, Comparison, Or
from odata_core.storage.memory import MemoryStore


ROOT = "http://localhost/odata/"


def ids(pages):
    return [[r["ID"] for r in page] for page in pages]


@pytest.fixture
def items_reader():
    """Items with many duplicate Group values."""
    items = EntityDescriptor("Item", "Items", [P.key("ID", int), P("Group", type=str), P("Rank", type=int)])
    registry = EntityRegistry([items])
    store = MemoryStore(registry)
    store.seed(
        "Items",
        [
            {"ID": 1, "Group": "a", "Rank": 2},
            {"ID": 2, "Group": "b", "Rank": 1},
            {"ID": 3, "Group": "a", "Rank": 2},
            {"ID": 4, "Group": "b", "Rank": 1},
            {"ID": 5, "Group": "a", "Rank": 1},
            {"ID": 6, "Group": "c", "Rank": 3},
            {"ID": 7, "Group": "a", "Rank": 2},
        ],
    )
    return CollectionReader(registry, store, ServiceConfig(service_root=ROOT))


class TestSkipTokenCodec:
    """Tests for encode/decode."""

    def test_round_trip(self):
        token = SkipToken(key_values={"ID": 4}, order_by_values={"Name": "Ernst Handel"})
        decoded = skiptoken.decode(skiptoken.encode(token))
        assert decoded == token

    def test_encoding_is_url_safe(self):
        text = skiptoken.encode(SkipToken({"ID": 1}, {"Name": "??>>~~"}))
        assert "+" not in text and "/" not in text

    def test_encode_none(self):
        with pytest.raises(ValueError):
            skiptoken.encode(None)

    def test_encode_unserialisable(self):
        with pytest.raises(ValueError):
            skiptoken.encode(SkipToken({"ID": object()}))

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "abc",
            base64.urlsafe_b64encode(b"not json").decode(),
            base64.urlsafe_b64encode(b"[1, 2]").decode(),
            base64.urlsafe_b64encode(b'{"k": {}, "o": {}}').decode(),
        ],
    )
    def test_decode_rejects(self, text):
        with pytest.raises(ValueError):
            skiptoken.decode(text)


class TestSeekPredicate:
    """Tests for the lexicographic seek predicate."""

    def test_key_only(self, registry):
        customers = registry.by_set("Customers")
        pred = skiptoken.seek_predicate(SkipToken({"ID": 2}), customers, [])
        assert pred == Comparison("ID", "gt", 2)

    def test_orderby_then_key(self, registry):
        customers = registry.by_set("Customers")
        token = SkipToken({"ID": 3}, {"City": "Graz"})
        pred = skiptoken.seek_predicate(token, customers, [OrderByItem("City", descending=True)])
        assert pred == Or(
            (
                Comparison("City", "lt", "Graz"),
                And((Comparison("City", "eq", "Graz"), Comparison("ID", "gt", 3))),
            )
        )

    def test_values_converted_to_property_type(self, registry):
        orders = registry.by_set("Orders")
        pred = skiptoken.seek_predicate(SkipToken({"ID": "2"}), orders, [])
        assert pred.value == 2

    def test_token_missing_orderby_value(self, registry):
        customers = registry.by_set("Customers")
        with pytest.raises(ValueError):
            skiptoken.seek_predicate(SkipToken({"ID": 3}), customers, [OrderByItem("City")])

    def test_cannot_seek_on_navigation(self, registry):
        with pytest.raises(ValueError):
            skiptoken.seek_columns(registry.by_set("Orders"), [OrderByItem("Customer")])

    def test_extract_requires_sort_column(self, registry):
        customers = registry.by_set("Customers")
        with pytest.raises(ValueError):
            skiptoken.extract_from_row({"ID": 1, "Name": "x"}, customers, [OrderByItem("City")])


class TestLinks:
    """Tests for next and delta link construction."""

    def test_skiptoken_replaces_skip(self):
        link = links.next_link_with_skiptoken("http://h/odata/Orders?$top=2&$skip=4", "TOKEN")
        assert link == "http://h/odata/Orders?$top=2&$skiptoken=TOKEN"

    def test_other_options_preserved(self):
        link = links.next_link_with_skiptoken("http://h/odata/Orders?$orderby=Total%20desc&$count=true", "T")
        assert "$orderby=Total%20desc" in link
        assert "$count=true" in link
        assert link.endswith("$skiptoken=T")

    def test_relative_url_resolved_against_root(self):
        link = links.next_link_with_skip("Orders?$top=2", 2, "http://h/odata/")
        assert link == "http://h/odata/Orders?$top=2&$skip=2"

    def test_delta_link_drops_paging(self):
        link = links.delta_link("http://h/odata/Orders?$skiptoken=X&$top=2", "D")
        assert link == "http://h/odata/Orders?$top=2&$deltatoken=D"


class TestPagingWalk:
    """Following next links visits every row exactly once."""

    def test_five_rows_two_per_page(self, reader, walk):
        pages = walk(reader, "Customers", ROOT + "Customers?$top=2")
        assert ids(pages) == [[1, 2], [3, 4], [5]]

    def test_next_link_keeps_top_and_uses_token(self, reader, link_options):
        ctx = RequestContext(url=ROOT + "Customers?$top=2")
        result = reader.read(ctx, "Customers", QueryOptions(top=2))
        assert result.next_link.startswith(ROOT + "Customers?")
        options = link_options(result.next_link)
        assert options.top == 2
        assert options.skip_token
        assert skiptoken.decode(options.skip_token).key_values == {"ID": 2}

    def test_exact_multiple_has_no_empty_page(self, reader, walk):
        pages = walk(reader, "Customers", ROOT + "Customers?$top=5")
        assert ids(pages) == [[1, 2, 3, 4, 5]]

    def test_descending_orderby_with_duplicates(self, items_reader, walk):
        pages = walk(items_reader, "Items", ROOT + "Items?$orderby=Group%20desc&$top=2")
        assert ids(pages) == [[6, 2], [4, 1], [3, 5], [7]]

    def test_two_sort_columns_with_duplicates(self, items_reader, walk):
        url = ROOT + "Items?$orderby=Rank,Group%20desc&$top=3"
        pages = walk(items_reader, "Items", url)
        seen = [i for page in ids(pages) for i in page]
        assert seen == [2, 4, 5, 1, 3, 7, 6]
        assert [len(p) for p in pages] == [3, 3, 1]

    def test_delete_between_pages_skips_nothing(self, reader, store, link_options):
        ctx = RequestContext(url=ROOT + "Customers?$top=2")
        first = reader.read(ctx, "Customers", QueryOptions(top=2))
        with store.transaction() as tx:
            tx.delete("Customers", {"ID": 1})
        second = reader.read(RequestContext(url=first.next_link), "Customers", link_options(first.next_link))
        assert [r["ID"] for r in second.rows] == [3, 4]

    def test_select_without_sort_column_falls_back_to_skip(self, reader, caplog, link_options):
        url = ROOT + "Customers?$orderby=City&$select=Name&$top=2"
        with caplog.at_level(logging.WARNING, logger="odata_core.pipeline"):
            result = reader.read(RequestContext(url=url), "Customers", link_options(url))
        assert [r["ID"] for r in result.rows] == [1, 4]
        options = link_options(result.next_link)
        assert options.skip == 2
        assert options.skip_token is None
        assert "using $skip" in caplog.text

    def test_skip_fallback_walk(self, reader, walk):
        url = ROOT + "Customers?$orderby=City&$select=Name&$top=2"
        pages = walk(reader, "Customers", url)
        assert ids(pages) == [[1, 4], [2, 5], [3]]

    def test_invalid_token(self, reader):
        token = base64.urlsafe_b64encode(b"not json").decode()
        with pytest.raises(ValidationError) as exc:
            reader.read(RequestContext(url=ROOT + "Customers"), "Customers", QueryOptions(skip_token=token))
        assert exc.value.status == 400
        assert exc.value.code == "Invalid $skiptoken"

    def test_token_for_other_ordering(self, reader):
        token = skiptoken.encode(SkipToken({"ID": 2}))
        options = QueryOptions(skip_token=token, order_by=[OrderByItem("City")])
        with pytest.raises(ValidationError):
            reader.read(RequestContext(url=ROOT + "Customers"), "Customers", options)
