"""
Tests for odata_core.storage (query building and the in-memory store).
"""

import pytest
from unittest.mock import Mock

from odata_core.core.errors import FeatureNotImplemented, InternalError, NotFoundError, ValidationError
from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor as P
from odata_core.metadata.registry import EntityRegistry
from odata_core.query.options import FilterExpression as F
from odata_core.storage.base import And, Comparison, KeyIn, Not, Or, Query, key_predicate, sort_key
from odata_core.storage.memory import MemoryStore, evaluate_filter


def names(rows):
    return [r["Name"] for r in rows]


class TestPredicates:
    """Tests for predicates and Query."""

    def test_comparison(self):
        row = {"Total": 10, "City": None}
        assert Comparison("Total", "ge", 10).matches(row)
        assert not Comparison("Total", "lt", 10).matches(row)
        assert Comparison("City", "eq", None).matches(row)
        assert Comparison("City", "lt", "A").matches(row)
        assert not Comparison("Total", "gt", "x").matches(row)

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            Comparison("Total", "like", 1)

    def test_combinators(self):
        row = {"A": 1, "B": 2}
        assert And((Comparison("A", "eq", 1), Comparison("B", "eq", 2))).matches(row)
        assert Or((Comparison("A", "eq", 9), Comparison("B", "eq", 2))).matches(row)
        assert Not(Comparison("A", "eq", 9)).matches(row)
        assert KeyIn(("A", "B"), frozenset({(1, 2)})).matches(row)

    def test_key_predicate(self):
        assert key_predicate({"ID": 1}) == Comparison("ID", "eq", 1)
        assert key_predicate({"A": 1, "B": 2}) == And((Comparison("A", "eq", 1), Comparison("B", "eq", 2)))

    def test_sort_key_puts_none_first(self):
        assert sorted([3, None, 1], key=sort_key) == [None, 1, 3]

    def test_query_is_immutable(self):
        base = Query("Orders")
        narrowed = base.where(Comparison("ID", "eq", 1)).order("Total", True).take(5).skip(2)
        assert base.predicates == ()
        assert narrowed.order_by == (("Total", True),)
        assert narrowed.limit == 5
        assert narrowed.offset == 2
        assert narrowed.unpaged().limit is None

    def test_scoped(self):
        query = Query("Orders").scoped([lambda q: q.take(1), lambda q: q.skip(1)])
        assert (query.limit, query.offset) == (1, 1)


class TestMemoryTransactions:
    """Tests for MemoryStore transactions."""

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.update("Customers", {"ID": 1}, {"Name": "Changed"})
                raise RuntimeError("boom")
        with store.transaction() as tx:
            assert tx.get("Customers", {"ID": 1})["Name"] == "Alfreds"

    def test_commit(self, store):
        with store.transaction() as tx:
            tx.update("Customers", {"ID": 1}, {"City": "Hamburg"})
        with store.transaction() as tx:
            assert tx.get("Customers", {"ID": 1})["City"] == "Hamburg"

    def test_returned_rows_are_copies(self, store):
        with store.transaction() as tx:
            tx.get("Customers", {"ID": 1})["Name"] = "mutated"
            assert tx.get("Customers", {"ID": 1})["Name"] == "Alfreds"

    def test_find_orders_and_pages(self, store):
        with store.transaction() as tx:
            rows = tx.find(Query("Customers").order("City", True).skip(1).take(2))
            assert names(rows) == ["Contoso", "Around the Horn"]
            assert tx.count(Query("Customers").take(1)) == 5

    def test_unknown_entity_set(self, store):
        with store.transaction() as tx:
            with pytest.raises(NotFoundError):
                tx.find(Query("Nope"))

    def test_nested_transaction_rejected(self, store):
        with pytest.raises(InternalError) as exc:
            with store.transaction() as tx:
                tx.update("Customers", {"ID": 1}, {"Name": "Outer"})
                with store.transaction() as inner:
                    inner.update("Customers", {"ID": 2}, {"Name": "Inner"})
        assert exc.value.code == "Nested transaction"
        with store.transaction() as tx:
            assert tx.get("Customers", {"ID": 1})["Name"] == "Alfreds"
            assert tx.get("Customers", {"ID": 2})["Name"] == "Around the Horn"

    @pytest.mark.parametrize("option", ["apply", "compute"])
    def test_apply_and_compute_not_supported(self, store, option):
        query = Query("Customers", **{option: ("opaque",)})
        with store.transaction() as tx:
            with pytest.raises(FeatureNotImplemented):
                tx.find(query)
            with pytest.raises(FeatureNotImplemented):
                tx.count(query)


class TestMemoryWrites:
    """Tests for create/update/delete."""

    def test_auto_key(self, store):
        with store.transaction() as tx:
            first = tx.create("Customers", {"Name": "Fabrikam"})
            second = tx.create("Customers", {"ID": 0, "Name": "Northwind"})
        assert (first["ID"], second["ID"]) == (6, 7)

    def test_explicit_key_advances_sequence(self, store):
        with store.transaction() as tx:
            tx.create("Customers", {"ID": 40, "Name": "Far"})
            assert tx.create("Customers", {"Name": "Next"})["ID"] == 41

    def test_sequence_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.create("Customers", {"Name": "Ghost"})
                raise RuntimeError("boom")
        with store.transaction() as tx:
            assert tx.create("Customers", {"Name": "Real"})["ID"] == 6

    def test_missing_key(self, store):
        with store.transaction() as tx:
            with pytest.raises(ValidationError, match="must be provided"):
                tx.create("Products", {"Name": "Keyless"})

    def test_duplicate_key(self, store):
        with store.transaction() as tx:
            with pytest.raises(ValidationError) as exc:
                tx.create("Products", {"ID": 1, "Name": "Again"})
        assert exc.value.code == "Entity already exists"

    def test_unknown_field(self, store):
        with store.transaction() as tx:
            with pytest.raises(ValidationError):
                tx.create("Products", {"ID": 9, "Colour": "red"})
            with pytest.raises(ValidationError):
                tx.update("Products", {"ID": 1}, {"Category": 1})

    def test_key_update_rejected(self, store):
        with store.transaction() as tx:
            with pytest.raises(ValidationError, match="cannot be modified"):
                tx.update("Products", {"ID": 1}, {"ID": 2})
            assert tx.update("Products", {"ID": 1}, {"ID": 1, "Price": 1.0})["Price"] == 1.0

    def test_update_missing(self, store):
        with store.transaction() as tx:
            with pytest.raises(NotFoundError):
                tx.update("Products", {"ID": 99}, {"Price": 1.0})

    def test_delete_cleans_link_tables(self, store):
        with store.transaction() as tx:
            tx.delete("Products", {"ID": 4})
            assert tx.association_keys("Orders", {"ID": 1}, "Products") == [(1,)]
            assert tx.association_keys("Orders", {"ID": 3}, "Products") == []
            tx.delete("Orders", {"ID": 1})
            with pytest.raises(NotFoundError):
                tx.association_keys("Orders", {"ID": 1}, "Products")


class TestAssociations:
    """Association storage: owner foreign key, partner foreign key, link table."""

    def test_owner_foreign_key(self, store):
        with store.transaction() as tx:
            assert tx.association_keys("Orders", {"ID": 3}, "Customer") == [(2,)]
            tx.replace_association("Orders", {"ID": 3}, "Customer", [(4,)])
            assert tx.get("Orders", {"ID": 3})["CustomerID"] == 4
            tx.delete_association("Orders", {"ID": 3}, "Customer")
            assert tx.get("Orders", {"ID": 3})["CustomerID"] is None
            assert tx.association_keys("Orders", {"ID": 3}, "Customer") == []

    def test_partner_foreign_key(self, store):
        with store.transaction() as tx:
            assert tx.association_keys("Customers", {"ID": 1}, "Orders") == [(1,), (2,)]
            tx.replace_association("Customers", {"ID": 1}, "Orders", [(2,), (3,)])
            assert tx.get("Orders", {"ID": 1})["CustomerID"] is None
            assert tx.get("Orders", {"ID": 3})["CustomerID"] == 1
            assert sorted(tx.association_keys("Customers", {"ID": 1}, "Orders")) == [(2,), (3,)]
            assert tx.association_keys("Customers", {"ID": 2}, "Orders") == []

    def test_link_table(self, store):
        with store.transaction() as tx:
            tx.append_association("Orders", {"ID": 2}, "Products", [(2,), (3,), (2,)])
            assert tx.association_keys("Orders", {"ID": 2}, "Products") == [(2,), (3,)]
            tx.replace_association("Orders", {"ID": 2}, "Products", [(3,), (1,), (3,)])
            assert tx.association_keys("Orders", {"ID": 2}, "Products") == [(3,), (1,)]
            tx.delete_association("Orders", {"ID": 2}, "Products", (3,))
            assert tx.association_keys("Orders", {"ID": 2}, "Products") == [(1,)]
            tx.delete_association("Orders", {"ID": 2}, "Products")
            assert tx.association_keys("Orders", {"ID": 2}, "Products") == []

    def test_delete_unrelated_edge(self, store):
        with store.transaction() as tx:
            with pytest.raises(NotFoundError):
                tx.delete_association("Orders", {"ID": 1}, "Products", (2,))

    def test_missing_target(self, store):
        with store.transaction() as tx:
            with pytest.raises(NotFoundError):
                tx.append_association("Orders", {"ID": 1}, "Products", [(42,)])
            with pytest.raises(NotFoundError):
                tx.replace_association("Customers", {"ID": 1}, "Orders", [(42,)])

    def test_unknown_navigation(self, store):
        with store.transaction() as tx:
            with pytest.raises(NotFoundError):
                tx.association_keys("Orders", {"ID": 1}, "Lines")

    def test_unlink_non_nullable_foreign_key(self):
        regions = EntityDescriptor("Region", "Regions", [P.key("ID"), P.navigation("Shops", "Shop", many=True, partner="Region")])
        shops = EntityDescriptor(
            "Shop",
            "Shops",
            [
                P.key("ID"),
                P("RegionID", type=int, nullable=False),
                P.navigation("Region", "Region", constraints={"RegionID": "ID"}, partner="Shops"),
            ],
        )
        store = MemoryStore(EntityRegistry([regions, shops]))
        store.seed("Regions", [{"ID": 1}])
        store.seed("Shops", [{"ID": 1, "RegionID": 1}])
        with store.transaction() as tx:
            with pytest.raises(ValidationError, match="not nullable"):
                tx.replace_association("Regions", {"ID": 1}, "Shops", [])


class TestFilterEvaluation:
    """Tests for the default in-memory filter evaluator."""

    @pytest.mark.parametrize(
        "expr, expected",
        [
            (F("eq", "City", "London"), ["Around the Horn"]),
            (F("ne", "City", "London"), ["Alfreds", "Bottom-Dollar", "Ernst Handel", "Contoso"]),
            (F("gt", "ID", 3), ["Ernst Handel", "Contoso"]),
            (F("in", "ID", (1, 5)), ["Alfreds", "Contoso"]),
            (F("contains", "Name", "Horn"), ["Around the Horn"]),
            (F("startswith", "City", "G"), ["Ernst Handel"]),
            (F("endswith", "Name", "so"), ["Contoso"]),
            (F("or", left=F("eq", "ID", 1), right=F("eq", "ID", 2)), ["Alfreds", "Around the Horn"]),
            (F("and", left=F("gt", "ID", 1), right=F("lt", "ID", 3)), ["Around the Horn"]),
            (F("not", left=F("le", "ID", 4)), ["Contoso"]),
        ],
    )
    def test_expressions(self, store, expr, expected):
        with store.transaction() as tx:
            assert names(tx.find(Query("Customers", filter=expr))) == expected

    def test_unsupported_operator(self, registry):
        with pytest.raises(FeatureNotImplemented):
            evaluate_filter(F("matchesPattern", "Name", "^A"), {"Name": "A"}, registry.by_set("Customers"))

    def test_navigation_operand(self, registry):
        with pytest.raises(FeatureNotImplemented):
            evaluate_filter(F("eq", "Customer", 1), {}, registry.by_set("Orders"))

    def test_custom_evaluator(self, registry):
        evaluator = Mock(return_value=False)
        store = MemoryStore(registry, filter_evaluator=evaluator)
        store.seed("Categories", [{"ID": 1, "Name": "Beverages"}])
        expr = F("custom")
        with store.transaction() as tx:
            assert tx.find(Query("Categories", filter=expr)) == []
        evaluator.assert_called_once_with(expr, {"ID": 1, "Name": "Beverages"}, registry.by_set("Categories"))
