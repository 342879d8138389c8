"""
Tests for odata_core.metadata (descriptors, registry, CSDL parsing).
"""

import datetime as dt
import decimal
import uuid

import pytest
from unittest.mock import Mock

from odata_core.core.errors import NotFoundError, ValidationError
from odata_core.metadata.csdl import parse_csdl
from odata_core.metadata.descriptors import EntityDescriptor, EntityHooks, PropertyDescriptor as P, copy_nullable
from odata_core.metadata.registry import EntityRegistry


CSDL = """
<edmx:Edmx xmlns:edmx="http://docs.oasis-open.org/odata/ns/edmx" Version="4.0">
  <edmx:DataServices>
    <Schema xmlns="http://docs.oasis-open.org/odata/ns/edm" Namespace="Shop">
      <EntityType Name="Customer">
        <Key><PropertyRef Name="ID"/></Key>
        <Property Name="ID" Type="Edm.Int32" Nullable="false"/>
        <Property Name="Name" Type="Edm.String" Nullable="false"/>
        <Property Name="Address" Type="Shop.Address"/>
        <Property Name="Tags" Type="Collection(Edm.String)"/>
        <NavigationProperty Name="Orders" Type="Collection(Shop.Order)" Partner="Customer"/>
      </EntityType>
      <EntityType Name="Order">
        <Key><PropertyRef Name="ID"/></Key>
        <Property Name="ID" Type="Edm.Int64" Nullable="false"/>
        <Property Name="CustomerID" Type="Edm.Int32"/>
        <Property Name="Amount" Type="Edm.Decimal"/>
        <Property Name="ModifiedAt" Type="Edm.DateTimeOffset" Nullable="false">
          <Annotation Term="Org.OData.Core.V1.Computed" Bool="true"/>
        </Property>
        <Property Name="Note" Type="Edm.String">
          <Annotation Term="Core.Computed" Bool="false"/>
        </Property>
        <NavigationProperty Name="Customer" Type="Shop.Customer" Nullable="false" Partner="Orders">
          <ReferentialConstraint Property="CustomerID" ReferencedProperty="ID"/>
        </NavigationProperty>
        <Annotation Term="Core.OptimisticConcurrency">
          <Collection><PropertyPath>ModifiedAt</PropertyPath></Collection>
        </Annotation>
      </EntityType>
      <ComplexType Name="Address">
        <Property Name="Street" Type="Edm.String"/>
      </ComplexType>
      <EntityContainer Name="Container">
        <EntitySet Name="Customers" EntityType="Shop.Customer"/>
        <EntitySet Name="Orders" EntityType="Shop.Order"/>
      </EntityContainer>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>
"""


@pytest.fixture
def csdl_registry():
    return EntityRegistry.from_csdl(CSDL, track_changes=["Orders"])


class TestParseCsdl:
    """Tests for parse_csdl and EntityRegistry.from_csdl."""

    def test_entity_sets(self, csdl_registry):
        assert csdl_registry.entity_sets() == ["Customers", "Orders"]
        orders = csdl_registry.by_set("Orders")
        assert orders.name == "Order"
        assert orders.qualified_name == "Shop.Order"
        assert orders.track_changes is True
        assert csdl_registry.by_set("Customers").track_changes is False

    def test_structural_properties(self, csdl_registry):
        customers = csdl_registry.by_set("Customers")
        key = customers.find_property("ID")
        assert key.is_key and key.type is int and not key.nullable and not key.is_required
        name = customers.find_property("Name")
        assert name.is_required and name.is_searchable and not name.nullable
        assert customers.find_property("Address").is_complex
        assert customers.find_property("Address").type is dict
        assert not customers.find_property("Tags").is_complex

    def test_edm_types(self, csdl_registry):
        orders = csdl_registry.by_set("Orders")
        assert orders.find_property("ID").type is int
        assert orders.find_property("Amount").type is decimal.Decimal
        assert orders.find_property("ModifiedAt").type is dt.datetime

    def test_computed_annotation(self, csdl_registry):
        orders = csdl_registry.by_set("Orders")
        modified = orders.find_property("ModifiedAt")
        assert modified.is_auto
        assert not modified.is_required
        assert not orders.find_property("Note").is_auto

    def test_concurrency_annotation(self, csdl_registry):
        assert csdl_registry.by_set("Orders").etag_property == "ModifiedAt"
        assert csdl_registry.by_set("Customers").etag is None

    def test_navigation_properties(self, csdl_registry):
        orders_nav = csdl_registry.by_set("Customers").find_navigation("Orders")
        assert orders_nav.navigation_is_array
        assert orders_nav.navigation_target == "Order"
        assert orders_nav.partner == "Customer"

        customer_nav = csdl_registry.by_set("Orders").find_navigation("Customer")
        assert not customer_nav.navigation_is_array
        assert dict(customer_nav.referential_constraints) == {"CustomerID": "ID"}
        assert customer_nav.nullable is False

    def test_foreign_key_partner(self, csdl_registry):
        target, partner = csdl_registry.foreign_key_partner(csdl_registry.by_set("Customers").find_navigation("Orders"))
        assert target.entity_set == "Orders"
        assert partner.name == "Customer"

    def test_hooks(self):
        hook = Mock()
        registry = EntityRegistry.from_csdl(CSDL, hooks={"Customers": EntityHooks(before_create=hook)})
        assert registry.by_set("Customers").hooks.before_create is hook
        assert not registry.by_set("Orders").hooks.has("before_create")

    def test_invalid_xml(self):
        with pytest.raises(ValueError, match="invalid CSDL"):
            parse_csdl("<Edmx")

    def test_unknown_entity_type(self):
        xml = CSDL.replace('EntityType="Shop.Order"', 'EntityType="Shop.Invoice"')
        with pytest.raises(ValueError, match="unknown entity type"):
            parse_csdl(xml)


class TestEntityRegistry:
    """Tests for registry lookups and validation."""

    def test_lookups(self, registry):
        assert "Orders" in registry
        assert len(registry) == 4
        assert registry.get("Nope") is None
        assert registry.by_type("ODataService.Customer").entity_set == "Customers"
        assert registry.target_of(registry.by_set("Orders").find_navigation("Customer")).entity_set == "Customers"

    def test_by_set_missing(self, registry):
        with pytest.raises(NotFoundError) as exc:
            registry.by_set("Nope")
        assert exc.value.status == 404

    def test_duplicate_entity_set(self):
        a = EntityDescriptor("A", "Things", [P.key("ID")])
        b = EntityDescriptor("B", "Things", [P.key("ID")])
        with pytest.raises(ValueError, match="duplicate entity set"):
            EntityRegistry([a, b])

    def test_type_in_two_sets(self):
        a = EntityDescriptor("A", "As", [P.key("ID")])
        b = EntityDescriptor("A", "MoreAs", [P.key("ID")])
        with pytest.raises(ValueError, match="more than one entity set"):
            EntityRegistry([a, b])

    def test_unknown_navigation_target(self):
        a = EntityDescriptor("A", "As", [P.key("ID"), P.navigation("B", "B")])
        with pytest.raises(ValueError, match="unknown entity type"):
            EntityRegistry([a])

    @pytest.mark.parametrize(
        "constraints, fragment",
        [({"Missing": "ID"}, "dependent property"), ({"BID": "Missing"}, "principal property")],
    )
    def test_bad_constraints(self, constraints, fragment):
        a = EntityDescriptor("A", "As", [P.key("ID"), P("BID", type=int), P.navigation("B", "B", constraints=constraints)])
        b = EntityDescriptor("B", "Bs", [P.key("ID")])
        with pytest.raises(ValueError, match=fragment):
            EntityRegistry([a, b])

    def test_partner_must_be_navigation(self):
        a = EntityDescriptor("A", "As", [P.key("ID"), P.navigation("B", "B", partner="Name")])
        b = EntityDescriptor("B", "Bs", [P.key("ID"), P("Name")])
        with pytest.raises(ValueError, match="partner"):
            EntityRegistry([a, b])

    def test_resolve_property_path(self, registry, csdl_registry):
        orders = registry.by_set("Orders")
        assert registry.resolve_property_path(orders, "Total").name == "Total"
        assert registry.resolve_property_path(orders, "Customer/Name").name == "Name"
        customers = csdl_registry.by_set("Customers")
        assert csdl_registry.resolve_property_path(customers, "Address/Street").name == "Address"

    @pytest.mark.parametrize("path", ["", "Nope", "Customer/Nope", "Products/Name", "Total/Value"])
    def test_resolve_property_path_errors(self, registry, path):
        with pytest.raises(ValueError):
            registry.resolve_property_path(registry.by_set("Orders"), path)

    def test_foreign_key_partner_only_for_constrained_partners(self, registry):
        assert registry.foreign_key_partner(registry.by_set("Customers").find_navigation("Orders")) is not None
        assert registry.foreign_key_partner(registry.by_set("Orders").find_navigation("Products")) is None
        assert registry.foreign_key_partner(registry.by_set("Orders").find_navigation("Customer")) is None


class TestEntityDescriptor:
    """Tests for EntityDescriptor and PropertyDescriptor."""

    def test_requires_key(self):
        with pytest.raises(ValueError, match="key"):
            EntityDescriptor("A", "As", [P("Name")])

    def test_duplicate_property(self):
        with pytest.raises(ValueError, match="duplicate"):
            EntityDescriptor("A", "As", [P.key("ID"), P("ID")])

    @pytest.mark.parametrize("etag", ["Missing", "B"])
    def test_bad_etag_property(self, etag):
        with pytest.raises(ValueError, match="etag"):
            EntityDescriptor("A", "As", [P.key("ID"), P.navigation("B", "B")], etag_property=etag)

    def test_navigation_needs_target(self):
        with pytest.raises(ValueError):
            P("B", is_navigation=True)

    def test_key_is_never_nullable(self):
        assert P.key("ID", nullable=True).nullable is False

    def test_wire_names(self):
        d = EntityDescriptor("A", "As", [P.key("id", wire_name="ID"), P("total", type=float, wire_name="Total")])
        assert d.find_property("Total").name == "total"
        assert d.to_wire({"id": 1, "total": 2.0}) == {"ID": 1, "Total": 2.0}
        assert d.key_values({"id": 1}) == {"ID": 1}
        assert d.get_field({"total": 2.0}, "Total") == 2.0
        row = {}
        d.set_field(row, "Total", 3.0)
        assert row == {"total": 3.0}
        with pytest.raises(KeyError):
            d.get_field({}, "Nope")

    def test_new_row_uses_defaults(self, registry):
        assert registry.by_set("Orders").new_row() == {
            "ID": None,
            "CustomerID": None,
            "Status": "open",
            "Total": 0.0,
            "Version": None,
        }

    @pytest.mark.parametrize(
        "type_, value, expected",
        [
            (int, "5", 5),
            (int, 5.0, 5),
            (float, 3, 3.0),
            (str, 5, "5"),
            (bool, "TRUE", True),
            (decimal.Decimal, 1.5, decimal.Decimal("1.5")),
            (dt.date, "2024-02-29", dt.date(2024, 2, 29)),
            (uuid.UUID, "12345678-1234-5678-1234-567812345678", uuid.UUID("12345678-1234-5678-1234-567812345678")),
            (int, None, None),
        ],
    )
    def test_convert(self, type_, value, expected):
        assert P("X", type=type_).convert(value) == expected

    def test_convert_datetime_with_zulu(self):
        value = P("X", type=dt.datetime).convert("2024-01-01T12:00:00Z")
        assert value == dt.datetime(2024, 1, 1, 12, tzinfo=dt.timezone.utc)

    @pytest.mark.parametrize(
        "type_, value",
        [(int, 5.5), (int, True), (int, "five"), (float, False), (bool, 1), (str, {"a": 1}), (uuid.UUID, 5)],
    )
    def test_convert_rejects(self, type_, value):
        with pytest.raises(ValidationError) as exc:
            P("X", type=type_).convert(value)
        assert exc.value.code == "Invalid data type"
        assert exc.value.target == "X"

    def test_convert_literal(self):
        assert P("X", type=str).convert_literal("null") == "null"
        assert P("X", type=int).convert_literal("null") is None
        assert P("X", type=int).convert_literal("7") == 7


class TestCopyNullable:
    """Tests for copy_nullable."""

    def test_value_is_converted(self):
        assert copy_nullable("5", P("FK", type=int)) == 5

    def test_null_onto_nullable(self):
        assert copy_nullable(None, P("FK", type=int), "error") is None

    def test_null_onto_non_nullable(self):
        with pytest.raises(ValidationError, match="non-nullable"):
            copy_nullable(None, P("FK", type=int, nullable=False), "error")

    @pytest.mark.parametrize("type_, zero", [(int, 0), (str, ""), (float, 0.0), (dt.datetime, None)])
    def test_zero_policy(self, type_, zero):
        assert copy_nullable(None, P("FK", type=type_, nullable=False), "zero") == zero
