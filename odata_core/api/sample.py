"""
odata_core.api.sample - Demo service
====================================

A small Customers / Orders / Products / Categories model seeded into a
``MemoryStore``, used by the development gateway and the examples.
"""

from __future__ import annotations

from typing import Tuple

from odata_core.metadata.descriptors import EntityDescriptor, PropertyDescriptor as P
from odata_core.metadata.registry import EntityRegistry
from odata_core.storage.memory import MemoryStore
from odata_core.tracking.tracker import ChangeTracker


def build_registry() -> EntityRegistry:
    """
    Entity model:

    - Customer 1 -- * Order   (Order.CustomerID -> Customer.ID)
    - Category 1 -- * Product (Product.CategoryID -> Category.ID)
    - Order    * -- * Product (link table)

    Orders carry a server-maintained ``Version`` used as the ETag and
    record change events.
    """
    customers = EntityDescriptor(
        "Customer",
        "Customers",
        [
            P.key("ID", int, auto=True),
            P("Name", type=str, nullable=False, is_required=True, is_searchable=True),
            P("City", type=str, is_searchable=True),
            P.navigation("Orders", "Order", many=True, partner="Customer"),
        ],
    )
    categories = EntityDescriptor(
        "Category",
        "Categories",
        [
            P.key("ID", int),
            P("Name", type=str, nullable=False, is_required=True),
            P.navigation("Products", "Product", many=True, partner="Category"),
        ],
    )
    products = EntityDescriptor(
        "Product",
        "Products",
        [
            P.key("ID", int),
            P("Name", type=str, nullable=False, is_required=True, is_searchable=True),
            P("Price", type=float, nullable=False, default=0.0),
            P("CategoryID", type=int),
            P.navigation("Category", "Category", constraints={"CategoryID": "ID"}, partner="Products"),
        ],
    )
    orders = EntityDescriptor(
        "Order",
        "Orders",
        [
            P.key("ID", int, auto=True),
            P("CustomerID", type=int),
            P("Status", type=str, nullable=False, default="open"),
            P("Total", type=float, nullable=False, default=0.0),
            P("Version", type=int, is_auto=True),
            P.navigation("Customer", "Customer", constraints={"CustomerID": "ID"}, partner="Orders"),
            P.navigation("Products", "Product", many=True),
        ],
        etag_property="Version",
        track_changes=True,
    )
    return EntityRegistry([customers, categories, products, orders])


def seed(store: MemoryStore) -> None:
    store.seed(
        "Customers",
        [
            {"ID": 1, "Name": "Alfreds", "City": "Berlin"},
            {"ID": 2, "Name": "Around the Horn", "City": "London"},
            {"ID": 3, "Name": "Bottom-Dollar", "City": "Tsawassen"},
            {"ID": 4, "Name": "Ernst Handel", "City": "Graz"},
            {"ID": 5, "Name": "Contoso", "City": "Seattle"},
        ],
    )
    store.seed("Categories", [{"ID": 1, "Name": "Beverages"}, {"ID": 2, "Name": "Condiments"}])
    store.seed(
        "Products",
        [
            {"ID": 1, "Name": "Chai", "Price": 18.0, "CategoryID": 1},
            {"ID": 2, "Name": "Chang", "Price": 19.0, "CategoryID": 1},
            {"ID": 3, "Name": "Aniseed Syrup", "Price": 10.0, "CategoryID": 2},
            {"ID": 4, "Name": "Cajun Seasoning", "Price": 22.0, "CategoryID": 2},
        ],
    )
    store.seed(
        "Orders",
        [
            {"ID": 1, "CustomerID": 1, "Total": 46.0, "Version": 1},
            {"ID": 2, "CustomerID": 1, "Total": 10.0, "Version": 1},
            {"ID": 3, "CustomerID": 2, "Total": 22.0, "Version": 1},
        ],
    )
    store.link("Orders", {"ID": 1}, "Products", [(1,), (4,)])
    store.link("Orders", {"ID": 3}, "Products", [(4,)])


def build_service() -> Tuple[EntityRegistry, MemoryStore, ChangeTracker]:
    """Registry, seeded store and a tracker with every tracked set registered."""
    registry = build_registry()
    store = MemoryStore(registry)
    seed(store)
    tracker = ChangeTracker()
    for descriptor in registry:
        if descriptor.track_changes:
            tracker.register(descriptor.entity_set)
    return registry, store, tracker
