"""
Example: Basic usage of odata_core
==================================

This example runs the execution core in-process against the seeded demo
service: paging through a collection, binding on create, ETag-guarded
updates and $ref edits.
"""

from urllib.parse import parse_qsl, urlsplit

from odata_core import (
    CollectionReader,
    MutationController,
    PreconditionFailed,
    QueryOptions,
    ReferenceController,
    RequestContext,
    ServiceConfig,
)
from odata_core.api import sample


ROOT = "http://localhost:5050/odata/"


def example_paging():
    """Follow next links until the collection is exhausted."""
    config = ServiceConfig(service_root=ROOT, max_page_size=2)
    registry, store, tracker = sample.build_service()
    reader = CollectionReader(registry, store, config, tracker)

    url = ROOT + "Customers"
    options = QueryOptions()
    while url:
        page = reader.read(RequestContext(url=url), "Customers", options)
        print("Page:", [row["Name"] for row in page.rows])
        url = page.next_link
        if url:
            options = QueryOptions.from_params(dict(parse_qsl(urlsplit(url).query)))


def example_bind_and_etag():
    """Create an order bound to a customer, then update it with If-Match."""
    config = ServiceConfig(service_root=ROOT)
    registry, store, tracker = sample.build_service()
    writer = MutationController(registry, store, config, tracker)

    created = writer.create(
        RequestContext(url=ROOT + "Orders"),
        "Orders",
        {"Total": 12.5, "Customer@odata.bind": "Customers(5)", "Products@odata.bind": ["Products(1)"]},
    )
    print(f"Created {created.location} for customer {created.row['CustomerID']} (ETag {created.etag})")

    key = str(created.row["ID"])
    writer.update(RequestContext(headers={"If-Match": created.etag}), "Orders", key, {"Status": "shipped"})
    try:
        writer.update(RequestContext(headers={"If-Match": created.etag}), "Orders", key, {"Status": "lost"})
    except PreconditionFailed as e:
        print(f"Second update rejected with {e.status}: {e.message}")


def example_references():
    """Read and rewrite relationship edges directly."""
    config = ServiceConfig(service_root=ROOT)
    registry, store, tracker = sample.build_service()
    refs = ReferenceController(registry, store, config, tracker)
    ctx = RequestContext()

    print("Products of order 1:", refs.list_references(ctx, "Orders", "1", "Products"))
    refs.add_reference(ctx, "Orders", "1", "Products", {"@odata.id": "Products(2)"})
    refs.remove_reference(ctx, "Orders", "1", "Products", "Products(1)")
    print("After edits:", refs.list_references(ctx, "Orders", "1", "Products"))

    refs.set_reference(ctx, "Orders", "1", "Customer", "Customers(3)")
    print("Customer of order 1:", refs.list_references(ctx, "Orders", "1", "Customer"))


if __name__ == "__main__":
    example_paging()
    example_bind_and_etag()
    example_references()
