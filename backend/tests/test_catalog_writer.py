"""Tests for the SQL catalog writer."""
import pytest
from sqlalchemy import select

from catalog_importer.db.models.product import Product
from catalog_importer.services.catalog_writer import CatalogRow, SqlCatalogWriter, product_values, slugify
from catalog_importer.services.coercion import CoercionError


@pytest.fixture
def catalog_writer(session_factory):
    return SqlCatalogWriter(session_factory)


def products(session_factory):
    with session_factory() as db:
        return list(db.scalars(select(Product).order_by(Product.id)))


def test_product_values_coerces_types():
    values = product_values(
        {"name": " Desk Lamp ", "price": "19.99", "stock": "4", "is_variant": "no", "status": "Live", "sku": 1042.0}
    )

    assert values == {
        "name": "Desk Lamp",
        "sku": "1042",
        "price": 1999,
        "stock": 4,
        "is_variant": False,
        "status": "live",
        "slug": "desk-lamp",
    }


@pytest.mark.parametrize(
    "data",
    [
        {"price": "1"},
        {"name": "Lamp", "price": "cheap"},
        {"name": "Lamp", "stock": "1.5"},
        {"name": "Lamp", "status": "sold"},
        {"name": "Lamp", "sku": "S" * 65},
    ],
)
def test_product_values_rejects_unusable_records(data):
    with pytest.raises(CoercionError):
        product_values(data)


def test_slugify():
    assert slugify("Hello, World! 2") == "hello-world-2"


def test_creates_then_updates_by_sku(catalog_writer, session_factory):
    first = catalog_writer.write_batch([CatalogRow(0, {"name": "Lamp", "sku": "LMP-1", "price": "10"})])
    second = catalog_writer.write_batch(
        [CatalogRow(3, {"name": "Lamp v2", "sku": "lmp-1"}), CatalogRow(4, {"name": "Chair"})]
    )

    assert [o.status for o in first] == ["created"]
    assert [(o.record_index, o.status) for o in second] == [(3, "updated"), (4, "created")]
    assert second[0].entity_id == first[0].entity_id

    stored = products(session_factory)
    assert [(p.name, p.sku, p.price) for p in stored] == [("Lamp v2", "lmp-1", 1000), ("Chair", None, None)]


def test_bad_rows_fail_without_blocking_the_batch(catalog_writer, session_factory):
    outcomes = catalog_writer.write_batch(
        [
            CatalogRow(0, {"name": "Lamp"}),
            CatalogRow(1, {"name": "", "sku": "X"}),
            CatalogRow(2, {"name": "Desk", "price": "abc"}),
        ]
    )

    assert [o.status for o in outcomes] == ["created", "failed", "failed"]
    assert outcomes[1].error == "name is required"
    assert [p.name for p in products(session_factory)] == ["Lamp"]


def test_same_sku_twice_in_one_batch_updates_one_product(catalog_writer, session_factory):
    outcomes = catalog_writer.write_batch(
        [CatalogRow(0, {"name": "Lamp", "sku": "A"}), CatalogRow(1, {"name": "Lamp XL", "sku": "a"})]
    )

    assert [o.status for o in outcomes] == ["created", "updated"]
    assert [p.name for p in products(session_factory)] == ["Lamp XL"]
