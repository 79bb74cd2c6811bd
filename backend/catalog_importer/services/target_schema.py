"""The fixed destination product schema that uploads are reconciled against."""

from __future__ import annotations

from collections.abc import Iterator

from catalog_importer.schemas.fields import TargetField

PRODUCT_STATUSES = ("draft", "review", "live", "archived")


class TargetSchema:
    """Ordered, name-indexed collection of target fields."""

    def __init__(self, fields: list[TargetField] | tuple[TargetField, ...]) -> None:
        self._fields = tuple(fields)
        self._by_name = {field.name: field for field in self._fields}

    def __iter__(self) -> Iterator[TargetField]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> TargetField | None:
        return self._by_name.get(name)

    @property
    def names(self) -> list[str]:
        return [field.name for field in self._fields]

    @property
    def required(self) -> list[TargetField]:
        return [field for field in self._fields if field.required]

    def describe(self) -> list[dict]:
        """Plain dicts for the mapping UI and the inference provider."""
        return [field.model_dump(mode="json") for field in self._fields]


PRODUCT_SCHEMA = TargetSchema(
    [
        TargetField(
            name="name",
            required=True,
            max_length=255,
            description="Product name/title",
            synonyms=("product_name", "title", "product_title", "item_name"),
        ),
        TargetField(
            name="slug",
            max_length=255,
            description="URL-friendly identifier (derived from name when absent)",
            synonyms=("handle", "url_key", "permalink"),
        ),
        TargetField(
            name="sku",
            max_length=64,
            description="Stock keeping unit identifier",
            synonyms=("product_code", "item_code", "part_number", "article_number"),
        ),
        TargetField(
            name="gtin",
            max_length=14,
            description="Global trade item number (barcode)",
            synonyms=("barcode", "upc", "ean"),
        ),
        TargetField(
            name="short_description",
            description="Brief product description",
            synonyms=("description", "desc", "summary"),
        ),
        TargetField(
            name="long_description",
            description="Detailed product description",
            synonyms=("details", "full_description", "body_html"),
        ),
        TargetField(
            name="price",
            data_type="number",
            description="Selling price (stored in cents)",
            synonyms=("selling_price", "unit_price", "retail_price"),
        ),
        TargetField(
            name="compare_at_price",
            data_type="number",
            description="Original/MSRP price (stored in cents)",
            synonyms=("msrp", "rrp", "list_price", "original_price"),
        ),
        TargetField(
            name="stock",
            data_type="number",
            integer=True,
            description="Available stock quantity",
            synonyms=("quantity", "qty", "inventory", "stock_level"),
        ),
        TargetField(
            name="low_stock_threshold",
            data_type="number",
            integer=True,
            description="Low stock alert threshold",
            synonyms=("reorder_point", "reorder_level", "min_stock"),
        ),
        TargetField(
            name="brand",
            max_length=255,
            description="Brand name",
            synonyms=("brand_name", "manufacturer", "vendor"),
        ),
        TargetField(
            name="category",
            max_length=255,
            description="Category name",
            synonyms=("product_type", "department", "collection"),
        ),
        TargetField(
            name="status",
            description="Product status",
            choices=PRODUCT_STATUSES,
            synonyms=("product_status", "state"),
        ),
        TargetField(
            name="is_variant",
            data_type="boolean",
            description="Whether this is a product variant",
            synonyms=("variant",),
        ),
        TargetField(
            name="parent_sku",
            max_length=64,
            description="SKU of the parent product for variants",
            synonyms=("parent", "parent_code", "master_sku"),
        ),
    ]
)
