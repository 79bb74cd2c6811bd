"""Destination catalog writers used by the batch importer."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Any, NamedTuple, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from catalog_importer.core.errors import ImportExecutionError
from catalog_importer.db.models.product import Product
from catalog_importer.services.coercion import (
    CoercionError,
    as_text,
    is_blank,
    parse_boolean,
    parse_integer,
    to_cents,
)
from catalog_importer.services.target_schema import PRODUCT_SCHEMA, PRODUCT_STATUSES

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")

TEXT_FIELDS = ("sku", "gtin", "short_description", "long_description", "brand", "category", "parent_sku")
CENTS_FIELDS = ("price", "compare_at_price")
INTEGER_FIELDS = ("stock", "low_stock_threshold")


class CatalogRow(NamedTuple):
    record_index: int
    data: dict[str, Any]


class RowOutcome(NamedTuple):
    record_index: int
    status: str  # created | updated | failed
    entity_id: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class CatalogWriter(Protocol):
    def write_batch(self, rows: Sequence[CatalogRow]) -> list[RowOutcome]:
        """Persist one batch.

        Rows that cannot be stored come back as failed outcomes. Raising means
        the whole batch could not be committed and may be retried.
        """
        ...


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-")


def product_values(data: dict[str, Any]) -> dict[str, Any]:
    """Coerce one mapped record into ``Product`` column values.

    Only fields present in the record are returned, so an update leaves
    unmapped columns alone. Raises ``CoercionError`` for unusable values.
    """
    name = as_text(data.get("name"))
    if not name:
        raise CoercionError("name is required")
    values: dict[str, Any] = {"name": name}

    for field in TEXT_FIELDS:
        if field in data:
            values[field] = as_text(data[field])
    for field in CENTS_FIELDS:
        if field in data:
            values[field] = None if is_blank(data[field]) else to_cents(data[field])
    for field in INTEGER_FIELDS:
        if field in data:
            values[field] = None if is_blank(data[field]) else parse_integer(data[field])
    if not is_blank(data.get("is_variant")):
        values["is_variant"] = parse_boolean(data["is_variant"])
    if not is_blank(data.get("status")):
        status = as_text(data["status"]).lower()
        if status not in PRODUCT_STATUSES:
            raise CoercionError(f"Unknown status {data['status']!r}")
        values["status"] = status

    values["slug"] = as_text(data.get("slug")) or slugify(name)

    for field, value in values.items():
        target = PRODUCT_SCHEMA.get(field)
        if target and target.max_length and isinstance(value, str) and len(value) > target.max_length:
            raise CoercionError(f"{field} exceeds {target.max_length} characters")
    return values


class SqlCatalogWriter:
    """Upserts ``Product`` rows by case-insensitive SKU.

    A batch is one transaction. Rows with no SKU are always created; rows
    sharing a SKU inside the batch are applied in order to the same product.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def write_batch(self, rows: Sequence[CatalogRow]) -> list[RowOutcome]:
        outcomes: dict[int, RowOutcome] = {}
        prepared: list[tuple[CatalogRow, dict[str, Any]]] = []
        for row in rows:
            try:
                prepared.append((row, product_values(row.data)))
            except CoercionError as e:
                outcomes[row.record_index] = RowOutcome(row.record_index, "failed", error=str(e))

        if prepared:
            try:
                outcomes.update(self._upsert(prepared))
            except SQLAlchemyError as e:
                logger.error(f"Catalog batch commit failed: {e}", exc_info=True)
                raise ImportExecutionError(f"Catalog batch commit failed: {e}") from e

        return [outcomes[row.record_index] for row in rows]

    def _upsert(self, prepared: list[tuple[CatalogRow, dict[str, Any]]]) -> dict[int, RowOutcome]:
        skus = {values["sku"].lower() for _, values in prepared if values.get("sku")}
        with self._session_factory() as db:
            existing: dict[str, Product] = {}
            if skus:
                query = select(Product).where(func.lower(Product.sku).in_(list(skus)))
                existing = {product.sku.lower(): product for product in db.scalars(query)}

            touched: list[tuple[int, str, Product]] = []
            for row, values in prepared:
                key = values["sku"].lower() if values.get("sku") else None
                product = existing.get(key) if key else None
                if product is not None:
                    for column, value in values.items():
                        setattr(product, column, value)
                    product.is_deleted = False
                    touched.append((row.record_index, "updated", product))
                    continue
                product = Product(**values, is_deleted=False)
                db.add(product)
                if key:
                    existing[key] = product
                touched.append((row.record_index, "created", product))

            db.flush()
            results = {
                index: RowOutcome(index, status, entity_id=product.id)
                for index, status, product in touched
            }
            db.commit()
        logger.debug(f"Catalog batch stored {len(results)} row(s)")
        return results
