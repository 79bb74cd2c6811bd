"""Project raw source records onto target fields using the active mappings."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from catalog_importer.schemas.fields import FieldMapping
from catalog_importer.services.coercion import CoercionError, parse_number, strip_currency

logger = logging.getLogger(__name__)


def apply_transformations(value: Any, directives: Iterable[str]) -> Any:
    """Apply mapping directives in order; a directive that does not fit the value is skipped."""
    for directive in directives:
        if value is None:
            break
        if directive == "trim" and isinstance(value, str):
            value = value.strip()
        elif directive == "lowercase" and isinstance(value, str):
            value = value.lower()
        elif directive == "uppercase" and isinstance(value, str):
            value = value.upper()
        elif directive == "strip_currency":
            cleaned = strip_currency(value)
            if cleaned is not None:
                value = cleaned
        elif directive == "from_cents":
            try:
                value = parse_number(value) / 100
            except CoercionError:
                logger.debug(f"from_cents skipped for non-numeric value {value!r}")
    return value


def map_record(record: dict[str, Any], mappings: Sequence[FieldMapping]) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for mapping in mappings:
        if mapping.source_field not in record:
            continue
        mapped[mapping.target_field] = apply_transformations(
            record[mapping.source_field], mapping.transformations
        )
    return mapped


def apply_mappings(
    records: Sequence[dict[str, Any]],
    mappings: Sequence[FieldMapping],
) -> list[dict[str, Any]]:
    """Return one target-keyed dict per source record, index-aligned with the input."""
    return [map_record(record or {}, mappings) for record in records]


def source_field_for(target_field: str, mappings: Sequence[FieldMapping]) -> str | None:
    for mapping in mappings:
        if mapping.target_field == target_field:
            return mapping.source_field
    return None
