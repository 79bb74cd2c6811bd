"""Derive source field descriptors from a raw record set."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from catalog_importer.schemas.fields import DataType, SourceFieldDescriptor
from catalog_importer.services.coercion import (
    FALSE_VALUES,
    TRUE_VALUES,
    CoercionError,
    is_blank,
    parse_number,
)

SAMPLE_SIZE = 100
SAMPLE_VALUES = 5
# Share of non-null values that must agree before a type is inferred.
TYPE_AGREEMENT = 0.8


def _looks_like_date(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    if not isinstance(value, str) or len(value) < 8:
        return False
    try:
        datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _looks_like_number(value: Any) -> bool:
    try:
        parse_number(value)
    except CoercionError:
        return False
    return True


def _looks_like_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in (TRUE_VALUES | FALSE_VALUES) - {"0", "1"}


def infer_data_type(values: Sequence[Any]) -> DataType:
    if not values:
        return "string"
    total = len(values)
    if sum(isinstance(v, (dict, list)) for v in values) / total > TYPE_AGREEMENT:
        return "json"
    if sum(_looks_like_boolean(v) for v in values) / total > TYPE_AGREEMENT:
        return "boolean"
    if sum(_looks_like_number(v) for v in values) / total > TYPE_AGREEMENT:
        return "number"
    if sum(_looks_like_date(v) for v in values) / total > TYPE_AGREEMENT:
        return "date"
    return "string"


def _hashable(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return value


def analyze_fields(
    records: Sequence[dict[str, Any]],
    sample_size: int = SAMPLE_SIZE,
) -> list[SourceFieldDescriptor]:
    """Describe every column seen in the first ``sample_size`` records.

    Field order follows first appearance, so the descriptors line up with the
    file's header order.
    """
    sample = [record for record in records[:sample_size] if isinstance(record, dict)]
    names: list[str] = []
    seen: set[str] = set()
    for record in sample:
        for key in record:
            if key not in seen:
                seen.add(key)
                names.append(key)

    descriptors = []
    for name in names:
        values = [record.get(name) for record in sample]
        present = [value for value in values if not is_blank(value)]
        distinct: list[Any] = []
        distinct_keys: set[Any] = set()
        for value in present:
            key = _hashable(value)
            if key not in distinct_keys:
                distinct_keys.add(key)
                distinct.append(value)
        descriptors.append(
            SourceFieldDescriptor(
                name=name,
                data_type=infer_data_type(present),
                sample_values=tuple(distinct[:SAMPLE_VALUES]),
                null_count=len(values) - len(present),
                unique_count=len(distinct_keys),
            )
        )
    return descriptors
