"""Per-record validation of mapped records against the target schema."""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Collection, Sequence
from typing import Any

from catalog_importer.schemas.fields import FieldMapping, TargetField
from catalog_importer.schemas.validation import AutoFix, ValidationError
from catalog_importer.services.coercion import (
    CoercionError,
    as_text,
    is_blank,
    parse_boolean,
    parse_number,
    strip_currency,
)
from catalog_importer.services.record_mapper import map_record, source_field_for
from catalog_importer.services.target_schema import PRODUCT_SCHEMA, TargetSchema

logger = logging.getLogger(__name__)

NON_NEGATIVE_FIELDS = frozenset({"price", "compare_at_price", "stock", "low_stock_threshold"})
_GTIN_RE = re.compile(r"^\d{8,14}$")
_NON_DIGITS_RE = re.compile(r"\D")


class ValidationEngine:
    def __init__(self, target_schema: TargetSchema = PRODUCT_SCHEMA) -> None:
        self.target_schema = target_schema

    def missing_required_targets(self, mappings: Sequence[FieldMapping]) -> list[str]:
        mapped = {m.target_field for m in mappings}
        return [f.name for f in self.target_schema.required if f.name not in mapped]

    def validate(
        self,
        records: Sequence[dict[str, Any]],
        mappings: Sequence[FieldMapping],
        skip: Collection[int] = (),
    ) -> list[ValidationError]:
        """Check every record that is not skipped; never modifies the input.

        Only mapped target fields are checked. Errors come back ordered by
        record index, then field name.
        """
        targets = [
            self.target_schema.get(m.target_field)
            for m in mappings
            if m.target_field in self.target_schema
        ]
        skipped = set(skip)
        errors: list[ValidationError] = []
        seen_skus: dict[str, int] = {}

        for index, record in enumerate(records):
            if index in skipped:
                continue
            mapped = map_record(record or {}, mappings)
            for target in targets:
                errors.extend(self._check_field(index, target, mapped.get(target.name)))
            sku = as_text(mapped.get("sku"))
            if sku:
                key = sku.lower()
                if key in seen_skus:
                    errors.append(
                        ValidationError(
                            record_index=index,
                            field="sku",
                            value=sku,
                            rule="unique.sku",
                            severity="error",
                            message=f"Duplicate SKU '{sku}' (first seen in record {seen_skus[key]})",
                        )
                    )
                else:
                    seen_skus[key] = index

        errors.sort(key=lambda e: (e.record_index, e.field))
        return errors

    def _check_field(self, index: int, target: TargetField, value: Any) -> list[ValidationError]:
        def error(rule: str, message: str, severity: str = "error", fix: AutoFix | None = None) -> ValidationError:
            return ValidationError(
                record_index=index,
                field=target.name,
                value=value,
                rule=rule,
                severity=severity,
                message=message,
                auto_fix=fix,
            )

        if is_blank(value):
            if target.required:
                return [error("required", f"{target.name} is required")]
            return []

        if target.data_type == "number":
            return self._check_number(target, value, error)
        if target.data_type == "boolean":
            try:
                parse_boolean(value)
            except CoercionError:
                return [error("type.boolean", f"{target.name} must be yes/no, got {value!r}")]
            return []

        found = []
        if isinstance(value, str) and value != value.strip():
            found.append(
                error(
                    "format.whitespace",
                    f"{target.name} has leading or trailing whitespace",
                    "warning",
                    AutoFix(action="trim", new_value=value.strip()),
                )
            )
        text = as_text(value) or ""
        if target.max_length and len(text) > target.max_length:
            found.append(
                error(
                    "length.max",
                    f"{target.name} exceeds {target.max_length} characters",
                    fix=AutoFix(action="truncate", new_value=text[: target.max_length], confidence=80),
                )
            )
        if target.choices and text not in target.choices:
            fix = None
            if text.lower() in target.choices:
                fix = AutoFix(action="lowercase", new_value=text.lower())
            found.append(
                error(
                    f"enum.{target.name}",
                    f"{target.name} must be one of {', '.join(target.choices)}",
                    fix=fix,
                )
            )
        if target.name == "gtin" and not _GTIN_RE.match(text):
            digits = _NON_DIGITS_RE.sub("", text)
            fix = AutoFix(action="strip_non_digits", new_value=digits) if _GTIN_RE.match(digits) else None
            found.append(error("format.gtin", "GTIN must be 8-14 digits", "warning", fix))
        return found

    def _check_number(self, target: TargetField, value: Any, error) -> list[ValidationError]:
        try:
            number = parse_number(value)
        except CoercionError:
            cleaned = strip_currency(value)
            fix = AutoFix(action="strip_currency", new_value=float(cleaned)) if cleaned else None
            return [error("type.number", f"{target.name} must be a number, got {value!r}", fix=fix)]

        found = []
        if target.integer and not number.is_integer():
            found.append(
                error(
                    "type.integer",
                    f"{target.name} must be a whole number",
                    fix=AutoFix(action="round", new_value=round(number), confidence=80),
                )
            )
        if target.name in NON_NEGATIVE_FIELDS and number < 0:
            fixed = abs(number)
            found.append(
                error(
                    "range.non_negative",
                    f"{target.name} cannot be negative",
                    fix=AutoFix(
                        action="absolute_value",
                        new_value=int(fixed) if fixed.is_integer() else fixed,
                        confidence=50,
                    ),
                )
            )
        return found


def blocking_indices(errors: Sequence[ValidationError]) -> set[int]:
    return {e.record_index for e in errors if e.blocking}


def summarize(errors: Sequence[ValidationError], total_records: int) -> dict[str, int]:
    invalid = len(blocking_indices(errors))
    return {
        "total_records": total_records,
        "valid_records": max(0, total_records - invalid),
        "invalid_records": invalid,
        "blocking_errors": sum(1 for e in errors if e.blocking),
        "warnings": sum(1 for e in errors if not e.blocking),
    }


def apply_fixes(
    records: Sequence[dict[str, Any]],
    mappings: Sequence[FieldMapping],
    errors: Sequence[ValidationError],
    min_confidence: int = 0,
) -> tuple[list[dict[str, Any]], int]:
    """Write suggested fixes back into the source records.

    Returns the updated copy of the records and the number of fixes applied.
    """
    updated = copy.deepcopy(list(records))
    applied = 0
    for err in errors:
        if err.auto_fix is None or err.auto_fix.confidence < min_confidence:
            continue
        source = source_field_for(err.field, mappings)
        if source is None or not 0 <= err.record_index < len(updated):
            continue
        updated[err.record_index][source] = err.auto_fix.new_value
        applied += 1
    logger.info(f"Applied {applied} auto-fix(es)")
    return updated, applied
