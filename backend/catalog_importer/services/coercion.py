"""Value coercion shared by validation and the catalog writer."""

from __future__ import annotations

import math
import re
from typing import Any

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_CURRENCY_NOISE_RE = re.compile(r"[^\d.\-]")

TRUE_VALUES = frozenset({"true", "yes", "y", "1", "t"})
FALSE_VALUES = frozenset({"false", "no", "n", "0", "f"})


class CoercionError(ValueError):
    """Value cannot be converted to the target field's type."""


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def parse_number(value: Any) -> float:
    if isinstance(value, bool):
        raise CoercionError(f"Expected a number, got boolean {value!r}")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise CoercionError(f"Expected a finite number, got {value!r}")
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if _NUMBER_RE.match(text):
            return float(text)
    raise CoercionError(f"Expected a number, got {value!r}")


def strip_currency(value: Any) -> str | None:
    """Remove currency symbols/codes and thousands separators ("$1,299.00" -> "1299.00").

    Returns None when what is left still is not a number.
    """
    if not isinstance(value, str):
        return None
    cleaned = _CURRENCY_NOISE_RE.sub("", value)
    if cleaned and _NUMBER_RE.match(cleaned):
        return cleaned
    return None


def parse_integer(value: Any) -> int:
    number = parse_number(value)
    if not number.is_integer():
        raise CoercionError(f"Expected a whole number, got {value!r}")
    return int(number)


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    raise CoercionError(f"Expected yes/no, got {value!r}")


def to_cents(value: Any) -> int:
    return int(round(parse_number(value) * 100))


def as_text(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()
