"""Per-record validation findings."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

Severity = Literal["error", "warning"]


class AutoFix(BaseModel):
    action: str
    new_value: Any = None
    confidence: int = Field(100, ge=0, le=100)


class ValidationError(BaseModel):
    """One failed rule for one field of one record.

    Not an exception: the engine collects these, the session decides what to do.
    """

    record_index: int
    field: str
    value: Any = None
    rule: str
    severity: Severity
    message: str
    auto_fix: AutoFix | None = None

    @property
    def blocking(self) -> bool:
        return self.severity == "error"
