"""Session lifecycle statuses and import options."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    INITIATED = "initiated"
    ANALYZING = "analyzing"
    MAPPING = "mapping"
    AWAITING_APPROVAL = "awaiting_approval"
    PREVIEWING = "previewing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED})


class FileDescriptor(BaseModel):
    name: str
    size: int = Field(0, ge=0)
    format: str = "csv"


class ImportOptions(BaseModel):
    """Caller-configurable failure tolerance for one import run."""

    strict: bool = False
    max_failure_rate: float | None = Field(None, ge=0.0, le=1.0)

    def failure_tolerance(self, default: float) -> float:
        if self.strict:
            return 0.0
        if self.max_failure_rate is not None:
            return self.max_failure_rate
        return default
