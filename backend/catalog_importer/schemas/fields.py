"""Source field descriptors, target fields and field mappings."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DataType = Literal["string", "number", "boolean", "date", "json"]


class MappingStrategy(str, Enum):
    EXACT = "exact"
    CACHE = "cache"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"
    INFERENCE = "inference"


# Lower value wins when two candidates have the same confidence.
STRATEGY_PRIORITY: dict[MappingStrategy, int] = {
    MappingStrategy.EXACT: 0,
    MappingStrategy.CACHE: 1,
    MappingStrategy.FUZZY: 2,
    MappingStrategy.SEMANTIC: 3,
    MappingStrategy.INFERENCE: 4,
}

Transformation = Literal["trim", "lowercase", "uppercase", "strip_currency", "from_cents"]


def strategy_rank(strategy: MappingStrategy | None) -> int:
    """Priority of a strategy; manual mappings without one rank last."""
    if strategy is None:
        return len(STRATEGY_PRIORITY)
    return STRATEGY_PRIORITY[strategy]


class SourceFieldDescriptor(BaseModel):
    """Column discovered in the uploaded file. Immutable once derived."""

    model_config = ConfigDict(frozen=True)

    name: str
    data_type: DataType = "string"
    sample_values: tuple[Any, ...] = ()
    null_count: int = Field(0, ge=0)
    unique_count: int = Field(0, ge=0)


class TargetField(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    data_type: DataType = "string"
    required: bool = False
    description: str = ""
    synonyms: tuple[str, ...] = ()
    max_length: int | None = None
    integer: bool = False
    choices: tuple[str, ...] = ()


class FieldMapping(BaseModel):
    source_field: str
    target_field: str
    confidence: int = Field(..., ge=0, le=100)
    strategy: MappingStrategy | None = None
    is_manual: bool = False
    transformations: list[Transformation] = Field(default_factory=list)
    reasoning: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def priority(self) -> int:
        return strategy_rank(self.strategy)


class MappingConflict(BaseModel):
    """Two source fields claimed one target; the loser was demoted to unmapped."""

    target_field: str
    winner: str
    loser: str
    winner_confidence: int
    loser_confidence: int


class MappingOverride(BaseModel):
    """A manual mapping supplied by the operator (target None = leave unmapped)."""

    source_field: str
    target_field: str | None = None
    transformations: list[Transformation] = Field(default_factory=list)
