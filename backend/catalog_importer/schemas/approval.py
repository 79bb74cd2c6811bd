"""Approval Gate request/decision payloads."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from catalog_importer.schemas.fields import FieldMapping, MappingConflict, MappingOverride

RiskLevel = Literal["low", "medium", "high", "critical"]


class ApprovalRequest(BaseModel):
    session_id: str
    risk_level: RiskLevel
    confidence: int
    mappings: list[FieldMapping]
    conflicts: list[MappingConflict] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "riskLevel": self.risk_level,
            "confidence": self.confidence,
            "mappings": [m.model_dump(mode="json") for m in self.mappings],
            "conflicts": [c.model_dump(mode="json") for c in self.conflicts],
            "reasons": list(self.reasons),
        }


class ApprovalDecision(BaseModel):
    approved: bool
    reasoning: str | None = None
    overrides: list[MappingOverride] | None = None
    decided_by: str | None = None
