"""Closed set of events published on a session's channel.

Every event is an envelope ``{type, sessionId, data, timestamp}`` whose ``data``
has a fixed shape per ``type``. Wire JSON uses camelCase keys.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProgressData(CamelModel):
    session_id: str
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    current_batch: int
    total_batches: int
    status: str
    # Batches were still running when the status was read; a completed event follows.
    in_flight: bool = False


class CompletedData(CamelModel):
    session_id: str
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    status: str
    processing_time_ms: int = 0


class ErrorData(CamelModel):
    kind: str
    code: str
    message: str
    recoverable: bool = False
    remediation: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class MappingSuggestionsData(CamelModel):
    mappings: list[dict[str, Any]]
    unmapped: list[str] = Field(default_factory=list)
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    confidence: int = 0


class ValidationUpdateData(CamelModel):
    status: str
    total_records: int
    valid_records: int
    invalid_records: int
    blocking_errors: int
    warnings: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
    missing_required_fields: list[str] = Field(default_factory=list)


class _Envelope(CamelModel):
    session_id: str
    timestamp: datetime = Field(default_factory=_utcnow)


class ProgressEvent(_Envelope):
    type: Literal["progress"] = "progress"
    data: ProgressData


class CompletedEvent(_Envelope):
    type: Literal["completed"] = "completed"
    data: CompletedData


class ErrorEvent(_Envelope):
    type: Literal["error"] = "error"
    data: ErrorData


class MappingSuggestionsEvent(_Envelope):
    type: Literal["mapping_suggestions"] = "mapping_suggestions"
    data: MappingSuggestionsData


class ValidationUpdateEvent(_Envelope):
    type: Literal["validation_update"] = "validation_update"
    data: ValidationUpdateData


SessionEvent = Annotated[
    Union[
        ProgressEvent,
        CompletedEvent,
        ErrorEvent,
        MappingSuggestionsEvent,
        ValidationUpdateEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[SessionEvent] = TypeAdapter(SessionEvent)

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


def encode_event(event: SessionEvent) -> str:
    return event.model_dump_json(by_alias=True)


def decode_event(raw: str | bytes | dict[str, Any]) -> SessionEvent:
    """Parse wire JSON (or an already-loaded dict) into the matching event type."""
    if isinstance(raw, dict):
        return _event_adapter.validate_python(raw)
    return _event_adapter.validate_json(raw)


def ends_stream(event: SessionEvent) -> bool:
    """True when no further events will follow on this session's channel."""
    match event:
        case CompletedEvent():
            return True
        case ProgressEvent(data=data):
            return data.status in TERMINAL_STATUSES and not data.in_flight
        case ValidationUpdateEvent(data=data):
            return data.status in TERMINAL_STATUSES
        case ErrorEvent() | MappingSuggestionsEvent():
            return False
        case _:
            raise TypeError(f"Unknown session event: {type(event).__name__}")
