"""Upload session request/response payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from catalog_importer.schemas.fields import FieldMapping, MappingOverride, SourceFieldDescriptor


class CreateSessionRequest(BaseModel):
    user_id: str
    file_name: str = "upload.json"
    file_size: int = Field(0, ge=0)
    file_format: str = Field("json", description="csv|json|xlsx")
    records: list[dict[str, Any]]
    source_fields: list[SourceFieldDescriptor] | None = Field(
        None, description="Pre-extracted descriptors; derived from the records when omitted"
    )


class SessionRead(BaseModel):
    id: str
    user_id: str
    file_name: str | None = None
    file_size: int | None = None
    file_format: str | None = None
    status: str = Field(..., description="initiated|analyzing|mapping|awaiting_approval|previewing|importing|completed|failed|cancelled")
    status_reason: str | None = None
    progress: float | None = Field(None, description="0-1 range for UI progress bars")
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    source_fields: list[dict[str, Any]] = Field(default_factory=list)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    unmapped_fields: list[str] = Field(default_factory=list)
    mapping_conflicts: list[dict[str, Any]] = Field(default_factory=list)
    validation_errors: int = 0
    blocking_errors: int = 0
    skipped_records: list[int] = Field(default_factory=list)
    error_log: list[dict[str, Any]] = Field(default_factory=list)
    approval_request_id: str | None = None
    approval_decision: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class SessionStatusRead(BaseModel):
    session_id: str
    status: str
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    status_reason: str | None = None
    approval_request_id: str | None = None


class MappingsRead(BaseModel):
    session_id: str
    status: str
    confidence: int
    mappings: list[FieldMapping]
    candidates: dict[str, list[FieldMapping]]
    unmapped: list[str]
    conflicts: list[dict[str, Any]]
    target_fields: list[dict[str, Any]]


class MappingUpdateRequest(BaseModel):
    mappings: list[MappingOverride] = Field(..., min_length=1)


class SkipRecordsRequest(BaseModel):
    record_indices: list[int] = Field(..., min_length=1)


class AutoFixRequest(BaseModel):
    min_confidence: int = Field(0, ge=0, le=100)
    record_indices: list[int] | None = None


class AutoFixResponse(BaseModel):
    applied: int
    session: SessionRead


class PreviewRead(BaseModel):
    session_id: str
    status: str
    rows: list[dict[str, Any]]
    skipped_records: list[int]
    missing_required_fields: list[str]
    total_records: int
    valid_records: int
    invalid_records: int
    blocking_errors: int
    warnings: int


class ImportBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_number: int
    start_index: int
    end_index: int
    record_count: int
    status: str
    success_count: int
    failure_count: int
    retry_count: int
    error_message: str | None = None
    processing_time_ms: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ImportHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_number: int
    record_index: int
    record_data: dict[str, Any]
    validation_errors: list[dict[str, Any]] | None = None
    import_status: str
    entity_type: str
    entity_id: int | None = None
    error_message: str | None = None
    processing_time_ms: int | None = None
    retry_count: int = 0
