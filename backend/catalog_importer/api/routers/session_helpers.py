"""Shared helpers for shaping session responses and errors."""
from __future__ import annotations

from fastapi import HTTPException, status

from catalog_importer.api.schemas.session import SessionRead
from catalog_importer.core.errors import (
    EngineError,
    ErrorKind,
    InvalidTransitionError,
    SessionNotFoundError,
    SessionStateError,
)
from catalog_importer.db.models.upload_session import UploadSession

_STATUS_BY_KIND = {
    ErrorKind.FILE_UPLOAD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.FIELD_MAPPING: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.DATA_VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def http_error(err: EngineError) -> HTTPException:
    """Translate an engine error into the API's status code + ``{"detail": {...}}`` body."""
    if isinstance(err, SessionNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(err, (InvalidTransitionError, SessionStateError)):
        code = status.HTTP_409_CONFLICT
    else:
        code = _STATUS_BY_KIND.get(err.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=err.to_dict())


def serialize_session(session: UploadSession) -> SessionRead:
    """Combine stored session state into the response schema."""
    mappings = session.field_mappings or []
    mapped_sources = {m["source_field"] for m in mappings}
    errors = session.validation_errors or []

    progress = None
    if session.total_records:
        progress = min(1.0, session.processed_records / session.total_records)

    return SessionRead(
        id=session.id,
        user_id=session.user_id,
        file_name=session.file_name,
        file_size=session.file_size,
        file_format=session.file_format,
        status=session.status,
        status_reason=session.status_reason,
        progress=progress,
        total_records=session.total_records,
        processed_records=session.processed_records,
        successful_records=session.successful_records,
        failed_records=session.failed_records,
        source_fields=session.source_fields or [],
        field_mappings=mappings,
        unmapped_fields=[f["name"] for f in session.source_fields or [] if f["name"] not in mapped_sources],
        mapping_conflicts=session.mapping_conflicts or [],
        validation_errors=len(errors),
        blocking_errors=sum(1 for e in errors if e.get("severity") == "error"),
        skipped_records=session.skipped_records or [],
        error_log=session.error_log or [],
        approval_request_id=session.approval_request_id,
        approval_decision=session.approval_decision,
        created_at=session.created_at,
        updated_at=session.updated_at,
        started_at=session.started_at,
        completed_at=session.completed_at,
    )
