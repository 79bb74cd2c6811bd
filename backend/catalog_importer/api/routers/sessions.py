"""Upload session endpoints: intake, mapping review, approval and import control."""

from __future__ import annotations

import asyncio
import logging

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
    status,
)

from catalog_importer.api.dependencies.services import get_app_settings, get_import_service
from catalog_importer.api.routers.session_helpers import http_error, serialize_session
from catalog_importer.api.schemas.session import (
    AutoFixRequest,
    AutoFixResponse,
    CreateSessionRequest,
    ImportBatchRead,
    ImportHistoryRead,
    MappingsRead,
    MappingUpdateRequest,
    PreviewRead,
    SessionRead,
    SessionStatusRead,
    SkipRecordsRequest,
)
from catalog_importer.core.config import Settings
from catalog_importer.core.errors import EngineError, ImportExecutionError
from catalog_importer.schemas.approval import ApprovalDecision
from catalog_importer.schemas.fields import FieldMapping
from catalog_importer.schemas.session import FileDescriptor, ImportOptions
from catalog_importer.services.field_resolver import aggregate_confidence
from catalog_importer.services.import_service import ImportService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/",
    summary="Create a session from extracted records",
    status_code=status.HTTP_201_CREATED,
    response_model=SessionRead,
)
def create_session(
    payload: CreateSessionRequest,
    service: ImportService = Depends(get_import_service),
) -> SessionRead:
    """Analyze the records, resolve field mappings and advance as far as possible."""
    try:
        session = service.create_session(
            payload.user_id,
            FileDescriptor(name=payload.file_name, size=payload.file_size, format=payload.file_format),
            payload.records,
            payload.source_fields,
        )
    except EngineError as e:
        raise http_error(e) from e
    return serialize_session(session)


@router.post(
    "/upload",
    summary="Create a session from an uploaded CSV/JSON/XLSX file",
    status_code=status.HTTP_201_CREATED,
    response_model=SessionRead,
)
async def upload_file(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    service: ImportService = Depends(get_import_service),
) -> SessionRead:
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )
    content = await file.read()
    try:
        session = await asyncio.to_thread(service.ingest_upload, user_id, file.filename, content)
    except EngineError as e:
        raise http_error(e) from e
    return serialize_session(session)


@router.get("/", summary="List upload sessions", response_model=list[SessionRead])
def list_sessions(
    user_id: str | None = Query(None, description="Only sessions owned by this user"),
    limit: int = Query(50, ge=1, le=500),
    service: ImportService = Depends(get_import_service),
) -> list[SessionRead]:
    return [serialize_session(s) for s in service.list_sessions(user_id, limit)]


@router.get("/{session_id}", summary="Full session view", response_model=SessionRead)
def get_session(session_id: str, service: ImportService = Depends(get_import_service)) -> SessionRead:
    try:
        return serialize_session(service.get_session(session_id))
    except EngineError as e:
        raise http_error(e) from e


@router.get("/{session_id}/status", summary="Authoritative status and counters", response_model=SessionStatusRead)
def get_status(session_id: str, service: ImportService = Depends(get_import_service)) -> SessionStatusRead:
    try:
        return SessionStatusRead(**service.get_status(session_id))
    except EngineError as e:
        raise http_error(e) from e


@router.get("/{session_id}/mappings", summary="Active mappings and ranked alternatives", response_model=MappingsRead)
def get_mappings(session_id: str, service: ImportService = Depends(get_import_service)) -> MappingsRead:
    try:
        session = service.get_session(session_id)
    except EngineError as e:
        raise http_error(e) from e
    mappings = [FieldMapping.model_validate(m) for m in session.field_mappings or []]
    mapped = {m.source_field for m in mappings}
    return MappingsRead(
        session_id=session.id,
        status=session.status,
        confidence=aggregate_confidence(mappings),
        mappings=mappings,
        candidates=session.mapping_candidates or {},
        unmapped=[f["name"] for f in session.source_fields or [] if f["name"] not in mapped],
        conflicts=session.mapping_conflicts or [],
        target_fields=service.target_schema.describe(),
    )


@router.put("/{session_id}/mappings", summary="Override field mappings", response_model=SessionRead)
def set_mappings(
    session_id: str,
    payload: MappingUpdateRequest,
    service: ImportService = Depends(get_import_service),
) -> SessionRead:
    try:
        return serialize_session(service.set_mappings(session_id, payload.mappings))
    except EngineError as e:
        raise http_error(e) from e


@router.post("/{session_id}/skip", summary="Exclude records from the import", response_model=SessionRead)
def skip_records(
    session_id: str,
    payload: SkipRecordsRequest,
    service: ImportService = Depends(get_import_service),
) -> SessionRead:
    try:
        return serialize_session(service.skip_records(session_id, payload.record_indices))
    except EngineError as e:
        raise http_error(e) from e


@router.post("/{session_id}/auto-fix", summary="Apply suggested auto-fixes", response_model=AutoFixResponse)
def apply_auto_fixes(
    session_id: str,
    payload: AutoFixRequest,
    service: ImportService = Depends(get_import_service),
) -> AutoFixResponse:
    try:
        session, applied = service.apply_auto_fixes(session_id, payload.min_confidence, payload.record_indices)
    except EngineError as e:
        raise http_error(e) from e
    return AutoFixResponse(applied=applied, session=serialize_session(session))


@router.get("/{session_id}/preview", summary="Mapped preview rows with validation", response_model=PreviewRead)
def preview(
    session_id: str,
    limit: int = Query(20, ge=1, le=500),
    service: ImportService = Depends(get_import_service),
) -> PreviewRead:
    try:
        return PreviewRead(**service.preview(session_id, limit))
    except EngineError as e:
        raise http_error(e) from e


@router.post("/{session_id}/approval", summary="Record the approval decision", response_model=SessionRead)
def record_approval(
    session_id: str,
    decision: ApprovalDecision,
    service: ImportService = Depends(get_import_service),
) -> SessionRead:
    try:
        return serialize_session(service.record_approval_decision(session_id, decision))
    except EngineError as e:
        raise http_error(e) from e


@router.post(
    "/{session_id}/import",
    summary="Start importing",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SessionRead,
)
def start_import(
    session_id: str,
    background_tasks: BackgroundTasks,
    options: ImportOptions | None = None,
    service: ImportService = Depends(get_import_service),
    settings: Settings = Depends(get_app_settings),
) -> SessionRead:
    try:
        session = service.start_import(session_id, options)
    except EngineError as e:
        raise http_error(e) from e

    if settings.run_imports_inline:
        background_tasks.add_task(service.run_import, session_id)
        return serialize_session(session)

    from catalog_importer.workers.tasks.run_import import run_import_task

    try:
        run_import_task.delay(session_id)
    except Exception as exc:
        logger.error(f"Failed to enqueue import for session {session_id}: {exc}", exc_info=True)
        error = ImportExecutionError("Could not queue the import", code="enqueue_failed")
        service.fail_session(session_id, error)
        raise http_error(error) from exc
    logger.info(f"Queued import for session {session_id}")
    return serialize_session(session)


@router.post("/{session_id}/cancel", summary="Cancel the session", response_model=SessionRead)
def cancel_session(session_id: str, service: ImportService = Depends(get_import_service)) -> SessionRead:
    try:
        return serialize_session(service.cancel_session(session_id))
    except EngineError as e:
        raise http_error(e) from e


@router.delete("/{session_id}", summary="Cancel if running and soft-delete", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: str, service: ImportService = Depends(get_import_service)) -> Response:
    try:
        service.delete_session(session_id)
    except EngineError as e:
        raise http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{session_id}/batches", summary="Per-batch audit", response_model=list[ImportBatchRead])
def list_batches(session_id: str, service: ImportService = Depends(get_import_service)) -> list[ImportBatchRead]:
    try:
        return [ImportBatchRead.model_validate(b) for b in service.list_batches(session_id)]
    except EngineError as e:
        raise http_error(e) from e


@router.get("/{session_id}/history", summary="Per-record audit", response_model=list[ImportHistoryRead])
def list_history(
    session_id: str,
    import_status: str | None = Query(None, description="created|updated|failed"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: ImportService = Depends(get_import_service),
) -> list[ImportHistoryRead]:
    try:
        rows = service.list_history(session_id, import_status=import_status, limit=limit, offset=offset)
    except EngineError as e:
        raise http_error(e) from e
    return [ImportHistoryRead.model_validate(h) for h in rows]
