"""Session control facade used by the API and the Celery worker.

Every status change goes through ``SessionStateMachine``; this module decides
*which* change to make after each operator action.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from catalog_importer.core.config import Settings
from catalog_importer.core.errors import (
    DataValidationError,
    EngineError,
    FieldMappingError,
    FileUploadError,
    InvalidTransitionError,
    NetworkError,
    SessionNotFoundError,
    SessionStateError,
)
from catalog_importer.db.models.import_batch import ImportBatch
from catalog_importer.db.models.import_history import ImportHistory
from catalog_importer.db.models.upload_session import UploadSession
from catalog_importer.schemas.approval import ApprovalDecision, ApprovalRequest
from catalog_importer.schemas.events import (
    ErrorData,
    ErrorEvent,
    MappingSuggestionsData,
    MappingSuggestionsEvent,
    ProgressData,
    ProgressEvent,
    ValidationUpdateData,
    ValidationUpdateEvent,
)
from catalog_importer.schemas.fields import (
    FieldMapping,
    MappingConflict,
    MappingOverride,
    SourceFieldDescriptor,
)
from catalog_importer.schemas.session import FileDescriptor, ImportOptions, SessionStatus
from catalog_importer.schemas.validation import ValidationError
from catalog_importer.services.approval_gate import (
    ApprovalGate,
    LoggingApprovalGate,
    WebhookApprovalGate,
    assess_risk,
)
from catalog_importer.services.batch_importer import BatchImporter, ImportSummary
from catalog_importer.services.catalog_writer import CatalogWriter, SqlCatalogWriter
from catalog_importer.services.field_analysis import analyze_fields
from catalog_importer.services.field_resolver import FieldResolver, aggregate_confidence
from catalog_importer.services.inference_client import HttpInferenceClient, InferenceProvider
from catalog_importer.services.mapping_cache import MappingCache
from catalog_importer.services.progress_broadcaster import ProgressBroadcaster, Subscriber
from catalog_importer.services.record_mapper import apply_mappings
from catalog_importer.services.record_reader import read_records
from catalog_importer.services.session_machine import SessionStateMachine
from catalog_importer.services.target_schema import PRODUCT_SCHEMA, TargetSchema
from catalog_importer.services.validation import ValidationEngine, apply_fixes, summarize

logger = logging.getLogger(__name__)

S = SessionStatus
EDITABLE_STATUSES = frozenset({S.ANALYZING, S.MAPPING, S.AWAITING_APPROVAL, S.PREVIEWING})
PREVIEW_LIMIT = 20


class ImportService:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        resolver: FieldResolver,
        validator: ValidationEngine,
        broadcaster: ProgressBroadcaster,
        importer: BatchImporter,
        approval_gate: ApprovalGate | None = None,
        machine: SessionStateMachine | None = None,
        target_schema: TargetSchema = PRODUCT_SCHEMA,
        approval_threshold: int = 70,
        max_upload_bytes: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.resolver = resolver
        self.validator = validator
        self.broadcaster = broadcaster
        self.importer = importer
        self.approval_gate = approval_gate or LoggingApprovalGate()
        self.machine = machine or SessionStateMachine(session_factory)
        self.target_schema = target_schema
        self.approval_threshold = approval_threshold
        self.max_upload_bytes = max_upload_bytes

    # -- intake -----------------------------------------------------------

    def ingest_upload(self, user_id: str, filename: str, content: bytes) -> UploadSession:
        """Create a session from raw upload bytes.

        Unreadable files still get a session (status ``failed``) so the
        attempt is auditable; the ``FileUploadError`` carries its id.
        """
        try:
            file_format, records = read_records(filename, content, self.max_upload_bytes)
        except FileUploadError as exc:
            session = self._insert_session(user_id, FileDescriptor(name=filename or "upload", size=len(content)), [])
            self.fail_session(session.id, exc)
            exc.details["session_id"] = session.id
            raise
        descriptor = FileDescriptor(name=filename, size=len(content), format=file_format)
        return self.create_session(user_id, descriptor, records)

    def create_session(
        self,
        user_id: str,
        file: FileDescriptor,
        records: Sequence[dict[str, Any]],
        source_fields: Sequence[SourceFieldDescriptor] | None = None,
    ) -> UploadSession:
        records = [dict(record) for record in records]
        session = self._insert_session(user_id, file, records)
        if not records:
            exc = FileUploadError("Upload contains no records", code="empty_file")
            self.fail_session(session.id, exc)
            exc.details["session_id"] = session.id
            raise exc

        descriptors = list(source_fields) if source_fields else analyze_fields(records)
        self.machine.transition(
            session.id,
            S.ANALYZING,
            source_fields=[d.model_dump(mode="json") for d in descriptors],
        )
        self._resolve(session.id, descriptors)
        return self.get_session(session.id)

    def _insert_session(
        self,
        user_id: str,
        file: FileDescriptor,
        records: list[dict[str, Any]],
    ) -> UploadSession:
        with self._session_factory() as db:
            session = UploadSession(
                user_id=user_id,
                file_name=file.name,
                file_size=file.size,
                file_format=file.format,
                status=S.INITIATED.value,
                source_records=records,
                total_records=len(records),
                field_mappings=[],
                suggested_mappings=[],
                mapping_candidates={},
                mapping_conflicts=[],
                validation_errors=[],
                skipped_records=[],
                error_log=[],
                import_config={},
            )
            db.add(session)
            db.commit()
            logger.info(f"Created upload session {session.id} for user {user_id} ({len(records)} records)")
            return session

    def _resolve(self, session_id: str, descriptors: list[SourceFieldDescriptor]) -> None:
        resolution = self.resolver.resolve_all(descriptors, self.target_schema)
        mappings = [m.model_dump(mode="json") for m in resolution.mappings]
        changes = {
            "field_mappings": mappings,
            "suggested_mappings": mappings,
            "mapping_candidates": {
                name: [c.model_dump(mode="json") for c in options]
                for name, options in resolution.candidates.items()
            },
            "mapping_conflicts": [c.model_dump(mode="json") for c in resolution.conflicts],
        }
        self._publish(
            session_id,
            MappingSuggestionsEvent(
                session_id=session_id,
                data=MappingSuggestionsData(
                    mappings=mappings,
                    unmapped=resolution.unmapped,
                    conflicts=changes["mapping_conflicts"],
                    confidence=resolution.confidence,
                ),
            ),
        )
        if not resolution.has_candidates:
            self._update(session_id, **changes)
            self._record_error(
                session_id,
                FieldMappingError(
                    "No source field could be matched to the product schema",
                    code="no_mapping_candidates",
                    remediation="Map the columns manually",
                ),
            )
            return
        self.machine.transition(session_id, S.MAPPING, expected=S.ANALYZING, **changes)
        self._advance(session_id)

    # -- progression ------------------------------------------------------

    def _advance(self, session_id: str) -> SessionStatus:
        """Move a session in ``mapping``/``awaiting_approval`` as far as it can go."""
        session = self._load(session_id)
        status = SessionStatus(session.status)
        mappings = self._mappings(session)

        missing = self.validator.missing_required_targets(mappings)
        if missing:
            self._record_error(
                session_id,
                FieldMappingError(
                    f"Required target field(s) not mapped: {', '.join(missing)}",
                    remediation="Map a source column to each required field",
                    details={"fields": missing},
                ),
            )
            if status == S.AWAITING_APPROVAL:
                self.machine.transition(session_id, S.MAPPING, expected=status)
                return S.MAPPING
            return status

        approved = bool((session.approval_decision or {}).get("approved"))
        all_manual = all(m.is_manual for m in mappings)
        if status == S.MAPPING and not approved and not all_manual:
            conflicts = [MappingConflict.model_validate(c) for c in session.mapping_conflicts or []]
            confidence = aggregate_confidence(mappings)
            risk = assess_risk(confidence, conflicts, self.approval_threshold)
            if risk.needs_approval:
                request = ApprovalRequest(
                    session_id=session_id,
                    risk_level=risk.risk_level,
                    confidence=confidence,
                    mappings=mappings,
                    conflicts=conflicts,
                    reasons=risk.reasons,
                )
                request_id = None
                try:
                    request_id = self.approval_gate.submit(request)
                except NetworkError as exc:
                    # The decision can still be recorded through the API.
                    logger.warning(f"Approval request for session {session_id} not delivered: {exc}")
                    self._append_error_log(session_id, exc)
                self.machine.transition(
                    session_id,
                    S.AWAITING_APPROVAL,
                    expected=S.MAPPING,
                    approval_request_id=request_id,
                    status_reason="; ".join(risk.reasons),
                )
                return S.AWAITING_APPROVAL

        errors = self.validator.validate(session.source_records or [], mappings, skip=session.skipped_records or [])
        blocking = any(e.blocking for e in errors)
        if not blocking:
            target = S.PREVIEWING
        elif status == S.AWAITING_APPROVAL:
            target = S.MAPPING
        else:
            target = status
        changes = {"validation_errors": [e.model_dump(mode="json") for e in errors]}
        if target == status:
            self._update(session_id, **changes)
        else:
            self.machine.transition(session_id, target, expected=status, **changes)
        self._publish_validation(session_id, target, session, errors)
        return target

    def _revalidate(self, session_id: str) -> SessionStatus:
        session = self._load(session_id)
        status = SessionStatus(session.status)
        if status == S.MAPPING:
            return self._advance(session_id)
        errors = self.validator.validate(
            session.source_records or [], self._mappings(session), skip=session.skipped_records or []
        )
        changes = {"validation_errors": [e.model_dump(mode="json") for e in errors]}
        if status == S.PREVIEWING and any(e.blocking for e in errors):
            self.machine.transition(session_id, S.MAPPING, expected=status, **changes)
            status = S.MAPPING
        else:
            self._update(session_id, **changes)
        self._publish_validation(session_id, status, session, errors)
        return status

    # -- operator actions ---------------------------------------------------

    def set_mappings(self, session_id: str, overrides: Sequence[MappingOverride]) -> UploadSession:
        """Apply manual mappings; a ``None`` target unmaps the source field."""
        session = self._load(session_id)
        status = self._require(session, EDITABLE_STATUSES, "change mappings")
        mappings = self._merge_overrides(session, overrides)
        changes = {
            "field_mappings": [m.model_dump(mode="json") for m in mappings],
            "mapping_conflicts": [],
            "approval_decision": None,
        }
        if status == S.MAPPING:
            self._update(session_id, **changes)
        else:
            self.machine.transition(session_id, S.MAPPING, expected=status, **changes)
        logger.info(f"Session {session_id}: {len(overrides)} manual mapping change(s)")
        self._advance(session_id)
        return self.get_session(session_id)

    def _merge_overrides(self, session: UploadSession, overrides: Sequence[MappingOverride]) -> list[FieldMapping]:
        positions = {field["name"]: index for index, field in enumerate(session.source_fields or [])}
        current = {m.source_field: m for m in self._mappings(session)}
        candidates = session.mapping_candidates or {}

        claimed: set[str] = set()
        for override in overrides:
            if override.source_field not in positions:
                raise FieldMappingError(
                    f"Unknown source field '{override.source_field}'",
                    code="unknown_source_field",
                )
            if override.target_field is None:
                current.pop(override.source_field, None)
                continue
            if override.target_field not in self.target_schema:
                raise FieldMappingError(
                    f"Unknown target field '{override.target_field}'",
                    code="unknown_target_field",
                    details={"valid_targets": self.target_schema.names},
                )
            if override.target_field in claimed:
                raise FieldMappingError(
                    f"Target field '{override.target_field}' assigned to more than one source field",
                    code="duplicate_target",
                )
            claimed.add(override.target_field)
            # The manual choice takes the target away from any other source.
            for source, mapping in list(current.items()):
                if mapping.target_field == override.target_field and source != override.source_field:
                    del current[source]
            proposed = next(
                (
                    c for c in candidates.get(override.source_field, [])
                    if c["target_field"] == override.target_field
                ),
                None,
            )
            current[override.source_field] = FieldMapping(
                source_field=override.source_field,
                target_field=override.target_field,
                confidence=100,
                strategy=proposed["strategy"] if proposed else None,
                is_manual=True,
                transformations=list(override.transformations),
                reasoning="Manual mapping",
            )
        return sorted(current.values(), key=lambda m: positions.get(m.source_field, len(positions)))

    def skip_records(self, session_id: str, record_indices: Iterable[int]) -> UploadSession:
        session = self._load(session_id)
        self._require(session, {S.MAPPING, S.AWAITING_APPROVAL, S.PREVIEWING}, "skip records")
        indices = sorted(set(record_indices))
        total = len(session.source_records or [])
        invalid = [i for i in indices if not 0 <= i < total]
        if invalid:
            raise DataValidationError(
                f"Record indices out of range: {invalid}",
                code="invalid_record_index",
                details={"total_records": total},
            )
        skipped = sorted(set(session.skipped_records or []) | set(indices))
        self._update(session_id, skipped_records=skipped)
        logger.info(f"Session {session_id}: skipping {len(skipped)} record(s)")
        self._revalidate(session_id)
        return self.get_session(session_id)

    def apply_auto_fixes(
        self,
        session_id: str,
        min_confidence: int = 0,
        record_indices: Iterable[int] | None = None,
    ) -> tuple[UploadSession, int]:
        session = self._load(session_id)
        self._require(session, {S.MAPPING, S.AWAITING_APPROVAL, S.PREVIEWING}, "apply auto-fixes")
        errors = [ValidationError.model_validate(e) for e in session.validation_errors or []]
        if record_indices is not None:
            wanted = set(record_indices)
            errors = [e for e in errors if e.record_index in wanted]
        records, applied = apply_fixes(session.source_records or [], self._mappings(session), errors, min_confidence)
        if applied:
            self._update(session_id, source_records=records)
            self._revalidate(session_id)
        return self.get_session(session_id), applied

    def record_approval_decision(self, session_id: str, decision: ApprovalDecision) -> UploadSession:
        session = self._load(session_id)
        self._require(session, {S.AWAITING_APPROVAL}, "record an approval decision")
        changes: dict[str, Any] = {"approval_decision": decision.model_dump(mode="json")}
        if decision.overrides:
            mappings = self._merge_overrides(session, decision.overrides)
            changes["field_mappings"] = [m.model_dump(mode="json") for m in mappings]
        if not decision.approved:
            self.machine.transition(
                session_id,
                S.MAPPING,
                expected=S.AWAITING_APPROVAL,
                status_reason=decision.reasoning or "Mappings rejected",
                **changes,
            )
            logger.info(f"Session {session_id}: mappings rejected by {decision.decided_by or 'approver'}")
            return self.get_session(session_id)
        self._update(session_id, **changes)
        logger.info(f"Session {session_id}: mappings approved by {decision.decided_by or 'approver'}")
        self._advance(session_id)
        return self.get_session(session_id)

    def preview(self, session_id: str, limit: int = PREVIEW_LIMIT) -> dict[str, Any]:
        session = self._load(session_id)
        mappings = self._mappings(session)
        records = session.source_records or []
        skipped = set(session.skipped_records or [])
        errors = [ValidationError.model_validate(e) for e in session.validation_errors or []]
        errors_by_index: dict[int, list[dict[str, Any]]] = {}
        for err in errors:
            errors_by_index.setdefault(err.record_index, []).append(err.model_dump(mode="json"))

        rows = []
        for index, mapped in enumerate(apply_mappings(records, mappings)):
            if index in skipped:
                continue
            rows.append({"record_index": index, "data": mapped, "errors": errors_by_index.get(index, [])})
            if len(rows) >= limit:
                break
        return {
            "session_id": session_id,
            "status": session.status,
            "rows": rows,
            "skipped_records": sorted(skipped),
            "missing_required_fields": self.validator.missing_required_targets(mappings),
            **summarize(errors, len(records) - len(skipped)),
        }

    def start_import(self, session_id: str, options: ImportOptions | None = None) -> UploadSession:
        options = options or ImportOptions()
        session = self._load(session_id)
        self._require(session, {S.PREVIEWING}, "start importing")
        errors = [ValidationError.model_validate(e) for e in session.validation_errors or []]
        if any(e.blocking for e in errors):
            raise DataValidationError(
                "Resolve or skip the records with errors before importing",
                code="unresolved_validation_errors",
            )
        mappings = self._mappings(session)
        importable = len(session.source_records or []) - len(set(session.skipped_records or []))
        self.machine.transition(
            session_id,
            S.IMPORTING,
            expected=S.PREVIEWING,
            import_config=options.model_dump(mode="json"),
            total_records=importable,
            processed_records=0,
            successful_records=0,
            failed_records=0,
        )
        suggested = [FieldMapping.model_validate(m) for m in session.suggested_mappings or []]
        self.resolver.learn(suggested, mappings)
        return self.get_session(session_id)

    def run_import(self, session_id: str) -> ImportSummary:
        return self.importer.run_import(session_id)

    def cancel_session(self, session_id: str, reason: str | None = None) -> UploadSession:
        self._load(session_id)
        previous = self.machine.transition(session_id, S.CANCELLED, status_reason=reason or "Cancelled by user")
        snapshot = self.snapshot_event(session_id)
        if previous == S.IMPORTING:
            # The importer closes the channel with its completed event once
            # the batches already submitted have been recorded.
            snapshot.data.in_flight = True
        self._publish(session_id, snapshot)
        return self.get_session(session_id)

    def delete_session(self, session_id: str) -> None:
        session = self._load(session_id)
        if not SessionStatus(session.status).is_terminal:
            try:
                self.cancel_session(session_id, reason="Session deleted")
            except InvalidTransitionError:
                # Finished on its own while we were deleting it.
                logger.info(f"Session {session_id} reached a final status before cancellation")
        self._update(session_id, is_deleted=True)
        logger.info(f"Soft-deleted session {session_id}")

    # -- reads --------------------------------------------------------------

    def get_session(self, session_id: str) -> UploadSession:
        return self._load(session_id)

    def get_status(self, session_id: str) -> dict[str, Any]:
        session = self._load(session_id)
        return {
            "session_id": session.id,
            "status": self.machine.status(session_id).value,
            "total_records": session.total_records,
            "processed_records": session.processed_records,
            "successful_records": session.successful_records,
            "failed_records": session.failed_records,
            "status_reason": session.status_reason,
            "approval_request_id": session.approval_request_id,
        }

    def list_sessions(self, user_id: str | None = None, limit: int = 50) -> list[UploadSession]:
        query = select(UploadSession).where(UploadSession.is_deleted.is_(False))
        if user_id:
            query = query.where(UploadSession.user_id == user_id)
        query = query.order_by(UploadSession.created_at.desc()).limit(limit)
        with self._session_factory() as db:
            return list(db.scalars(query))

    def list_batches(self, session_id: str) -> list[ImportBatch]:
        self._load(session_id)
        query = select(ImportBatch).where(ImportBatch.session_id == session_id).order_by(ImportBatch.batch_number)
        with self._session_factory() as db:
            return list(db.scalars(query))

    def list_history(
        self,
        session_id: str,
        *,
        import_status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ImportHistory]:
        self._load(session_id)
        query = select(ImportHistory).where(ImportHistory.session_id == session_id)
        if import_status:
            query = query.where(ImportHistory.import_status == import_status)
        query = query.order_by(ImportHistory.record_index).offset(offset).limit(limit)
        with self._session_factory() as db:
            return list(db.scalars(query))

    def snapshot_event(self, session_id: str) -> ProgressEvent:
        """Progress event built from the stored session, sent to new subscribers."""
        session = self._load(session_id)
        with self._session_factory() as db:
            counts = dict(
                db.execute(
                    select(ImportBatch.status, func.count(ImportBatch.id))
                    .where(ImportBatch.session_id == session_id)
                    .group_by(ImportBatch.status)
                ).all()
            )
        batches_done = counts.get("succeeded", 0) + counts.get("failed", 0)
        open_batches = counts.get("pending", 0) + counts.get("running", 0)
        return ProgressEvent(
            session_id=session_id,
            data=ProgressData(
                session_id=session_id,
                total_records=session.total_records,
                processed_records=session.processed_records,
                successful_records=session.successful_records,
                failed_records=session.failed_records,
                current_batch=batches_done,
                total_batches=math.ceil(session.total_records / self.importer.batch_size),
                status=session.status,
                in_flight=session.status == S.CANCELLED.value and open_batches > 0,
            ),
        )

    def subscribe(self, session_id: str, subscriber: Subscriber) -> None:
        self.broadcaster.subscribe(session_id, subscriber, snapshot=self.snapshot_event(session_id))

    def unsubscribe(self, session_id: str, subscriber: Subscriber) -> None:
        self.broadcaster.unsubscribe(session_id, subscriber)

    def cache_statistics(self) -> dict[str, dict[str, Any]]:
        if self.resolver.cache is None:
            return {}
        return self.resolver.cache.statistics()

    # -- helpers ------------------------------------------------------------

    def _load(self, session_id: str) -> UploadSession:
        with self._session_factory() as db:
            session = db.get(UploadSession, session_id)
        if session is None or session.is_deleted:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def _mappings(session: UploadSession) -> list[FieldMapping]:
        return [FieldMapping.model_validate(m) for m in session.field_mappings or []]

    @staticmethod
    def _require(session: UploadSession, allowed: Iterable[SessionStatus], action: str) -> SessionStatus:
        status = SessionStatus(session.status)
        if status not in allowed:
            raise SessionStateError(
                f"Cannot {action} while session is '{status.value}'",
                details={"status": status.value},
            )
        return status

    def _update(self, session_id: str, **values: Any) -> None:
        with self._session_factory() as db:
            db.execute(update(UploadSession).where(UploadSession.id == session_id).values(**values))
            db.commit()

    def _append_error_log(self, session_id: str, error: EngineError) -> None:
        with self._session_factory() as db:
            session = db.get(UploadSession, session_id)
            session.error_log = [*(session.error_log or []), error.to_dict()]
            db.commit()

    def _record_error(self, session_id: str, error: EngineError) -> None:
        logger.warning(f"Session {session_id}: {error.message}")
        self._append_error_log(session_id, error)
        self._publish(
            session_id,
            ErrorEvent(
                session_id=session_id,
                data=ErrorData(
                    kind=error.kind.value,
                    code=error.code,
                    message=error.message,
                    recoverable=error.recoverable,
                    remediation=error.remediation,
                    details=error.details,
                ),
            ),
        )

    def fail_session(self, session_id: str, error: EngineError) -> None:
        self._record_error(session_id, error)
        self.machine.transition(session_id, S.FAILED, status_reason=error.message)
        self._publish(session_id, self.snapshot_event(session_id))

    def _publish_validation(
        self,
        session_id: str,
        status: SessionStatus,
        session: UploadSession,
        errors: list[ValidationError],
    ) -> None:
        counted = len(session.source_records or []) - len(set(session.skipped_records or []))
        self._publish(
            session_id,
            ValidationUpdateEvent(
                session_id=session_id,
                data=ValidationUpdateData(
                    status=status.value,
                    errors=[e.model_dump(mode="json") for e in errors[:100]],
                    **summarize(errors, counted),
                ),
            ),
        )

    def _publish(self, session_id: str, event) -> None:
        self.broadcaster.publish(session_id, event)


def build_import_service(
    settings: Settings,
    session_factory: sessionmaker,
    *,
    broadcaster: ProgressBroadcaster | None = None,
    writer: CatalogWriter | None = None,
    approval_gate: ApprovalGate | None = None,
    inference: InferenceProvider | None = None,
) -> ImportService:
    """Wire the engine from settings; collaborators can be swapped for tests."""
    cache = MappingCache(
        session_factory,
        alpha=settings.cache_success_alpha,
        min_success_rate=settings.cache_min_success_rate,
    )
    if inference is None and settings.inference_url:
        inference = HttpInferenceClient(
            settings.inference_url,
            settings.inference_api_key,
            settings.inference_timeout_seconds,
        )
    if approval_gate is None and settings.approval_webhook_url:
        approval_gate = WebhookApprovalGate(settings.approval_webhook_url, settings.approval_webhook_secret)
    broadcaster = broadcaster or ProgressBroadcaster()
    machine = SessionStateMachine(session_factory)
    importer = BatchImporter(
        session_factory,
        writer or SqlCatalogWriter(session_factory),
        broadcaster,
        machine,
        batch_size=settings.import_batch_size,
        max_workers=settings.import_max_workers,
        max_retries=settings.import_max_retries,
        retry_backoff=settings.import_retry_backoff_seconds,
        max_failure_rate=settings.import_max_failure_rate,
    )
    resolver = FieldResolver(
        cache,
        inference,
        fuzzy_floor=settings.resolver_fuzzy_floor,
        min_confidence=settings.resolver_min_confidence,
        acceptance_confidence=settings.inference_acceptance_confidence,
        manual_confidence=settings.cache_manual_confidence,
    )
    return ImportService(
        session_factory,
        resolver=resolver,
        validator=ValidationEngine(PRODUCT_SCHEMA),
        broadcaster=broadcaster,
        importer=importer,
        approval_gate=approval_gate,
        machine=machine,
        target_schema=PRODUCT_SCHEMA,
        approval_threshold=settings.approval_confidence_threshold,
        max_upload_bytes=settings.max_upload_bytes,
    )
