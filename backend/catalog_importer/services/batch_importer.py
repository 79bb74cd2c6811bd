"""Batch execution of the import phase."""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from catalog_importer.core.errors import (
    ImportExecutionError,
    InvalidTransitionError,
    SessionNotFoundError,
    SessionStateError,
)
from catalog_importer.db.models.import_batch import ImportBatch
from catalog_importer.db.models.import_history import ImportHistory
from catalog_importer.db.models.upload_session import UploadSession
from catalog_importer.schemas.events import (
    CompletedData,
    CompletedEvent,
    ErrorData,
    ErrorEvent,
    ProgressData,
    ProgressEvent,
)
from catalog_importer.schemas.fields import FieldMapping
from catalog_importer.schemas.session import ImportOptions, SessionStatus
from catalog_importer.services.catalog_writer import CatalogRow, CatalogWriter, RowOutcome
from catalog_importer.services.progress_broadcaster import ProgressBroadcaster
from catalog_importer.services.record_mapper import apply_mappings
from catalog_importer.services.session_machine import SessionStateMachine
from catalog_importer.utils.batching import BatchRange, batch_ranges, take

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BatchResult:
    batch_id: int
    batch: BatchRange
    rows: list[CatalogRow]
    outcomes: list[RowOutcome]
    retries: int = 0
    error: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime = field(default_factory=_utcnow)
    elapsed_ms: int = 0

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failure_count(self) -> int:
        return len(self.outcomes) - self.success_count


@dataclass
class ImportSummary:
    session_id: str
    status: SessionStatus
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    batches: int = 0
    processing_time_ms: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failed_records / self.total_records if self.total_records else 0.0


class BatchImporter:
    """Runs the importing phase of one session.

    Batches execute on a bounded thread pool, but all bookkeeping (batch
    results, history, counters, progress events) is applied by the calling
    thread in batch-number order, so counters only ever grow and stay
    consistent. A batch row is written as `pending` when scheduled and flips
    to `running` when a worker picks it up.

    Cancellation is checked before each batch is scheduled, so up to
    ``max_workers`` batches that were already submitted still run to the end.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        writer: CatalogWriter,
        broadcaster: ProgressBroadcaster,
        machine: SessionStateMachine | None = None,
        *,
        batch_size: int = 100,
        max_workers: int = 4,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        max_failure_rate: float = 1.0,
        sleep=time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.writer = writer
        self.broadcaster = broadcaster
        self.machine = machine or SessionStateMachine(session_factory)
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.max_failure_rate = max_failure_rate
        self._sleep = sleep

    def run_import(self, session_id: str) -> ImportSummary:
        started = time.monotonic()
        with self._session_factory() as db:
            session = db.get(UploadSession, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status != SessionStatus.IMPORTING.value:
                if SessionStatus(session.status).is_terminal:
                    # Cancelled before the worker started: release anyone waiting on the channel.
                    self._publish_completed(
                        ImportSummary(
                            session_id,
                            SessionStatus(session.status),
                            total_records=session.total_records,
                            processed_records=session.processed_records,
                            successful_records=session.successful_records,
                            failed_records=session.failed_records,
                        )
                    )
                raise SessionStateError(
                    f"Session {session_id} is '{session.status}', expected 'importing'",
                    details={"status": session.status},
                )
            records = list(session.source_records or [])
            mappings = [FieldMapping.model_validate(m) for m in session.field_mappings or []]
            skipped = set(session.skipped_records or [])
            options = ImportOptions.model_validate(session.import_config or {})
            warnings_by_index: dict[int, list[dict[str, Any]]] = {}
            for err in session.validation_errors or []:
                warnings_by_index.setdefault(err["record_index"], []).append(err)

        rows = [
            CatalogRow(index, mapped)
            for index, mapped in enumerate(apply_mappings(records, mappings))
            if index not in skipped
        ]
        ranges = batch_ranges(len(rows), self.batch_size)
        summary = ImportSummary(session_id, SessionStatus.IMPORTING, total_records=len(rows), batches=len(ranges))
        logger.info(f"Session {session_id}: importing {len(rows)} record(s) in {len(ranges)} batch(es)")

        try:
            self._execute(session_id, rows, ranges, summary, warnings_by_index)
            summary.processing_time_ms = int((time.monotonic() - started) * 1000)
            summary.status = self._finish(session_id, summary, options.failure_tolerance(self.max_failure_rate))
        except Exception as exc:
            logger.error(f"Import of session {session_id} crashed: {exc}", exc_info=True)
            summary.processing_time_ms = int((time.monotonic() - started) * 1000)
            summary.status = self._fail(session_id, summary, exc)
            raise
        finally:
            self._publish_completed(summary)
        return summary

    # -- scheduling -------------------------------------------------------

    def _execute(
        self,
        session_id: str,
        rows: list[CatalogRow],
        ranges: list[BatchRange],
        summary: ImportSummary,
        warnings_by_index: dict[int, list[dict[str, Any]]],
    ) -> None:
        pending: dict[Future, int] = {}
        ready: dict[int, BatchResult] = {}
        next_to_schedule = 0
        next_to_apply = 0
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"import-{session_id[:8]}") as pool:
            while True:
                while (
                    next_to_schedule < len(ranges)
                    and len(pending) < self.max_workers
                    and self.machine.status(session_id) == SessionStatus.IMPORTING
                ):
                    batch = ranges[next_to_schedule]
                    batch_id = self._open_batch(session_id, batch)
                    future = pool.submit(self._run_batch, batch_id, batch, list(take(rows, batch)))
                    pending[future] = next_to_schedule
                    next_to_schedule += 1
                if not pending:
                    break
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    ready[pending.pop(future)] = future.result()
                while next_to_apply in ready:
                    self._apply(session_id, ready.pop(next_to_apply), summary, len(ranges), warnings_by_index)
                    next_to_apply += 1

        if next_to_schedule < len(ranges):
            logger.info(
                f"Session {session_id}: stopped scheduling after batch {next_to_schedule} of {len(ranges)}"
            )

    def _open_batch(self, session_id: str, batch: BatchRange) -> int:
        with self._session_factory() as db:
            row = ImportBatch(
                session_id=session_id,
                batch_number=batch.number,
                start_index=batch.start,
                end_index=batch.end,
                record_count=batch.size,
                status="pending",
            )
            db.add(row)
            db.commit()
            return row.id

    def _run_batch(self, batch_id: int, batch: BatchRange, rows: list[CatalogRow]) -> BatchResult:
        started_at = _utcnow()
        self._update_batch(batch_id, status="running", started_at=started_at)
        started = time.monotonic()
        retries = 0
        error = None
        while True:
            try:
                outcomes = self._complete_outcomes(rows, self.writer.write_batch(rows))
                break
            except Exception as exc:
                # A raised writer error means nothing in the batch was stored.
                if retries >= self.max_retries:
                    error = str(exc) or type(exc).__name__
                    logger.error(f"Batch {batch.number} failed after {retries} retries: {error}")
                    outcomes = [RowOutcome(row.record_index, "failed", error=error) for row in rows]
                    break
                retries += 1
                self._update_batch(batch_id, retry_count=retries)
                logger.warning(f"Batch {batch.number} attempt {retries} failed ({exc}); retrying")
                self._sleep(self.retry_backoff * retries)
        return BatchResult(
            batch_id=batch_id,
            batch=batch,
            rows=rows,
            outcomes=outcomes,
            retries=retries,
            error=error,
            started_at=started_at,
            completed_at=_utcnow(),
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _complete_outcomes(rows: list[CatalogRow], outcomes: list[RowOutcome]) -> list[RowOutcome]:
        by_index = {outcome.record_index: outcome for outcome in outcomes}
        return [
            by_index.get(row.record_index)
            or RowOutcome(row.record_index, "failed", error="Writer reported no outcome for this record")
            for row in rows
        ]

    # -- bookkeeping ------------------------------------------------------

    def _apply(
        self,
        session_id: str,
        result: BatchResult,
        summary: ImportSummary,
        total_batches: int,
        warnings_by_index: dict[int, list[dict[str, Any]]],
    ) -> None:
        succeeded = result.success_count
        failed = result.failure_count
        per_record_ms = result.elapsed_ms // max(1, len(result.rows))
        with self._session_factory() as db:
            db.execute(
                update(ImportBatch)
                .where(ImportBatch.id == result.batch_id)
                .values(
                    status="failed" if result.error else "succeeded",
                    success_count=succeeded,
                    failure_count=failed,
                    retry_count=result.retries,
                    error_message=result.error,
                    processing_time_ms=result.elapsed_ms,
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                )
            )
            for row, outcome in zip(result.rows, result.outcomes):
                db.add(
                    ImportHistory(
                        session_id=session_id,
                        batch_number=result.batch.number,
                        record_index=row.record_index,
                        record_data=row.data,
                        validation_errors=warnings_by_index.get(row.record_index) or None,
                        import_status=outcome.status,
                        entity_id=outcome.entity_id,
                        error_message=outcome.error,
                        processing_time_ms=per_record_ms,
                        retry_count=result.retries,
                    )
                )
            db.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id)
                .values(
                    processed_records=UploadSession.processed_records + len(result.rows),
                    successful_records=UploadSession.successful_records + succeeded,
                    failed_records=UploadSession.failed_records + failed,
                    updated_at=_utcnow(),
                )
            )
            db.commit()

        summary.processed_records += len(result.rows)
        summary.successful_records += succeeded
        summary.failed_records += failed
        logger.info(
            f"Session {session_id}: batch {result.batch.number}/{total_batches} "
            f"ok={succeeded} failed={failed} retries={result.retries}"
        )
        status = self.machine.status(session_id)
        self.broadcaster.publish(
            session_id,
            ProgressEvent(
                session_id=session_id,
                data=ProgressData(
                    session_id=session_id,
                    total_records=summary.total_records,
                    processed_records=summary.processed_records,
                    successful_records=summary.successful_records,
                    failed_records=summary.failed_records,
                    current_batch=result.batch.number,
                    total_batches=total_batches,
                    status=status.value,
                    in_flight=status.is_terminal,
                ),
            ),
        )

    def _update_batch(self, batch_id: int, **values: Any) -> None:
        try:
            with self._session_factory() as db:
                db.execute(update(ImportBatch).where(ImportBatch.id == batch_id).values(**values))
                db.commit()
        except SQLAlchemyError as e:
            # The final result is written by _apply either way.
            logger.warning(f"Could not update batch row {batch_id}: {e}")

    def _finish(self, session_id: str, summary: ImportSummary, tolerance: float) -> SessionStatus:
        current = self.machine.status(session_id)
        if current != SessionStatus.IMPORTING:
            # Cancelled (or failed) while running: keep what is recorded.
            return current
        if summary.failure_rate > tolerance:
            target = SessionStatus.FAILED
            reason = f"Failure rate {summary.failure_rate:.1%} exceeds tolerance {tolerance:.1%}"
        else:
            target = SessionStatus.COMPLETED
            reason = None
        try:
            self.machine.transition(session_id, target, expected=SessionStatus.IMPORTING, status_reason=reason)
        except InvalidTransitionError:
            return self.machine.status(session_id)
        logger.info(
            f"Session {session_id} {target.value}: {summary.successful_records} ok, "
            f"{summary.failed_records} failed of {summary.total_records}"
        )
        return target

    def _fail(self, session_id: str, summary: ImportSummary, exc: Exception) -> SessionStatus:
        error = exc if isinstance(exc, ImportExecutionError) else ImportExecutionError(
            f"Import stopped unexpectedly: {exc}", code="import_crashed"
        )
        try:
            with self._session_factory() as db:
                session = db.get(UploadSession, session_id)
                if session is not None:
                    session.error_log = [*(session.error_log or []), error.to_dict()]
                db.execute(
                    update(ImportBatch)
                    .where(ImportBatch.session_id == session_id, ImportBatch.status.in_(("pending", "running")))
                    .values(status="failed", error_message=error.message, completed_at=_utcnow())
                )
                db.commit()
            self.machine.transition(session_id, SessionStatus.FAILED, status_reason=error.message)
        except (InvalidTransitionError, SessionNotFoundError) as e:
            logger.warning(f"Could not mark session {session_id} failed: {e}")
        self.broadcaster.publish(
            session_id,
            ErrorEvent(
                session_id=session_id,
                data=ErrorData(
                    kind=error.kind.value,
                    code=error.code,
                    message=error.message,
                    recoverable=False,
                ),
            ),
        )
        try:
            return self.machine.status(session_id)
        except SessionNotFoundError:
            return SessionStatus.FAILED

    def _publish_completed(self, summary: ImportSummary) -> None:
        self.broadcaster.publish(
            summary.session_id,
            CompletedEvent(
                session_id=summary.session_id,
                data=CompletedData(
                    session_id=summary.session_id,
                    total_records=summary.total_records,
                    processed_records=summary.processed_records,
                    successful_records=summary.successful_records,
                    failed_records=summary.failed_records,
                    status=summary.status.value,
                    processing_time_ms=summary.processing_time_ms,
                ),
            ),
        )
