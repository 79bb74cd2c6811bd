"""
Tests for the importing phase: batching, retries, failure tolerance,
cancellation and the audit rows written per batch and per record.
"""
import threading

import pytest
from sqlalchemy import select

from catalog_importer.core.errors import SessionStateError
from catalog_importer.db.models.import_batch import ImportBatch
from catalog_importer.db.models.import_history import ImportHistory
from catalog_importer.db.models.upload_session import UploadSession
from catalog_importer.schemas.session import SessionStatus
from catalog_importer.services.session_machine import SessionStateMachine
from catalog_importer.utils.batching import batch_ranges
from conftest import RecordingBroadcaster, RecordingWriter, product_records


def load(session_factory, session_id):
    with session_factory() as db:
        return db.get(UploadSession, session_id)


def batches_of(session_factory, session_id):
    with session_factory() as db:
        query = select(ImportBatch).where(ImportBatch.session_id == session_id).order_by(ImportBatch.batch_number)
        return list(db.scalars(query))


def history_of(session_factory, session_id):
    with session_factory() as db:
        query = select(ImportHistory).where(ImportHistory.session_id == session_id).order_by(ImportHistory.record_index)
        return list(db.scalars(query))


def test_batch_ranges():
    assert [(r.number, r.start, r.end) for r in batch_ranges(25, 10)] == [(1, 0, 10), (2, 10, 20), (3, 20, 25)]
    assert batch_ranges(0, 10) == []
    with pytest.raises(ValueError):
        batch_ranges(5, 0)


def test_import_all_batches(importer_factory, make_importing_session, session_factory, broadcaster):
    session_id = make_importing_session(product_records(25))

    summary = importer_factory().run_import(session_id)

    assert summary.status == SessionStatus.COMPLETED
    assert (summary.processed_records, summary.successful_records, summary.failed_records) == (25, 25, 0)
    session = load(session_factory, session_id)
    assert session.status == "completed"
    assert (session.processed_records, session.successful_records, session.failed_records) == (25, 25, 0)
    assert [b.record_count for b in batches_of(session_factory, session_id)] == [10, 10, 5]
    assert len(history_of(session_factory, session_id)) == 25

    progress = broadcaster.events_of("progress")
    assert [e.data.current_batch for e in progress] == [1, 2, 3]
    assert [e.data.processed_records for e in progress] == [10, 20, 25]
    [completed] = broadcaster.events_of("completed")
    assert completed.data.status == "completed"


def test_failed_batch_is_retried_then_recorded(importer_factory, make_importing_session, session_factory):
    writer = RecordingWriter(fail_from=[10])
    sleeps = []
    session_id = make_importing_session(product_records(25))

    summary = importer_factory(writer=writer, max_retries=2, retry_backoff=0.5, sleep=sleeps.append).run_import(
        session_id
    )

    assert summary.status == SessionStatus.COMPLETED
    assert summary.processed_records == 25
    assert summary.failed_records == 10
    assert sleeps == [0.5, 1.0]
    assert sum(1 for call in writer.calls if call[0] == 10) == 3

    batches = batches_of(session_factory, session_id)
    assert [b.status for b in batches] == ["succeeded", "failed", "succeeded"]
    assert batches[1].retry_count == 2
    assert batches[1].error_message == "database connection lost"
    failed = [h for h in history_of(session_factory, session_id) if h.import_status == "failed"]
    assert [h.record_index for h in failed] == list(range(10, 20))
    assert load(session_factory, session_id).failed_records == 10


def test_strict_import_fails_on_any_failed_record(importer_factory, make_importing_session, session_factory):
    session_id = make_importing_session(product_records(25), import_config={"strict": True})

    summary = importer_factory(writer=RecordingWriter(fail_from=[10])).run_import(session_id)

    assert summary.status == SessionStatus.FAILED
    session = load(session_factory, session_id)
    assert session.status == "failed"
    assert session.processed_records == 25
    assert "exceeds tolerance" in session.status_reason


def test_failure_rate_within_tolerance_completes(importer_factory, make_importing_session):
    session_id = make_importing_session(product_records(25), import_config={"max_failure_rate": 0.5})

    summary = importer_factory(writer=RecordingWriter(fail_from=[10])).run_import(session_id)

    assert summary.status == SessionStatus.COMPLETED
    assert summary.failure_rate == pytest.approx(0.4)


def test_cancel_mid_import_stops_scheduling(importer_factory, make_importing_session, session_factory, broadcaster):
    machine = SessionStateMachine(session_factory)
    session_id = make_importing_session(product_records(25))

    def cancel_during_second_batch(indices):
        if indices[0] == 10:
            machine.transition(session_id, SessionStatus.CANCELLED, status_reason="Cancelled by user")

    writer = RecordingWriter(on_write=cancel_during_second_batch)
    summary = importer_factory(writer=writer, max_workers=1, machine=machine).run_import(session_id)

    assert summary.status == SessionStatus.CANCELLED
    # Batch 2 was in flight and finished; batch 3 was never handed to the writer.
    assert [call[0] for call in writer.calls] == [0, 10]
    session = load(session_factory, session_id)
    assert session.status == "cancelled"
    assert session.processed_records == 20
    assert [(b.batch_number, b.status) for b in batches_of(session_factory, session_id)] == [
        (1, "succeeded"),
        (2, "succeeded"),
    ]
    [completed] = broadcaster.events_of("completed")
    assert completed.data.status == "cancelled"


def test_batch_rows_show_work_in_flight(importer_factory, make_importing_session, session_factory):
    session_id = make_importing_session(product_records(25))
    seen = []

    def snapshot_batches(indices):
        seen.append([(b.batch_number, b.status) for b in batches_of(session_factory, session_id)])

    importer_factory(writer=RecordingWriter(on_write=snapshot_batches), max_workers=1).run_import(session_id)

    assert seen == [
        [(1, "running")],
        [(1, "succeeded"), (2, "running")],
        [(1, "succeeded"), (2, "succeeded"), (3, "running")],
    ]
    batches = batches_of(session_factory, session_id)
    assert all(b.started_at is not None and b.completed_at is not None for b in batches)


def test_retries_are_counted_on_the_running_batch(importer_factory, make_importing_session, session_factory):
    session_id = make_importing_session(product_records(5))
    attempts = []

    def fail_twice(indices):
        batch = batches_of(session_factory, session_id)[0]
        attempts.append((batch.status, batch.retry_count))
        if len(attempts) < 3:
            raise RuntimeError("deadlock detected")

    importer_factory(writer=RecordingWriter(on_write=fail_twice), max_retries=2).run_import(session_id)

    assert attempts == [("running", 0), ("running", 1), ("running", 2)]
    [batch] = batches_of(session_factory, session_id)
    assert (batch.status, batch.retry_count, batch.success_count) == ("succeeded", 2, 5)


def test_cancel_lets_every_submitted_batch_finish(importer_factory, make_importing_session, session_factory):
    machine = SessionStateMachine(session_factory)
    session_id = make_importing_session(product_records(25))
    second_started = threading.Event()

    def cancel_once_both_run(indices):
        if indices[0] == 10:
            second_started.set()
        elif indices[0] == 0:
            assert second_started.wait(timeout=5)
            machine.transition(session_id, SessionStatus.CANCELLED)

    writer = RecordingWriter(on_write=cancel_once_both_run)
    summary = importer_factory(writer=writer, max_workers=2, machine=machine).run_import(session_id)

    assert summary.status == SessionStatus.CANCELLED
    assert sorted(call[0] for call in writer.calls) == [0, 10]
    assert summary.processed_records == 20


def test_skipped_records_are_not_imported(importer_factory, make_importing_session, writer, session_factory):
    session_id = make_importing_session(product_records(12), skipped=[0, 5])

    summary = importer_factory(batch_size=5).run_import(session_id)

    assert summary.total_records == 10
    assert summary.batches == 2
    assert 0 not in writer.attempted_indices and 5 not in writer.attempted_indices
    assert [b.record_count for b in batches_of(session_factory, session_id)] == [5, 5]


def test_warnings_are_kept_in_history(importer_factory, make_importing_session, session_factory):
    warning = {
        "record_index": 1,
        "field": "name",
        "value": " Widget 1 ",
        "rule": "format.whitespace",
        "severity": "warning",
        "message": "name has leading or trailing whitespace",
        "auto_fix": None,
    }
    session_id = make_importing_session(product_records(3), validation_errors=[warning])

    importer_factory().run_import(session_id)

    history = history_of(session_factory, session_id)
    assert history[1].validation_errors == [warning]
    assert history[0].validation_errors is None
    assert history[1].record_data["sku"] == "W-001"


def test_requires_importing_status(importer_factory, make_importing_session, session_factory):
    session_id = make_importing_session(product_records(3))
    SessionStateMachine(session_factory).transition(session_id, SessionStatus.CANCELLED)

    with pytest.raises(SessionStateError):
        importer_factory().run_import(session_id)


def test_crash_marks_session_failed(importer_factory, make_importing_session, session_factory):
    class FlakyBroadcaster(RecordingBroadcaster):
        def publish(self, session_id, event):
            if event.type == "progress":
                raise RuntimeError("event bus exploded")
            return super().publish(session_id, event)

    broadcaster = FlakyBroadcaster()
    session_id = make_importing_session(product_records(3))

    with pytest.raises(RuntimeError):
        importer_factory(broadcaster=broadcaster).run_import(session_id)

    session = load(session_factory, session_id)
    assert session.status == "failed"
    assert session.error_log[-1]["code"] == "import_crashed"
    assert broadcaster.events_of("error")[0].data.kind == "IMPORT_EXECUTION"
    assert broadcaster.events_of("completed")[0].data.status == "failed"


def test_cancelled_before_start_releases_subscribers(
    importer_factory, make_importing_session, session_factory, broadcaster
):
    session_id = make_importing_session(product_records(3))
    SessionStateMachine(session_factory).transition(session_id, SessionStatus.CANCELLED)

    with pytest.raises(SessionStateError):
        importer_factory().run_import(session_id)

    [completed] = broadcaster.events_of("completed")
    assert (completed.data.status, completed.data.processed_records) == ("cancelled", 0)
    assert batches_of(session_factory, session_id) == []
