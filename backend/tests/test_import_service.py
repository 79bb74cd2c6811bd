"""
End-to-end tests for the session facade: intake, mapping review, approval,
skip/auto-fix recovery, import and cancellation.
"""
import pytest

from catalog_importer.core.errors import (
    DataValidationError,
    FieldMappingError,
    FileUploadError,
    InvalidTransitionError,
    SessionNotFoundError,
    SessionStateError,
)
from catalog_importer.db.models.import_batch import ImportBatch
from catalog_importer.schemas.approval import ApprovalDecision
from catalog_importer.schemas.fields import MappingOverride
from catalog_importer.schemas.session import FileDescriptor, ImportOptions
from catalog_importer.services.import_service import build_import_service
from catalog_importer.services.progress_broadcaster import QueueSubscriber
from conftest import RecordingWriter, product_records

FILE = FileDescriptor(name="products.json", size=512, format="json")


def targets(session):
    return {m["source_field"]: m["target_field"] for m in session.field_mappings}


def test_clean_upload_reaches_preview(service, broadcaster):
    session = service.create_session("u1", FILE, product_records(5))

    assert session.status == "previewing"
    assert targets(session) == {"name": "name", "sku": "sku", "price": "price", "stock": "stock"}
    assert session.validation_errors == []
    assert [f["name"] for f in session.source_fields] == ["name", "sku", "price", "stock"]
    suggestions = broadcaster.events_of("mapping_suggestions")[0]
    assert suggestions.data.confidence == 95
    assert broadcaster.events_of("validation_update")[-1].data.status == "previewing"


def test_full_import(service, writer):
    session = service.create_session("u1", FILE, product_records(5))

    started = service.start_import(session.id, ImportOptions(strict=True))
    assert started.status == "importing"
    assert started.import_config == {"strict": True, "max_failure_rate": None}

    summary = service.run_import(session.id)

    assert summary.status.value == "completed"
    assert writer.attempted_indices == [0, 1, 2, 3, 4]
    status = service.get_status(session.id)
    assert (status["status"], status["processed_records"], status["successful_records"]) == ("completed", 5, 5)
    assert len(service.list_history(session.id, import_status="created")) == 5
    assert [b.batch_number for b in service.list_batches(session.id)] == [1]


def test_starting_an_import_teaches_the_cache(service):
    session = service.create_session("u1", FILE, product_records(2))
    service.start_import(session.id)

    stats = service.cache_statistics()
    assert stats["exact"]["count"] == 4


def test_missing_required_value_blocks_import_until_skipped(service):
    records = product_records(5)
    records[2]["name"] = ""
    session = service.create_session("u1", FILE, records)

    assert session.status == "mapping"
    assert [(e["record_index"], e["rule"]) for e in session.validation_errors] == [(2, "required")]
    with pytest.raises(SessionStateError):
        service.start_import(session.id)

    preview = service.preview(session.id)
    assert (preview["invalid_records"], preview["valid_records"]) == (1, 4)
    assert preview["rows"][2]["errors"][0]["field"] == "name"

    session = service.skip_records(session.id, [2])
    assert session.status == "previewing"
    assert session.skipped_records == [2]

    started = service.start_import(session.id)
    assert started.total_records == 4
    assert service.preview(session.id)["skipped_records"] == [2]


def test_skip_rejects_unknown_indices(service):
    records = product_records(3)
    records[0]["name"] = None
    session = service.create_session("u1", FILE, records)

    with pytest.raises(DataValidationError) as excinfo:
        service.skip_records(session.id, [7])
    assert excinfo.value.code == "invalid_record_index"


def test_auto_fix_repairs_records(service):
    records = product_records(3)
    records[1]["price"] = "$1,299.00"
    session = service.create_session("u1", FILE, records)
    assert session.status == "mapping"

    session, applied = service.apply_auto_fixes(session.id)

    assert applied == 1
    assert session.status == "previewing"
    assert session.source_records[1]["price"] == 1299.0


def test_auto_fix_respects_minimum_confidence(service):
    records = product_records(3)
    records[1]["price"] = "-4"
    session = service.create_session("u1", FILE, records)

    session, applied = service.apply_auto_fixes(session.id, min_confidence=60)

    assert applied == 0
    assert session.status == "mapping"


def conflicting_records():
    return [{"name": "Lamp", "sku": "L-1", "Sku": "L-9"}, {"name": "Desk", "sku": "D-1", "Sku": "D-9"}]


def test_conflicting_mappings_wait_for_approval(service, approval_gate):
    session = service.create_session("u1", FILE, conflicting_records())

    assert session.status == "awaiting_approval"
    assert session.approval_request_id == "approval-1"
    [request] = approval_gate.requests
    assert request.risk_level == "medium"
    assert request.conflicts[0].loser == "Sku"
    with pytest.raises(SessionStateError):
        service.start_import(session.id)


def test_approval_moves_on_to_preview(service):
    session = service.create_session("u1", FILE, conflicting_records())

    session = service.record_approval_decision(session.id, ApprovalDecision(approved=True, decided_by="ops"))

    assert session.status == "previewing"
    assert session.approval_decision["decided_by"] == "ops"


def test_approval_with_overrides(service):
    session = service.create_session("u1", FILE, conflicting_records())
    decision = ApprovalDecision(
        approved=True,
        overrides=[MappingOverride(source_field="Sku", target_field="parent_sku")],
    )

    session = service.record_approval_decision(session.id, decision)

    assert session.status == "previewing"
    assert targets(session)["Sku"] == "parent_sku"


def test_rejection_returns_to_mapping(service):
    session = service.create_session("u1", FILE, conflicting_records())

    session = service.record_approval_decision(
        session.id, ApprovalDecision(approved=False, reasoning="Sku is the parent code")
    )

    assert session.status == "mapping"
    assert session.status_reason == "Sku is the parent code"
    with pytest.raises(SessionStateError):
        service.record_approval_decision(session.id, ApprovalDecision(approved=True))


def test_unreachable_approval_gate_still_waits(settings, session_factory, writer, unreachable_gate):
    service = build_import_service(settings, session_factory, writer=writer, approval_gate=unreachable_gate)

    session = service.create_session("u1", FILE, conflicting_records())

    assert session.status == "awaiting_approval"
    assert session.approval_request_id is None
    assert session.error_log[-1]["kind"] == "NETWORK"


def test_manual_mapping_takes_over_a_target(service):
    records = [{"name": "Lamp", "Label": "Desk lamp, brass", "sku": "L-1"}]
    session = service.create_session("u1", FILE, records)

    session = service.set_mappings(session.id, [MappingOverride(source_field="Label", target_field="name")])

    mapping = {m["source_field"]: m for m in session.field_mappings}
    assert "name" not in mapping
    assert mapping["Label"]["target_field"] == "name"
    assert mapping["Label"]["is_manual"] is True
    assert mapping["Label"]["confidence"] == 100
    assert session.status == "previewing"


def test_unmapping_a_required_field_keeps_session_in_mapping(service, broadcaster):
    session = service.create_session("u1", FILE, product_records(3))

    session = service.set_mappings(session.id, [MappingOverride(source_field="name", target_field=None)])

    assert session.status == "mapping"
    assert session.error_log[-1]["code"] == "required_field_unmapped"
    assert broadcaster.events_of("error")[-1].data.details == {"fields": ["name"]}


@pytest.mark.parametrize(
    "overrides, code",
    [
        ([MappingOverride(source_field="nope", target_field="name")], "unknown_source_field"),
        ([MappingOverride(source_field="sku", target_field="weight")], "unknown_target_field"),
        (
            [
                MappingOverride(source_field="sku", target_field="parent_sku"),
                MappingOverride(source_field="name", target_field="parent_sku"),
            ],
            "duplicate_target",
        ),
    ],
)
def test_invalid_overrides(service, overrides, code):
    session = service.create_session("u1", FILE, product_records(2))

    with pytest.raises(FieldMappingError) as excinfo:
        service.set_mappings(session.id, overrides)
    assert excinfo.value.code == code
    assert service.get_session(session.id).status == "previewing"


def test_unrecognized_columns_wait_in_analysis(service):
    session = service.create_session("u1", FILE, [{"zzqx": "Lamp"}])

    assert session.status == "analyzing"
    assert session.error_log[-1]["code"] == "no_mapping_candidates"

    session = service.set_mappings(session.id, [MappingOverride(source_field="zzqx", target_field="name")])
    assert session.status == "previewing"


def test_empty_upload_fails_the_session(service):
    with pytest.raises(FileUploadError) as excinfo:
        service.create_session("u1", FILE, [])

    session = service.get_session(excinfo.value.details["session_id"])
    assert session.status == "failed"
    assert session.error_log[-1]["code"] == "empty_file"


def test_ingest_csv_upload(service):
    content = b"Product Name,SKU,Price\nLamp,L-1,10.00\nDesk,D-1,99\n"

    session = service.ingest_upload("u1", "catalog.csv", content)

    assert session.file_format == "csv"
    assert session.total_records == 2
    assert targets(session) == {"Product Name": "name", "SKU": "sku", "Price": "price"}


def test_unreadable_upload_is_recorded(service):
    with pytest.raises(FileUploadError) as excinfo:
        service.ingest_upload("u1", "catalog.json", b"{broken")

    session = service.get_session(excinfo.value.details["session_id"])
    assert session.status == "failed"
    assert session.file_name == "catalog.json"


def test_cancel_and_delete(service, broadcaster):
    session = service.create_session("u1", FILE, product_records(2))
    subscriber = QueueSubscriber()
    service.subscribe(session.id, subscriber)

    cancelled = service.cancel_session(session.id)

    assert cancelled.status == "cancelled"
    assert [e.data.status for e in subscriber.drain()] == ["previewing", "cancelled"]
    with pytest.raises(InvalidTransitionError):
        service.cancel_session(session.id)

    service.delete_session(session.id)
    with pytest.raises(SessionNotFoundError):
        service.get_session(session.id)
    assert service.list_sessions("u1") == []


def test_delete_cancels_open_sessions(service):
    session = service.create_session("u1", FILE, product_records(2))
    other = service.create_session("u2", FILE, product_records(2))

    service.delete_session(session.id)

    assert service.machine.status(session.id).value == "cancelled"
    assert [s.id for s in service.list_sessions()] == [other.id]


def test_unknown_session(service):
    with pytest.raises(SessionNotFoundError):
        service.get_status("does-not-exist")


def test_cancel_during_import_keeps_the_channel_open_until_completed(
    service, broadcaster, make_importing_session, importer_factory
):
    session_id = make_importing_session(product_records(25))
    subscriber = QueueSubscriber()
    service.subscribe(session_id, subscriber)

    def cancel_during_second_batch(indices):
        if indices[0] == 10:
            service.cancel_session(session_id)

    writer = RecordingWriter(on_write=cancel_during_second_batch)
    importer_factory(writer=writer, max_workers=1).run_import(session_id)

    events = subscriber.drain()
    seen = [(e.type, e.data.processed_records, e.data.status) for e in events]
    assert seen == [
        ("progress", 0, "importing"),
        ("progress", 10, "importing"),
        ("progress", 10, "cancelled"),
        ("progress", 20, "cancelled"),
        ("completed", 20, "cancelled"),
    ]
    assert service.get_status(session_id)["processed_records"] == 20
    assert broadcaster.registry.subscribers(session_id) == []


def test_snapshot_of_a_cancel_still_winding_down(service, make_importing_session, session_factory):
    session_id = make_importing_session(product_records(5))
    with session_factory() as db:
        db.add(
            ImportBatch(
                session_id=session_id,
                batch_number=1,
                start_index=0,
                end_index=5,
                record_count=5,
                status="running",
            )
        )
        db.commit()
    service.cancel_session(session_id)

    snapshot = service.snapshot_event(session_id)

    assert snapshot.data.status == "cancelled"
    assert snapshot.data.in_flight is True
    assert snapshot.data.current_batch == 0
