"""Tests for the upload session transition table and its writer."""
import pytest

from catalog_importer.core.errors import InvalidTransitionError, SessionNotFoundError
from catalog_importer.db.models.upload_session import UploadSession
from catalog_importer.schemas.session import SessionStatus
from catalog_importer.services.session_machine import (
    ALLOWED_TRANSITIONS,
    SessionStateMachine,
    can_transition,
)

S = SessionStatus


@pytest.fixture
def machine(session_factory):
    return SessionStateMachine(session_factory)


@pytest.fixture
def session_id(session_factory):
    with session_factory() as db:
        session = UploadSession(user_id="tester", file_name="products.csv")
        db.add(session)
        db.commit()
        return session.id


def load(session_factory, session_id):
    with session_factory() as db:
        return db.get(UploadSession, session_id)


def test_happy_path_through_every_phase(machine, session_id, session_factory):
    for target in (S.ANALYZING, S.MAPPING, S.AWAITING_APPROVAL, S.PREVIEWING, S.IMPORTING, S.COMPLETED):
        machine.transition(session_id, target)

    session = load(session_factory, session_id)
    assert session.status == "completed"
    assert session.started_at is not None
    assert session.completed_at is not None


def test_transition_returns_previous_status_and_writes_changes(machine, session_id, session_factory):
    previous = machine.transition(session_id, S.ANALYZING, source_fields=[{"name": "sku"}])

    assert previous == S.INITIATED
    assert load(session_factory, session_id).source_fields == [{"name": "sku"}]


def test_skipping_a_phase_is_rejected(machine, session_id, session_factory):
    with pytest.raises(InvalidTransitionError) as excinfo:
        machine.transition(session_id, S.IMPORTING, total_records=99)

    assert excinfo.value.details == {"current": "initiated", "target": "importing"}
    session = load(session_factory, session_id)
    assert session.status == "initiated"
    assert session.total_records == 0


def test_expected_status_mismatch_is_rejected(machine, session_id):
    with pytest.raises(InvalidTransitionError):
        machine.transition(session_id, S.CANCELLED, expected=S.IMPORTING)
    assert machine.status(session_id) == S.INITIATED


@pytest.mark.parametrize("terminal", [S.COMPLETED, S.FAILED, S.CANCELLED])
def test_terminal_statuses_are_final(terminal):
    assert ALLOWED_TRANSITIONS[terminal] == frozenset()
    assert not can_transition(terminal, S.MAPPING)


@pytest.mark.parametrize("status", [s for s in SessionStatus if not s.is_terminal])
def test_any_open_session_can_fail_or_be_cancelled(status):
    assert can_transition(status, S.FAILED)
    assert can_transition(status, S.CANCELLED)


def test_only_importing_can_complete():
    assert [s for s in SessionStatus if can_transition(s, S.COMPLETED)] == [S.IMPORTING]


def test_cancelled_session_cannot_be_cancelled_again(machine, session_id):
    machine.transition(session_id, S.CANCELLED)

    with pytest.raises(InvalidTransitionError):
        machine.transition(session_id, S.CANCELLED)


def test_unknown_session(machine):
    with pytest.raises(SessionNotFoundError):
        machine.status("missing")
    with pytest.raises(SessionNotFoundError):
        machine.transition("missing", S.ANALYZING)
