"""Upload session lifecycle: the transition table and its single writer."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from catalog_importer.core.errors import InvalidTransitionError, SessionNotFoundError
from catalog_importer.db.models.upload_session import UploadSession
from catalog_importer.schemas.session import TERMINAL_STATUSES, SessionStatus

logger = logging.getLogger(__name__)

S = SessionStatus

_FORWARD: dict[SessionStatus, set[SessionStatus]] = {
    S.INITIATED: {S.ANALYZING},
    S.ANALYZING: {S.MAPPING},
    S.MAPPING: {S.AWAITING_APPROVAL, S.PREVIEWING},
    S.AWAITING_APPROVAL: {S.PREVIEWING, S.MAPPING},
    S.PREVIEWING: {S.IMPORTING, S.MAPPING},
    S.IMPORTING: {S.COMPLETED},
}

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    status: frozenset(_FORWARD.get(status, set()) | ({S.FAILED, S.CANCELLED} if not status.is_terminal else set()))
    for status in SessionStatus
}

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


def _session_lock(session_id: str) -> threading.Lock:
    with _locks_guard:
        lock = _locks.get(session_id)
        if lock is None:
            lock = _locks[session_id] = threading.Lock()
        return lock


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class SessionStateMachine:
    """Owns every write to ``upload_sessions.status``.

    A transition is checked against ``ALLOWED_TRANSITIONS`` and then applied as
    ``UPDATE ... WHERE status = :current``. The per-session lock serializes
    callers inside one process; the compare-and-set guards against other
    processes (API vs. Celery worker).
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def status(self, session_id: str) -> SessionStatus:
        with self._session_factory() as db:
            value = db.scalar(select(UploadSession.status).where(UploadSession.id == session_id))
        if value is None:
            raise SessionNotFoundError(session_id)
        return SessionStatus(value)

    def transition(
        self,
        session_id: str,
        target: SessionStatus,
        *,
        expected: SessionStatus | None = None,
        **changes: Any,
    ) -> SessionStatus:
        """Move the session to ``target``, writing ``changes`` in the same UPDATE.

        Returns the status the session left. Raises ``InvalidTransitionError``
        (row untouched) when the edge is not in the table or when the session
        is not in ``expected``.
        """
        with _session_lock(session_id):
            current = self.status(session_id)
            if (expected is not None and current != expected) or not can_transition(current, target):
                raise InvalidTransitionError(session_id, current.value, target.value)

            now = datetime.now(timezone.utc)
            values: dict[str, Any] = {"status": target.value, "updated_at": now, **changes}
            if target == S.IMPORTING:
                values.setdefault("started_at", now)
            if target in TERMINAL_STATUSES:
                values.setdefault("completed_at", now)

            statement = (
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.status == current.value)
                .values(**values)
            )
            with self._session_factory() as db:
                updated = db.execute(statement).rowcount
                db.commit()
            if not updated:
                # Another process moved the session between our read and write.
                actual = self.status(session_id)
                raise InvalidTransitionError(session_id, actual.value, target.value)

        logger.info(f"Session {session_id}: {current.value} -> {target.value}")
        return current
