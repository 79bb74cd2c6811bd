"""
Pytest configuration and shared fixtures for the catalog importer tests.

Every test gets its own file-backed SQLite database (batch workers run on
threads, so an in-memory database would not be shared) and an import
service wired with in-process fakes for the catalog writer and the
approval gate.
"""

import os

# Module-level engines are created at import time; keep them off PostgreSQL.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENT_RELAY_ENABLED", "false")

import threading
from collections.abc import Sequence
from typing import Any

import pytest

from catalog_importer.core.config import Settings
from catalog_importer.core.errors import ImportExecutionError, NetworkError
from catalog_importer.db.models.upload_session import UploadSession
from catalog_importer.db.session import build_engine, build_session_factory, init_db
from catalog_importer.schemas.approval import ApprovalRequest
from catalog_importer.schemas.fields import FieldMapping, MappingStrategy
from catalog_importer.services.batch_importer import BatchImporter
from catalog_importer.services.catalog_writer import CatalogRow, RowOutcome
from catalog_importer.services.import_service import build_import_service
from catalog_importer.services.mapping_cache import MappingCache
from catalog_importer.services.progress_broadcaster import ProgressBroadcaster


class RecordingWriter:
    """Catalog writer that stores nothing but remembers every batch it saw.

    ``fail_from`` lists record indices whose batch raises an infrastructure
    error on every attempt; ``on_write`` runs before each batch is handled.
    """

    def __init__(self, fail_from: Sequence[int] = (), on_write=None) -> None:
        self.fail_from = set(fail_from)
        self.on_write = on_write
        self.calls: list[list[int]] = []
        self._lock = threading.Lock()
        self._next_id = 1

    def write_batch(self, rows: Sequence[CatalogRow]) -> list[RowOutcome]:
        indices = [row.record_index for row in rows]
        with self._lock:
            self.calls.append(indices)
        if self.on_write is not None:
            self.on_write(indices)
        if self.fail_from & set(indices):
            raise ImportExecutionError("database connection lost")
        outcomes = []
        with self._lock:
            for row in rows:
                outcomes.append(RowOutcome(row.record_index, "created", entity_id=self._next_id))
                self._next_id += 1
        return outcomes

    @property
    def attempted_indices(self) -> list[int]:
        with self._lock:
            return sorted({index for call in self.calls for index in call})


class FakeApprovalGate:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.requests: list[ApprovalRequest] = []

    def submit(self, request: ApprovalRequest) -> str:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return f"approval-{len(self.requests)}"


class RecordingBroadcaster(ProgressBroadcaster):
    """Broadcaster that also keeps every published event for assertions."""

    def __init__(self) -> None:
        super().__init__()
        self.published = []

    def publish(self, session_id, event):
        self.published.append(event)
        return super().publish(session_id, event)

    def events_of(self, event_type: str) -> list:
        return [event for event in self.published if event.type == event_type]


def product_records(count: int = 5) -> list[dict[str, Any]]:
    return [
        {
            "name": f"Widget {i}",
            "sku": f"W-{i:03d}",
            "price": f"{10 + i}.50",
            "stock": str(i * 3),
        }
        for i in range(count)
    ]


def exact_mappings(*fields: str) -> list[FieldMapping]:
    return [
        FieldMapping(
            source_field=field,
            target_field=field,
            confidence=95,
            strategy=MappingStrategy.EXACT,
        )
        for field in fields
    ]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'catalog_importer_test.db'}",
        redis_url="redis://localhost:6399/15",
        event_relay_enabled=False,
        run_imports_inline=True,
        import_batch_size=10,
        import_max_workers=2,
        import_retry_backoff_seconds=0,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def writer() -> RecordingWriter:
    return RecordingWriter()


@pytest.fixture
def approval_gate() -> FakeApprovalGate:
    return FakeApprovalGate()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def mapping_cache(session_factory) -> MappingCache:
    return MappingCache(session_factory)


@pytest.fixture
def service(settings, session_factory, broadcaster, writer, approval_gate):
    return build_import_service(
        settings,
        session_factory,
        broadcaster=broadcaster,
        writer=writer,
        approval_gate=approval_gate,
    )


@pytest.fixture
def make_importing_session(session_factory):
    """Insert a session that is already in ``importing`` with exact mappings."""

    def _factory(
        records: list[dict[str, Any]],
        *,
        skipped: Sequence[int] = (),
        import_config: dict[str, Any] | None = None,
        validation_errors: list[dict[str, Any]] | None = None,
    ) -> str:
        fields = list(records[0]) if records else []
        with session_factory() as db:
            session = UploadSession(
                user_id="tester",
                file_name="products.json",
                file_format="json",
                status="importing",
                source_records=records,
                source_fields=[{"name": field} for field in fields],
                field_mappings=[m.model_dump(mode="json") for m in exact_mappings(*fields)],
                skipped_records=list(skipped),
                validation_errors=validation_errors or [],
                import_config=import_config or {},
                error_log=[],
                total_records=len(records) - len(set(skipped)),
            )
            db.add(session)
            db.commit()
            return session.id

    return _factory


@pytest.fixture
def importer_factory(session_factory, writer, broadcaster):
    def _factory(**kwargs: Any) -> BatchImporter:
        kwargs.setdefault("batch_size", 10)
        kwargs.setdefault("max_workers", 4)
        kwargs.setdefault("max_retries", 2)
        kwargs.setdefault("sleep", lambda seconds: None)
        return BatchImporter(
            session_factory,
            kwargs.pop("writer", writer),
            kwargs.pop("broadcaster", broadcaster),
            **kwargs,
        )

    return _factory


@pytest.fixture
def unreachable_gate() -> FakeApprovalGate:
    return FakeApprovalGate(error=NetworkError("Approval request failed: connection refused"))
