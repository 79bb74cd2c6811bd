"""Celery task running the importing phase of an upload session."""

from __future__ import annotations

import logging
from functools import lru_cache

from catalog_importer.core.config import get_settings
from catalog_importer.core.errors import SessionNotFoundError, SessionStateError
from catalog_importer.db.session import SessionLocal
from catalog_importer.services.import_service import ImportService, build_import_service
from catalog_importer.services.progress_broadcaster import ProgressBroadcaster
from catalog_importer.utils.redis_client import create_redis_client
from catalog_importer.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@lru_cache
def worker_service() -> ImportService:
    """One service per worker process; events reach the API through Redis."""
    settings = get_settings()
    broadcaster = ProgressBroadcaster(redis_client=create_redis_client(settings.redis_url, decode_responses=True))
    return build_import_service(settings, SessionLocal, broadcaster=broadcaster)


@celery_app.task(bind=True, name="catalog_importer.workers.tasks.run_import")
def run_import_task(self, session_id: str) -> dict:
    """Import every batch of the session and report the final counters."""
    logger.info(f"Worker {self.request.hostname} importing session {session_id}")
    try:
        summary = worker_service().run_import(session_id)
    except (SessionNotFoundError, SessionStateError) as e:
        # Deleted, cancelled before start, or a redelivered task for a finished session.
        logger.warning(f"Skipping import of session {session_id}: {e.message}")
        return {"session_id": session_id, "status": "skipped", "reason": e.code}
    return {
        "session_id": session_id,
        "status": summary.status.value,
        "total_records": summary.total_records,
        "processed_records": summary.processed_records,
        "successful_records": summary.successful_records,
        "failed_records": summary.failed_records,
        "processing_time_ms": summary.processing_time_ms,
    }
