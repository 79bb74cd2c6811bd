"""Celery application for background import execution."""

import ssl

from celery import Celery

from catalog_importer.core.config import get_settings
from catalog_importer.utils.redis_client import normalize_redis_url

settings = get_settings()


def _tls_url(url: str) -> str:
    # The Celery Redis backend reads ssl_cert_reqs from the URL during init.
    if url.startswith("rediss://") and "ssl_cert_reqs" not in url:
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}ssl_cert_reqs=none"
    return url


broker_url = _tls_url(normalize_redis_url(settings.celery_broker_url or settings.redis_url))
backend_url = _tls_url(normalize_redis_url(settings.celery_result_url or settings.redis_url))
is_ssl = broker_url.startswith("rediss://") or backend_url.startswith("rediss://")

celery_app = Celery(
    "catalog_importer",
    broker=broker_url,
    backend=backend_url,
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,  # One long import per worker slot
    "task_time_limit": 3600,  # 1 hour hard limit
    "task_soft_time_limit": 3300,  # 55 min soft limit
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "task_default_queue": "imports",
    "task_routes": {
        "catalog_importer.workers.tasks.run_import": {"queue": "imports"},
    },
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)

# Registers the tasks with celery_app.
from catalog_importer.workers.tasks import run_import  # noqa: E402,F401
