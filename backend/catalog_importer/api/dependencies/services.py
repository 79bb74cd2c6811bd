"""Request-scoped dependencies: settings and the import service."""

from fastapi import Request

from catalog_importer.core.config import Settings
from catalog_importer.services.import_service import ImportService


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was created with."""
    return request.app.state.settings


def get_import_service(request: Request) -> ImportService:
    """FastAPI dependency returning the process-wide import service."""
    return request.app.state.import_service
