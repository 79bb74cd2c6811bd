"""Learned mapping statistics."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from catalog_importer.api.dependencies.services import get_import_service
from catalog_importer.services.import_service import ImportService

router = APIRouter()


@router.get("/stats", summary="Mapping cache statistics per strategy")
def cache_stats(service: ImportService = Depends(get_import_service)) -> dict[str, Any]:
    """Entry count, average confidence and total usage grouped by strategy."""
    strategies = service.cache_statistics()
    return {
        "strategies": strategies,
        "total_entries": sum(s["count"] for s in strategies.values()),
    }
