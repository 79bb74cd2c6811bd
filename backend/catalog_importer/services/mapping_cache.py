"""Persistent store of learned source-field -> target-field decisions."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, NamedTuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from catalog_importer.db.models.mapping_cache import MappingCacheEntry
from catalog_importer.schemas.fields import MappingStrategy

logger = logging.getLogger(__name__)

_SEPARATORS_RE = re.compile(r"[^a-z0-9]+")


def signature(field_name: str) -> str:
    """Normalize a source field name into its cache key ("SKU Code" -> "sku_code")."""
    return _SEPARATORS_RE.sub("_", field_name.strip().lower()).strip("_")


class CacheHit(NamedTuple):
    target_field: str
    confidence: int
    strategy: str
    usage_count: int
    success_rate: float


class MappingCache:
    """Shared multi-reader/multi-writer cache backed by ``field_mapping_cache``.

    Writes are SQL-side increments and moving averages, so concurrent sessions
    need no coordination. Read failures degrade to "no learned suggestions".
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        alpha: float = 0.2,
        min_success_rate: float = 0.3,
    ) -> None:
        self._session_factory = session_factory
        self.alpha = alpha
        self.min_success_rate = min_success_rate

    def lookup(self, source_signature: str) -> list[CacheHit]:
        query = (
            select(MappingCacheEntry)
            .where(
                MappingCacheEntry.source_signature == source_signature,
                MappingCacheEntry.success_rate >= self.min_success_rate,
            )
            .order_by(
                MappingCacheEntry.confidence.desc(),
                MappingCacheEntry.success_rate.desc(),
                MappingCacheEntry.usage_count.desc(),
                MappingCacheEntry.target_field.asc(),
            )
        )
        try:
            with self._session_factory() as db:
                rows = db.scalars(query).all()
        except SQLAlchemyError as e:
            logger.warning(f"Mapping cache lookup failed for '{source_signature}': {e}")
            return []
        return [
            CacheHit(
                target_field=row.target_field,
                confidence=max(0, min(100, row.confidence)),
                strategy=row.strategy,
                usage_count=row.usage_count,
                success_rate=row.success_rate,
            )
            for row in rows
        ]

    def record(
        self,
        source_field: str,
        target_field: str,
        strategy: str,
        confidence: int,
        accepted: bool,
    ) -> None:
        """Count one more use of a mapping and fold ``accepted`` into its success rate."""
        key = signature(source_field)
        if not key:
            return
        outcome = 1.0 if accepted else 0.0
        now = datetime.now(timezone.utc)
        changes: dict[str, Any] = {
            "usage_count": MappingCacheEntry.usage_count + 1,
            "success_rate": MappingCacheEntry.success_rate * (1 - self.alpha) + self.alpha * outcome,
            "last_used_at": now,
        }
        if accepted:
            changes["confidence"] = confidence
            # A cache hit keeps the strategy that first produced the mapping.
            if strategy != MappingStrategy.CACHE.value:
                changes["strategy"] = strategy
        statement = (
            update(MappingCacheEntry)
            .where(
                MappingCacheEntry.source_signature == key,
                MappingCacheEntry.target_field == target_field,
            )
            .values(**changes)
        )
        try:
            with self._session_factory() as db:
                if db.execute(statement).rowcount:
                    db.commit()
                    return
                db.add(
                    MappingCacheEntry(
                        source_signature=key,
                        target_field=target_field,
                        strategy=strategy,
                        confidence=confidence,
                        usage_count=1,
                        success_rate=outcome,
                        last_used_at=now,
                    )
                )
                try:
                    db.commit()
                except IntegrityError:
                    # Another writer inserted the same pair first.
                    db.rollback()
                    db.execute(statement)
                    db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Mapping cache write failed for '{key}' -> '{target_field}': {e}")

    def statistics(self) -> dict[str, dict[str, Any]]:
        query = select(
            MappingCacheEntry.strategy,
            func.count(MappingCacheEntry.id),
            func.avg(MappingCacheEntry.confidence),
            func.sum(MappingCacheEntry.usage_count),
        ).group_by(MappingCacheEntry.strategy)
        try:
            with self._session_factory() as db:
                rows = db.execute(query).all()
        except SQLAlchemyError as e:
            logger.warning(f"Mapping cache statistics unavailable: {e}")
            return {}
        return {
            strategy: {
                "count": count,
                "avg_confidence": round(float(avg or 0), 2),
                "total_usage": int(total or 0),
            }
            for strategy, count, avg, total in rows
        }
