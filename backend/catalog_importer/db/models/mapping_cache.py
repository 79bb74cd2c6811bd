"""Learned source-field -> target-field decisions shared across sessions."""

from sqlalchemy import Column, Float, Integer, String, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base


class MappingCacheEntry(Base):
    __tablename__ = "field_mapping_cache"

    id = Column(Integer, primary_key=True)
    source_signature = Column(String(255), nullable=False, index=True)
    target_field = Column(String(64), nullable=False)
    strategy = Column(String(32), nullable=False)
    confidence = Column(Integer, nullable=False, default=0)
    usage_count = Column(Integer, nullable=False, default=1)
    success_rate = Column(Float, nullable=False, default=1.0)
    last_used_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("source_signature", "target_field", name="uq_mapping_cache_signature_target"),
    )
