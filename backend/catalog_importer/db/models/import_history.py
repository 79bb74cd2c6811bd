"""Append-only audit trail: one row per attempted record."""

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base, JSONType


class ImportHistory(Base):
    __tablename__ = "import_history"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(36), ForeignKey("upload_sessions.id"), nullable=False, index=True)
    batch_number = Column(Integer, nullable=False)
    record_index = Column(Integer, nullable=False)
    record_data = Column(JSONType, nullable=False)
    validation_errors = Column(JSONType)
    import_status = Column(String(16), nullable=False)
    entity_type = Column(String(32), nullable=False, default="product")
    entity_id = Column(Integer)
    error_message = Column(Text)
    processing_time_ms = Column(Integer)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
