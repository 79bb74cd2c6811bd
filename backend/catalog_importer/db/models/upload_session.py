"""Upload session: one end-to-end attempt to import a single uploaded file."""

import uuid

from sqlalchemy import Boolean, Column, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from catalog_importer.db.base import Base, JSONType


class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    file_name = Column(String(500))
    file_size = Column(Integer, default=0)
    file_format = Column(String(16))
    status = Column(String(32), nullable=False, default="initiated", index=True)

    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    successful_records = Column(Integer, nullable=False, default=0)
    failed_records = Column(Integer, nullable=False, default=0)

    source_fields = Column(JSONType, default=list)
    source_records = Column(JSONType, default=list)
    field_mappings = Column(JSONType, default=list)
    suggested_mappings = Column(JSONType, default=list)
    mapping_candidates = Column(JSONType, default=dict)
    mapping_conflicts = Column(JSONType, default=list)
    validation_errors = Column(JSONType, default=list)
    skipped_records = Column(JSONType, default=list)
    error_log = Column(JSONType, default=list)
    import_config = Column(JSONType, default=dict)

    approval_request_id = Column(String(64))
    approval_decision = Column(JSONType)
    status_reason = Column(Text)

    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
