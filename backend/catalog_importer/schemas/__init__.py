"""Pydantic models shared by the engine services and the API."""
from catalog_importer.schemas.approval import ApprovalDecision, ApprovalRequest
from catalog_importer.schemas.fields import (
    STRATEGY_PRIORITY,
    FieldMapping,
    MappingConflict,
    MappingOverride,
    MappingStrategy,
    SourceFieldDescriptor,
    TargetField,
)
from catalog_importer.schemas.session import FileDescriptor, ImportOptions, SessionStatus
from catalog_importer.schemas.validation import AutoFix, ValidationError

__all__ = [
    "ApprovalDecision",
    "ApprovalRequest",
    "AutoFix",
    "FieldMapping",
    "FileDescriptor",
    "ImportOptions",
    "MappingConflict",
    "MappingOverride",
    "MappingStrategy",
    "STRATEGY_PRIORITY",
    "SessionStatus",
    "SourceFieldDescriptor",
    "TargetField",
    "ValidationError",
]
