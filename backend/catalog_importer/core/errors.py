"""Error taxonomy shared by the import engine and the API layer."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    FILE_UPLOAD = "FILE_UPLOAD"
    FIELD_MAPPING = "FIELD_MAPPING"
    DATA_VALIDATION = "DATA_VALIDATION"
    IMPORT_EXECUTION = "IMPORT_EXECUTION"
    NETWORK = "NETWORK"
    SYSTEM = "SYSTEM"


class EngineError(Exception):
    """Base error carrying a machine-readable kind/code plus a human message."""

    kind: ErrorKind = ErrorKind.SYSTEM
    default_code = "engine_error"
    recoverable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        remediation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.remediation = remediation
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.remediation:
            payload["remediation"] = self.remediation
        if self.details:
            payload["details"] = self.details
        return payload


class FileUploadError(EngineError):
    """Malformed, empty, unsupported or oversized input. Fatal to the session."""

    kind = ErrorKind.FILE_UPLOAD
    default_code = "invalid_file"


class FieldMappingError(EngineError):
    """A required target field has no mapping."""

    kind = ErrorKind.FIELD_MAPPING
    default_code = "required_field_unmapped"
    recoverable = True


class DataValidationError(EngineError):
    """Row-level problem; recoverable per row via auto-fix or skip."""

    kind = ErrorKind.DATA_VALIDATION
    default_code = "invalid_record"
    recoverable = True


class ImportExecutionError(EngineError):
    """Whole-batch infrastructure failure raised by a catalog writer."""

    kind = ErrorKind.IMPORT_EXECUTION
    default_code = "batch_commit_failed"
    recoverable = True


class NetworkError(EngineError):
    """An outbound collaborator (approval gate, inference provider) is unreachable."""

    kind = ErrorKind.NETWORK
    default_code = "collaborator_unreachable"
    recoverable = True


class EngineSystemError(EngineError):
    kind = ErrorKind.SYSTEM
    default_code = "system_error"


class SessionNotFoundError(EngineSystemError):
    default_code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Upload session {session_id} not found")
        self.session_id = session_id


class InvalidTransitionError(EngineSystemError):
    default_code = "invalid_transition"

    def __init__(self, session_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Session {session_id} cannot move from '{current}' to '{target}'",
            details={"current": current, "target": target},
        )
        self.session_id = session_id
        self.current = current
        self.target = target


class SessionStateError(EngineSystemError):
    """An operation was requested in a status that does not allow it."""

    default_code = "invalid_session_state"
