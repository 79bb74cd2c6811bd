"""Turn uploaded CSV/JSON/XLSX bytes into a list of raw records."""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import date, datetime
from pathlib import PurePath
from typing import Any

import pandas as pd

from catalog_importer.core.errors import FileUploadError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("csv", "json", "xlsx")


def detect_format(filename: str) -> str:
    suffix = PurePath(filename or "").suffix.lower().lstrip(".")
    if suffix == "xls":
        suffix = "xlsx"
    if suffix not in SUPPORTED_FORMATS:
        raise FileUploadError(
            f"Unsupported file type '.{suffix}'" if suffix else "File has no extension",
            code="unsupported_format",
            remediation="Upload a .csv, .json or .xlsx file",
        )
    return suffix


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise FileUploadError(
            f"File encoding error: {e}",
            code="invalid_encoding",
            remediation="Save the file as UTF-8",
        ) from e


def _read_csv(content: bytes) -> list[dict[str, Any]]:
    handle = io.StringIO(_decode(content), newline="")
    try:
        reader = csv.DictReader(handle)
        if not reader.fieldnames:
            raise FileUploadError("CSV file appears to be empty or has no header row", code="empty_file")
        headers = [name.strip() for name in reader.fieldnames]
        records = []
        for row in reader:
            records.append({header: row.get(original) for header, original in zip(headers, reader.fieldnames) if header})
        return records
    except csv.Error as e:
        raise FileUploadError(f"CSV parsing error: {e}", code="malformed_csv") from e


def _read_json(content: bytes) -> list[dict[str, Any]]:
    try:
        payload = json.loads(_decode(content))
    except ValueError as e:
        raise FileUploadError(f"Invalid JSON: {e}", code="malformed_json") from e
    if isinstance(payload, dict):
        # {"products": [...]} style exports: use the first list of objects.
        lists = [value for value in payload.values() if isinstance(value, list)]
        payload = lists[0] if lists else [payload]
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise FileUploadError(
            "JSON upload must be an array of objects",
            code="malformed_json",
            remediation="Export the records as a JSON array",
        )
    return payload


def _plain(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy scalars
        value = value.item()
    if isinstance(value, float) and pd.isna(value):
        return None
    return value


def _read_xlsx(content: bytes) -> list[dict[str, Any]]:
    try:
        df = pd.read_excel(io.BytesIO(content), engine="openpyxl", dtype=object)
    except Exception as e:
        raise FileUploadError(f"Could not read Excel file: {e}", code="malformed_xlsx") from e
    df.columns = [str(column).strip() for column in df.columns]
    records = df.to_dict("records")
    for record in records:
        for key, value in record.items():
            record[key] = None if pd.isna(value) else _plain(value)
    return records


def read_records(filename: str, content: bytes, max_bytes: int | None = None) -> tuple[str, list[dict[str, Any]]]:
    """Parse an upload; returns ``(format, records)``.

    Raises ``FileUploadError`` for empty, oversized, unsupported or
    unparseable files.
    """
    file_format = detect_format(filename)
    if not content:
        raise FileUploadError("Uploaded file is empty", code="empty_file")
    if max_bytes is not None and len(content) > max_bytes:
        raise FileUploadError(
            f"File is {len(content)} bytes; the limit is {max_bytes}",
            code="file_too_large",
            remediation="Split the file into smaller uploads",
        )

    if file_format == "csv":
        records = _read_csv(content)
    elif file_format == "json":
        records = _read_json(content)
    else:
        records = _read_xlsx(content)

    if not records:
        raise FileUploadError("File contains no records", code="empty_file")
    logger.info(f"Read {len(records)} record(s) from {file_format} upload '{filename}'")
    return file_format, records
