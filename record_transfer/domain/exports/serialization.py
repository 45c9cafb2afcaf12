"""
Serialization of exported rows into downloadable payloads.
"""

import io
import json
import zipfile
from typing import Any, Dict, List, Optional

import pandas as pd

from record_transfer.api.schemas.shared import ExportFormat
from record_transfer.core.config import settings

MEDIA_TYPES = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.JSON: "application/json",
    ExportFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
ZIP_MEDIA_TYPE = "application/zip"

# Excel limits sheet names to 31 characters
MAX_SHEET_NAME_LENGTH = 31


def can_zip(export_format: ExportFormat) -> bool:
    """XLSX is already a zip container and is never wrapped again."""
    return export_format != ExportFormat.XLSX


def serialize_rows(
    rows: List[Dict[str, Any]],
    columns: List[str],
    export_format: ExportFormat,
    *,
    sheet_name: str = "Sheet1",
    delimiter: Optional[str] = None,
    json_indent: Optional[int] = None,
) -> bytes:
    """
    Render rows in the requested format.

    Args:
        rows: Row dictionaries keyed by column
        columns: Column order; CSV and XLSX always start with a header row
        export_format: csv, json or xlsx
        sheet_name: Worksheet name for XLSX (usually the entity logical name)
        delimiter: CSV delimiter (default from settings)
        json_indent: JSON indentation (default from settings)

    Returns:
        The serialized payload
    """
    if export_format == ExportFormat.JSON:
        indent = settings.export_json_indent if json_indent is None else json_indent
        return json.dumps(rows, indent=indent, ensure_ascii=False).encode("utf-8")

    df = pd.DataFrame(rows, columns=columns)
    if export_format == ExportFormat.CSV:
        sep = delimiter or settings.export_delimiter
        return df.to_csv(sep=sep, index=False).encode("utf-8")

    if export_format == ExportFormat.XLSX:
        buffer = io.BytesIO()
        with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
            df.to_excel(writer, sheet_name=sheet_name[:MAX_SHEET_NAME_LENGTH] or "Sheet1", index=False)
        return buffer.getvalue()

    raise ValueError(f"Invalid/Unrecognized format: '{export_format}'")


def zip_payload(entry_name: str, payload: bytes) -> bytes:
    """Wrap a payload as the single entry of a DEFLATE (level 9) zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        archive.writestr(entry_name, payload)
    return buffer.getvalue()
