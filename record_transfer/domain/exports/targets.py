"""
Export sinks.

A target receives the column header once, row pages any number of times and
is finalized once:

    target.init(filename)
    target.header(columns)
    for page in pages:
        target.add_range(page)
    target.finalize()

A target whose ``url`` is set after ``init`` points at a browsable location
(a remote spreadsheet) that callers surface right away.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import pandas as pd

from record_transfer.api.schemas.shared import ExportFormat
from record_transfer.core.config import settings
from record_transfer.domain.exports.serialization import (
    MEDIA_TYPES,
    ZIP_MEDIA_TYPE,
    can_zip,
    serialize_rows,
    zip_payload,
)

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class ExportTarget(ABC):
    url: Optional[str] = None

    @abstractmethod
    def init(self, filename: str) -> None:
        ...

    @abstractmethod
    def header(self, columns: List[str]) -> None:
        ...

    @abstractmethod
    def add_range(self, rows: List[Row]) -> None:
        ...

    @abstractmethod
    def finalize(self) -> None:
        ...


class DownloadTarget(ExportTarget):
    """
    Collects every row in memory and serializes them on ``finalize``.

    After finalize, ``payload`` holds the file content (zipped when requested
    and possible), ``download_name`` its file name and ``media_type`` its type.
    """

    def __init__(
        self,
        export_format: ExportFormat = ExportFormat.CSV,
        sheet_name: str = "Sheet1",
        zip_result: Optional[bool] = None,
        delimiter: Optional[str] = None,
        json_indent: Optional[int] = None,
    ):
        self.export_format = export_format
        self.sheet_name = sheet_name
        self.zip_result = settings.export_zip_result if zip_result is None else zip_result
        self.delimiter = delimiter
        self.json_indent = json_indent
        self.filename = sheet_name
        self.columns: List[str] = []
        self.rows: List[Row] = []
        self.data_length = -1
        self.payload: Optional[bytes] = None
        self.download_name: Optional[str] = None
        self.media_type: Optional[str] = None

    def init(self, filename: str) -> None:
        self.filename = filename
        self.rows = []
        self.payload = None

    def header(self, columns: List[str]) -> None:
        self.columns = list(columns)

    def add_range(self, rows: List[Row]) -> None:
        self.rows.extend(rows)

    def finalize(self) -> None:
        extension = self.export_format.value
        data = serialize_rows(
            self.rows,
            self.columns,
            self.export_format,
            sheet_name=self.sheet_name,
            delimiter=self.delimiter,
            json_indent=self.json_indent,
        )
        self.data_length = len(data)
        if self.zip_result and can_zip(self.export_format):
            self.payload = zip_payload(f"{self.filename}.{extension}", data)
            self.download_name = f"{self.filename}.zip"
            self.media_type = ZIP_MEDIA_TYPE
        else:
            self.payload = data
            self.download_name = f"{self.filename}.{extension}"
            self.media_type = MEDIA_TYPES[self.export_format]
        logger.info(
            "Serialized %d rows as %s: %d bytes (payload %d bytes)",
            len(self.rows),
            self.download_name,
            self.data_length,
            len(self.payload),
        )


class FileSystemTarget(ExportTarget):
    """Writes delimited text straight to a file: header once, then one append per page."""

    def __init__(self, directory: Optional[str] = None, delimiter: Optional[str] = None):
        self.directory = Path(directory or settings.export_output_dir)
        self.delimiter = delimiter or settings.export_delimiter
        self.path: Optional[Path] = None
        self.columns: List[str] = []
        self.rows_written = 0

    def init(self, filename: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"{filename}.csv"
        # Start from an empty file
        self.path.write_text("", encoding="utf-8")
        self.rows_written = 0

    def header(self, columns: List[str]) -> None:
        self.columns = list(columns)
        pd.DataFrame(columns=self.columns).to_csv(self.path, sep=self.delimiter, index=False, mode="a")

    def add_range(self, rows: List[Row]) -> None:
        if not rows:
            return
        frame = pd.DataFrame(rows, columns=self.columns)
        frame.to_csv(self.path, sep=self.delimiter, index=False, header=False, mode="a")
        self.rows_written += len(rows)

    def finalize(self) -> None:
        logger.info("Wrote %d rows to %s", self.rows_written, self.path)


class SheetsClient(Protocol):
    def create(self, title: str) -> Dict[str, Any]:
        """Create a spreadsheet; returns its resource (spreadsheetId, spreadsheetUrl, sheets)."""
        ...

    def append(self, spreadsheet_id: str, range_name: str, values: List[List[Any]]) -> Dict[str, Any]:
        ...


class SpreadsheetTarget(ExportTarget):
    """Appends rows to a newly created remote spreadsheet."""

    def __init__(self, client: SheetsClient):
        self.client = client
        self.spreadsheet: Optional[Dict[str, Any]] = None
        self.sheet_name: Optional[str] = None
        self.columns: List[str] = []

    @property
    def spreadsheet_id(self) -> Optional[str]:
        return self.spreadsheet["spreadsheetId"] if self.spreadsheet else None

    def init(self, filename: str) -> None:
        self.spreadsheet = self.client.create(filename)
        self.sheet_name = self.spreadsheet["sheets"][0]["properties"]["title"]
        self.url = self.spreadsheet.get("spreadsheetUrl")
        logger.info("New spreadsheet URL: %s", self.url)

    def header(self, columns: List[str]) -> None:
        self.columns = list(columns)
        self.client.append(self.spreadsheet_id, self.sheet_name, [self.columns])

    def add_range(self, rows: List[Row]) -> None:
        if not rows:
            return
        values = [[row.get(column) or "" for column in self.columns] for row in rows]
        self.client.append(self.spreadsheet_id, self.sheet_name, values)

    def finalize(self) -> None:
        pass
