"""
Paged row sources feeding the import pipeline.

Every source exposes ``count()`` (row total, or -1 when unknown without a full
pass) and ``read_all(page_size)`` yielding ``Page`` objects in source order.
Page boundaries only bound memory and request size; they carry no meaning.
Rows that fail to parse are reported on the page that owns them and never
end the read.
"""

import io
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from record_transfer.api.schemas.shared import RowErrorDetail
from record_transfer.core.config import settings
from record_transfer.domain.imports.processors.csv_processor import iter_csv_chunks
from record_transfer.domain.imports.processors.json_processor import iter_json_lines

logger = logging.getLogger(__name__)

RawRow = Dict[str, Any]
FileSource = Union[str, Path, bytes, BinaryIO]

STREAMABLE_FILE_TYPES = ("csv", "jsonl")


class Page(list):
    """A chunk of raw rows plus the parse errors encountered while reading it."""

    def __init__(self, rows: Iterable[RawRow] = (), errors: Optional[List[RowErrorDetail]] = None):
        super().__init__(rows)
        self.errors: List[RowErrorDetail] = list(errors or [])


class PagedSource(ABC):
    """Read-only provider of raw rows, chunked into pages."""

    @abstractmethod
    def count(self) -> int:
        """Number of rows, or -1 when it cannot be known up front."""

    @abstractmethod
    def read_all(self, page_size: Optional[int] = None) -> Iterator[Page]:
        """Yield every row exactly once, in source order, in pages of at most ``page_size`` rows."""


def effective_page_size(page_size: Optional[int]) -> int:
    size = page_size or settings.source_page_size
    if size < 1:
        raise ValueError("page_size must be at least 1")
    return size


class ArrayReader(PagedSource):
    """Pages over rows already held in memory. Can be read any number of times."""

    def __init__(self, rows: Sequence[RawRow]):
        self._rows = rows

    def count(self) -> int:
        return len(self._rows)

    def read_all(self, page_size: Optional[int] = None) -> Iterator[Page]:
        size = effective_page_size(page_size)
        for start in range(0, len(self._rows), size):
            yield Page(self._rows[start:start + size])


def _open_binary(source: FileSource) -> Union[BinaryIO, str, Path]:
    if isinstance(source, bytes):
        return io.BytesIO(source)
    return source


def iter_file_pages(
    source: FileSource,
    file_type: str,
    page_size: int,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> Iterator[Page]:
    """
    Stream a CSV or JSON-lines file as pages without loading it whole.

    Args:
        source: Path, raw bytes or binary stream
        file_type: "csv" or "jsonl"
        page_size: Rows per page
        delimiter: CSV field delimiter

    Yields:
        Pages in file order; malformed lines are reported in ``Page.errors``
    """
    if file_type == "csv":
        bad_lines: List[RowErrorDetail] = []

        def _on_bad_line(fields: List[str]) -> None:
            bad_lines.append(
                RowErrorDetail(
                    type="parse_error",
                    message=f"Malformed CSV line with {len(fields)} fields",
                    value=delimiter.join(fields),
                )
            )

        for records, _columns in iter_csv_chunks(
            _open_binary(source), page_size, delimiter=delimiter, encoding=encoding, on_bad_line=_on_bad_line
        ):
            page = Page(records, bad_lines)
            bad_lines.clear()
            yield page
        if bad_lines:
            # Bad lines after the last complete chunk
            yield Page([], bad_lines)
        return

    if file_type == "jsonl":
        handle = _open_binary(source)
        owns_handle = isinstance(handle, (str, Path))
        stream = open(handle, "rb") if owns_handle else handle
        try:
            page = Page()
            for line_number, record, error in iter_json_lines(stream):
                if error is not None:
                    page.errors.append(RowErrorDetail(type="parse_error", message=error, record_number=line_number))
                    continue
                page.append(record)
                if len(page) >= page_size:
                    yield page
                    page = Page()
            if page or page.errors:
                yield page
        finally:
            if owns_handle:
                stream.close()
        return

    raise ValueError(f"File type '{file_type}' cannot be streamed; use one of {STREAMABLE_FILE_TYPES}")


class StreamingFileReader(PagedSource):
    """
    Reads a delimited or JSON-lines file page by page straight from disk.

    The row count is unknown until the file has been read, so ``count()``
    returns -1. Each ``read_all`` call is a single pass; a path or bytes
    source can be read again, an already consumed stream cannot.
    """

    def __init__(self, source: FileSource, file_type: str = "csv", delimiter: str = ",", encoding: str = "utf-8"):
        if file_type not in STREAMABLE_FILE_TYPES:
            raise ValueError(f"File type '{file_type}' cannot be streamed; use one of {STREAMABLE_FILE_TYPES}")
        self.source = source
        self.file_type = file_type
        self.delimiter = delimiter
        self.encoding = encoding

    def count(self) -> int:
        return -1

    def read_all(self, page_size: Optional[int] = None) -> Iterator[Page]:
        size = effective_page_size(page_size)
        pages = 0
        for page in iter_file_pages(self.source, self.file_type, size, self.delimiter, self.encoding):
            pages += 1
            if page.errors:
                logger.warning("Page %d of %s file has %d unparseable lines", pages, self.file_type, len(page.errors))
            yield page
