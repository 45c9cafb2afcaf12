import io
import logging
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

CsvSource = Union[str, Path, bytes, BinaryIO]

PREVIEW_ROWS = 10


def _open_source(source: CsvSource):
    if isinstance(source, bytes):
        return io.BytesIO(source)
    return source


def records_from_frame(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a frame to row dictionaries, turning pandas NaN markers into None."""
    records = df.to_dict('records')
    for record in records:
        for key, value in record.items():
            if not isinstance(value, str) and pd.isna(value):
                record[key] = None
    return records


def _read_options(delimiter: str, encoding: str) -> Dict[str, Any]:
    # Every value stays text: coercion to attribute types happens per mapping
    return {
        "sep": delimiter,
        "dtype": str,
        "keep_default_na": False,
        "skip_blank_lines": True,
        "encoding": encoding,
    }


def preview_csv(
    source: CsvSource,
    rows: int = PREVIEW_ROWS,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Read the header and the first few rows of a CSV file.

    Args:
        source: Path, raw bytes or binary stream
        rows: Number of data rows to read
        delimiter: Field delimiter

    Returns:
        Tuple of (records, column_names)
    """
    df = pd.read_csv(_open_source(source), nrows=rows, **_read_options(delimiter, encoding))
    columns = [str(column) for column in df.columns]
    logger.info(f"Previewed CSV: {len(df)} rows, columns: {columns}")
    return records_from_frame(df), columns


def process_csv(
    source: CsvSource,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Read a whole CSV file with a header row into memory."""
    df = pd.read_csv(_open_source(source), **_read_options(delimiter, encoding))
    columns = [str(column) for column in df.columns]
    logger.info(f"Processed CSV with header: {len(df)} rows, columns: {columns}")
    return records_from_frame(df), columns


def iter_csv_chunks(
    source: CsvSource,
    chunk_size: int,
    delimiter: str = ",",
    encoding: str = "utf-8",
    on_bad_line: Optional[Callable[[List[str]], None]] = None,
) -> Iterator[Tuple[List[Dict[str, Any]], List[str]]]:
    """
    Yield (records, column_names) chunks of at most ``chunk_size`` rows.

    Lines with more fields than the header are handed to ``on_bad_line`` and
    skipped instead of failing the whole read.
    """
    def _skip_bad_line(bad_line: List[str]) -> None:
        if on_bad_line is not None:
            on_bad_line(bad_line)
        return None

    reader = pd.read_csv(
        _open_source(source),
        chunksize=chunk_size,
        engine="python",
        on_bad_lines=_skip_bad_line,
        **_read_options(delimiter, encoding),
    )
    with reader:
        for chunk in reader:
            yield records_from_frame(chunk), [str(column) for column in chunk.columns]
