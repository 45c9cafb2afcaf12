import json
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple


def process_json(file_content: bytes) -> List[Dict[str, Any]]:
    """Process JSON file and return list of dictionaries."""
    data = json.loads(file_content.decode('utf-8'))

    if isinstance(data, list):
        return data
    elif isinstance(data, dict):
        return [data]
    else:
        raise ValueError("JSON must contain an object or array of objects")


def json_columns(records: List[Dict[str, Any]]) -> List[str]:
    """Columns of a JSON document are the keys of its first record."""
    if not records:
        return []
    return list(records[0].keys())


def iter_json_lines(lines: Iterable[bytes]) -> Iterator[Tuple[int, Optional[Dict[str, Any]], Optional[str]]]:
    """
    Parse newline-delimited JSON one line at a time.

    Yields:
        (line_number, record, error) where exactly one of record/error is set.
        Blank lines are skipped.
    """
    for line_number, raw_line in enumerate(lines, start=1):
        text = raw_line.decode('utf-8') if isinstance(raw_line, bytes) else raw_line
        text = text.strip()
        if not text:
            continue
        try:
            record = json.loads(text)
        except json.JSONDecodeError as exc:
            yield line_number, None, f"Invalid JSON: {exc.msg}"
            continue
        if not isinstance(record, dict):
            yield line_number, None, "JSON line must contain an object"
            continue
        yield line_number, record, None
