from typing import Any
from decimal import Decimal
from datetime import datetime, date

from pydantic import BaseModel

from record_transfer.utils.date import format_datetime


def make_json_safe(value: Any) -> Any:
    """
    Convert Python objects into JSON-serialisable structures, preserving
    as much fidelity as possible.
    """
    if isinstance(value, BaseModel):
        return make_json_safe(value.model_dump())
    if isinstance(value, dict):
        return {key: make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        # Keep integers as ints, otherwise go through float for wire formats
        if value == value.to_integral():
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date)):
        return format_datetime(value)
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    # Fallback to string representation for unsupported types
    return str(value)
