"""
Date parsing utilities for flexible date-time handling.

Import files carry date-times either as epoch milliseconds or as free-form
text; both are normalised to timezone-aware ``datetime`` objects here. Export
rendering goes the other way and produces ISO 8601 text.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

import pandas as pd

from record_transfer.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

EPOCH_MILLIS_PATTERN = re.compile(r"^-?[0-9]+$")

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    # Emit a single summary when suppression starts, then periodically.
    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _dayfirst_preferred(value: str) -> bool:
    numeric_match = re.match(r"^\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}", value)
    if not numeric_match:
        return settings.date_default_dayfirst

    first, second = (int(part) for part in re.split(r"[/.-]", numeric_match.group(0))[:2])
    if first > 12 and second <= 31:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_datetime_value(value: str, *, log_context: Optional[str] = None) -> datetime:
    """
    Parse a date-time string into a timezone-aware ``datetime``.

    Supports:
    - Epoch milliseconds: "1700000000000"
    - ISO 8601: "2024-09-04T23:09:18Z"
    - DD/MM/YYYY and MM/DD/YYYY (day-first inferred where unambiguous)
    - Anything else pandas can infer

    Args:
        value: Raw textual value
        log_context: Optional label used when logging parse failures

    Returns:
        Parsed datetime (UTC when the input carries no offset)

    Raises:
        ValueError: If the value cannot be interpreted as a date-time
    """
    text = value.strip()
    if EPOCH_MILLIS_PATTERN.match(text):
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)

    dayfirst = _dayfirst_preferred(text)
    last_error: Optional[Exception] = None
    for attempt_dayfirst in (dayfirst, not dayfirst):
        try:
            parsed = pd.to_datetime(text, utc=True, dayfirst=attempt_dayfirst, errors="raise")
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            last_error = ValueError("value parsed to NaT")
            continue
        return parsed.to_pydatetime()

    error = last_error or ValueError("Unable to determine format")
    _record_parse_failure(value, log_context, error)
    raise ValueError(f"Cannot parse '{value}' as DateTime: {error}")


def format_datetime(value: Any) -> str:
    """Render a date-time value as ISO 8601 text for export files."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            return value.strftime("%Y-%m-%dT%H:%M:%SZ")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
