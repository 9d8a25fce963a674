"""
Date parsing utilities for flexible date format handling.

Spreadsheets exported by banks and benefit systems mix "20/10/1958",
"1958-10-20" and native spreadsheet dates. Values are standardized to ISO
8601 dates (YYYY-MM-DD) for storage.
"""

import pandas as pd
from typing import Any, Optional
import re
from datetime import date, datetime, timezone
import logging

from import_engine.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across PostgreSQL and SQLite columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


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


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[str]:
    """
    Parse a date value from various formats and return an ISO 8601 date string.

    Supports formats:
    - DD/MM/YYYY: "20/10/1958" (day first unless the values make that impossible)
    - YYYY-MM-DD: "1958-10-20"
    - native datetime/date objects coming from spreadsheet cells
    - And many others via pandas inference

    Returns:
        "YYYY-MM-DD" or None if parsing fails
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if text == "":
        return None

    parse_attempts = []

    numeric_match = re.match(r'^\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}', text)
    if numeric_match:
        parts = re.split(r'[/.-]', numeric_match.group(0))
        first = int(parts[0])
        second = int(parts[1])

        # Decide whether day-first is more plausible
        if first > 12 and second <= 12:
            dayfirst_preferred = True
        elif second > 12 and first <= 12:
            dayfirst_preferred = False
        else:
            dayfirst_preferred = settings.date_default_dayfirst

        parse_attempts.append(
            lambda v, df=dayfirst_preferred: pd.to_datetime(v, dayfirst=df, errors='raise')
        )
        # Always try the alternate interpretation as a fallback
        parse_attempts.append(
            lambda v, df=not dayfirst_preferred: pd.to_datetime(v, dayfirst=df, errors='raise')
        )

    # Fallback: let pandas infer the format
    parse_attempts.append(lambda v: pd.to_datetime(v, errors='raise'))

    last_error = None
    for attempt in parse_attempts:
        try:
            parsed = attempt(text)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            continue
        return parsed.date().isoformat()

    if log_failures:
        _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None
