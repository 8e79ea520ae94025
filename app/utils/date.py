"""
Date parsing utilities for order import values.

Strict parsing accepts the two shapes order exports use (DD/MM/YYYY and
YYYY-MM-DD) and enforces calendar validity. Flexible parsing falls back to
pandas inference and is used where a best-effort timestamp is good enough,
such as seasonal grouping and fraud velocity windows.
"""

import re
import logging
from datetime import date
from typing import Any, Optional

import pandas as pd

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_DAY_FIRST = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
_ISO = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")

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
        logger.debug("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse messages after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def parse_order_date(value: Any) -> Optional[date]:
    """
    Parse a DD/MM/YYYY or YYYY-MM-DD value into a calendar date.

    Returns None for any other shape and for impossible dates such as 31/02/2024.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    match = _DAY_FIRST.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
    else:
        match = _ISO.match(text)
        if not match:
            return None
        year, month, day = (int(part) for part in match.groups())

    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None) -> Optional[pd.Timestamp]:
    """
    Best-effort conversion of a date value into a naive pandas Timestamp.

    Strict shapes are tried first; anything else goes through pandas inference
    with day-first preference, matching Brazilian export conventions.
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None

    text = str(value).strip()
    if not text:
        return None

    strict = parse_order_date(text)
    # Values carrying a time of day go through pandas so the time is kept
    if strict is not None and len(text) == 10:
        return pd.Timestamp(strict)

    try:
        parsed = pd.to_datetime(text, dayfirst=True, errors="raise")
    except (ValueError, TypeError, OverflowError) as exc:
        _record_parse_failure(value, log_context, exc)
        return None

    if parsed is pd.NaT:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.tz_convert("UTC").tz_localize(None)
    return parsed
