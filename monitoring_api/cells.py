"""
Cell and Row-Key Codec

Bigtable stores every value as bytes; the ingestion pipeline writes them as
UTF-8 strings. This module turns those strings into Python values without ever
raising: a missing or malformed cell becomes None and the caller decides
whether None means "absent" or "zero".

Row keys of the `logs` table have the form::

    <13-digit epoch ms>#<type>#<connector>#<uuid>

so a lexicographic range over keys is a time range.
"""

import math
import re
from datetime import datetime, timezone
from typing import NamedTuple, Optional


KEY_SEPARATOR = "#"
KEY_TIMESTAMP_WIDTH = 13

_KEY_TIMESTAMP_RE = re.compile(r"^\d{13}$")
_DIGITS_RE = re.compile(r"^\d+$")


class RowKey(NamedTuple):
    """Components of a time-prefixed row key."""
    timestamp: datetime
    type: Optional[str]
    connector: Optional[str]


# =============================================================================
# TIME HELPERS
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(moment: datetime) -> int:
    """Epoch milliseconds of an aware datetime (naive values are taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_epoch_ms(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def key_prefix(moment: datetime) -> str:
    """Zero-padded 13-digit key prefix used for range scans on `logs`."""
    return "%013d" % to_epoch_ms(moment)


# =============================================================================
# ROW KEYS
# =============================================================================

def parse_row_key(row_key: str) -> Optional[RowKey]:
    """
    Split a `ts#type#connector#uuid` key.

    Returns None when the first component is not a 13-digit timestamp.
    """
    if not row_key:
        return None
    parts = row_key.split(KEY_SEPARATOR)
    if not _KEY_TIMESTAMP_RE.match(parts[0]):
        return None
    return RowKey(
        timestamp=from_epoch_ms(int(parts[0])),
        type=parts[1] if len(parts) > 1 and parts[1] else None,
        connector=parts[2] if len(parts) > 2 and parts[2] else None,
    )


# =============================================================================
# CELL VALUES
# =============================================================================

def parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    # NaN and infinities are malformed cells
    return parsed if math.isfinite(parsed) else None


def parse_bool(value: Optional[str]) -> Optional[bool]:
    """Strict, case-insensitive "true"/"false"; anything else is None."""
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a step timestamp.

    Accepts epoch milliseconds ("1700000000000") or ISO-8601, with or
    without a trailing "Z". Naive ISO values are taken as UTC.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if _DIGITS_RE.match(value):
        try:
            return from_epoch_ms(int(value))
        except (ValueError, OverflowError, OSError):
            return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def format_instant(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + "%03dZ" % (moment.microsecond // 1000)


def number_or_zero(value: Optional[str]) -> float:
    """Accumulator parsing: missing or malformed cells count as 0."""
    parsed = parse_float(value)
    return parsed if parsed is not None else 0.0
