# donor_intel/utils/coerce.py
"""
Safe coercion for the loosely typed values coming out of the donor store.

Amounts arrive as numbers, numeric strings, Decimals or nothing at all; dates
arrive as ISO date-only strings, full ISO timestamps, date objects or garbage.
Every call site goes through these helpers instead of branching on its own.
"""
import math
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
# plain decimal notation only: no "1_000", "nan", "inf" or hex
_NUMERIC_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


def to_optional_number(value: Any) -> Optional[float]:
    """Finite float for int/float/Decimal/numeric strings, otherwise None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not _NUMERIC_RE.match(value):
            return None
    elif not isinstance(value, (int, float, Decimal)):
        return None
    try:
        n = float(value)
    except (ValueError, OverflowError):
        return None
    return n if math.isfinite(n) else None


def to_number(value: Any) -> float:
    """Like to_optional_number but falls back to 0.0."""
    n = to_optional_number(value)
    return 0.0 if n is None else n


def parse_date_only(value: Any) -> Optional[date]:
    """
    Parse a date-only value. Strings must start with YYYY-MM-DD; any time part
    after that is ignored. Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not _DATE_PREFIX_RE.match(s):
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def date_only_str(value: Any) -> Optional[str]:
    """YYYY-MM-DD prefix of a stored date value (no validation beyond shape)."""
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return to_date_only(value)
    s = str(value).strip()
    return s[:10] or None


def to_date_only(d: date) -> str:
    if isinstance(d, datetime):
        d = d.date()
    return d.isoformat()
