from __future__ import annotations
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Tuple

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

# ─────────────────────────────
# Time & Date helpers
# ─────────────────────────────
# Everything internal is naive UTC so gift dates from the CRM (date-only or
# full ISO with 'Z') compare cleanly against "now".

def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)

def parse_datetime(raw: Any) -> Optional[datetime]:
    """Accepts ISO date / datetime strings (with or without offset); returns naive UTC or None."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            value = date_parser.isoparse(text)
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def year_bounds(year: int) -> Tuple[datetime, datetime]:
    """Jan 1 00:00 .. Dec 31 end-of-day for the given calendar year."""
    start = datetime(year, 1, 1)
    end = datetime(year, 12, 31, 23, 59, 59, 999999)
    return start, end

def months_ago(now: datetime, months: int) -> datetime:
    return now - relativedelta(months=months)

# ─────────────────────────────
# Schema-tolerant field picking
# ─────────────────────────────
# The CRM has no stable response schema; every "Amount.Value" style lookup
# goes through these helpers.

def read_value(source: Any, path: str) -> Any:
    """Dotted-path lookup over nested dicts; returns None when any hop is missing."""
    value = source
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return None
    return value

def first_present(source: Any, paths: Iterable[str]) -> Any:
    """First path whose value is not None."""
    for path in paths:
        value = read_value(source, path)
        if value is not None:
            return value
    return None

def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (dict, list)):
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None

def pick_number(source: Any, paths: Iterable[str]) -> Optional[Decimal]:
    for path in paths:
        d = to_decimal(read_value(source, path))
        if d is not None:
            return d
    return None

def pick_int(source: Any, paths: Iterable[str]) -> Optional[int]:
    d = pick_number(source, paths)
    if d is None or d != d.to_integral_value():
        return None
    return int(d)

def pick_string(source: Any, paths: Iterable[str]) -> Optional[str]:
    for path in paths:
        value = read_value(source, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None

def normalize_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v == "true":
            return True
        if v == "false":
            return False
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
    return None

def int_ids(values: Any) -> list[int]:
    """Keep the integer-looking entries of an id list, in order."""
    out: list[int] = []
    if not isinstance(values, list):
        return out
    for v in values:
        d = to_decimal(v)
        if d is not None and d == d.to_integral_value():
            out.append(int(d))
    return out
