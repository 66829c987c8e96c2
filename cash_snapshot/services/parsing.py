"""Lenient parsing of Plaid JSON fields.

Malformed or missing values come back as None so a single bad field never
sinks a whole record or stream.
"""
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any


def nested(data: Any, *path: str) -> Any:
    """Walk dict keys; None as soon as a level is missing or not a dict."""
    cur = data
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
        if cur is None:
            return None
    return cur


def parse_date(value: Any) -> date | None:
    """Accepts "2024-06-28", full ISO datetimes, and date/datetime objects."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    value_str = str(value).strip()
    if not value_str:
        return None
    try:
        return date.fromisoformat(value_str[:10])
    except ValueError:
        return None


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def parse_float(value: Any) -> float | None:
    d = parse_decimal(value)
    return float(d) if d is not None else None


def parse_int(value: Any) -> int | None:
    d = parse_decimal(value)
    if d is None:
        return None
    return int(d)


def parse_str(value: Any) -> str | None:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def parse_bool(value: Any) -> bool | None:
    """JSON booleans, 0/1, and the strings "true"/"false" (any case)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
    return None


def parse_datetime(value: Any) -> datetime | None:
    """ISO 8601 timestamps; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
