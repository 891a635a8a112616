"""
Type converters — lenient conversion of platform money, count and date fields.

Mapping code must never throw on malformed upstream data: missing or
unparseable numbers become zero, negative money is clamped to zero.
Version: 1.0.0
"""
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional


def to_float(value: Any) -> float:
    """Convert value to float, returning 0.0 if missing or invalid."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        val = float(value)
    except (ValueError, TypeError):
        return 0.0
    if val != val or val in (float("inf"), float("-inf")):
        return 0.0
    return val


def to_money(value: Any) -> float:
    """Non-negative amount rounded to cents."""
    return round(max(0.0, to_float(value)), 2)


def to_optional_money(value: Any) -> Optional[float]:
    """Like to_money, but keeps 'absent' distinct from zero."""
    if value is None or value == "":
        return None
    return to_money(value)


def to_int(value: Any) -> int:
    """Convert value to int, returning 0 if missing or invalid."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (ValueError, TypeError):
        return int(to_float(value))


def to_quantity(value: Any) -> int:
    """Line-item quantity; at least 1."""
    return max(1, to_int(value))


def to_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def to_id(value: Any) -> Optional[str]:
    """Platform id as string; None stays None."""
    if value is None or value == "":
        return None
    return str(value)


def amount_of(container: Any, key: str = "Amount") -> float:
    """Read a nested money object such as {"Amount": "1.00"} or {"value": "1.00"}."""
    if not isinstance(container, Mapping):
        return to_money(container)
    return to_money(container.get(key))


def to_iso8601(value: Any) -> Optional[str]:
    """
    Normalize a platform timestamp to ISO-8601.

    Accepts ISO strings (returned unchanged apart from a trailing Z),
    RFC 2822 strings (BigCommerce v2) and epoch seconds.
    """
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return str(value)
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed.isoformat()
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text).isoformat()
    except (TypeError, ValueError, IndexError):
        return text


def split_tags(value: Any) -> list[str]:
    """Comma-separated tag string or list of {name: ...} dicts to a clean list."""
    if not value:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    tags = []
    for item in value:
        name = item.get("name") if isinstance(item, Mapping) else item
        if name:
            tags.append(str(name).strip())
    return tags
