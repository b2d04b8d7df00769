import re
from datetime import datetime, timezone
from typing import Any, Optional

_FRACTION = re.compile(r"\.(\d+)")


def _pad_fraction(match) -> str:
    # Postgres emits 1-9 fractional digits; older fromisoformat wants exactly 3 or 6.
    digits = match.group(1)[:6]
    return "." + digits.ljust(6, "0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """
    Coerce a timestamp-ish value to an aware UTC datetime.
    Accepts datetimes (naive = UTC), epoch seconds, and ISO-8601 strings
    including a trailing 'Z'. Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        raw = _FRACTION.sub(_pad_fraction, raw, count=1)
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return parse_ts(parsed)
    return None


def iso(dt: datetime) -> str:
    return parse_ts(dt).isoformat()


__all__ = ["utcnow", "parse_ts", "iso"]
