from datetime import datetime, date, timezone as dt_timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)


def get_zoneinfo(tz_name: Optional[str]) -> ZoneInfo:
    """
    Resolve an IANA timezone name.
    Raises ZoneInfoNotFoundError (a KeyError) for unknown or blank names so callers
    decide on their own fallback.
    """
    if not tz_name or not str(tz_name).strip():
        raise ZoneInfoNotFoundError("blank timezone name")
    try:
        return ZoneInfo(str(tz_name).strip())
    except ValueError as exc:
        # Malformed keys such as "../etc" raise ValueError instead of a lookup miss
        raise ZoneInfoNotFoundError(str(exc)) from exc


def is_valid_timezone(tz_name: Optional[str]) -> bool:
    try:
        get_zoneinfo(tz_name)
    except ZoneInfoNotFoundError:
        return False
    return True


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_timezone.utc)
    return dt.astimezone(dt_timezone.utc)


def coerce_instant(value: Any) -> datetime | None:
    """
    Normalize the instant shapes seen on the wire into one UTC-aware datetime.

    Accepted: datetime (aware or naive-as-UTC), ISO-8601 strings ("Z" or offset),
    epoch seconds (int/float), and {"seconds": s, "nanoseconds": n} mappings
    (also the underscored "_seconds" variant). Raises ValueError otherwise.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc_aware(value)
    if isinstance(value, date):
        raise ValueError(f"date {value!r} is not an instant")
    if isinstance(value, bool):
        raise ValueError("boolean is not an instant")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=dt_timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp string")
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return to_utc_aware(parsed)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"unrecognized timestamp mapping: {value!r}")
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=dt_timezone.utc)
    raise ValueError(f"unrecognized timestamp value: {value!r}")


def to_local(dt: datetime, tz_name: Optional[str]) -> datetime:
    """Convert an instant to wall-clock time in tz_name (aware)."""
    return to_utc_aware(dt).astimezone(get_zoneinfo(tz_name))


def local_to_utc(local_dt: datetime, tz_name: Optional[str]) -> datetime:
    """
    Interpret a naive wall-clock datetime in tz_name and return the UTC instant.
    Raises ZoneInfoNotFoundError when tz_name cannot be resolved.
    """
    zone = get_zoneinfo(tz_name)
    return local_dt.replace(tzinfo=zone).astimezone(dt_timezone.utc)
