from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Make a naive datetime timezone-aware (UTC). Already-aware datetimes are converted to UTC.

    Upstream feeds mix offset-less ISO strings with ``Z``-suffixed ones. Quote
    timestamps are compared against each other during best-price tie-breaks,
    and Python refuses to compare naive with aware datetimes, so everything
    that enters a model goes through here first.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_utc(value: str | datetime) -> datetime:
    """Parse a date string or datetime into a tz-aware UTC datetime.

    Handles ISO 8601 strings (with or without Z/offset) and bare datetimes.
    ESPN emits minute precision (``2025-10-19T17:00Z``), which
    ``fromisoformat`` accepts once the ``Z`` is rewritten.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def try_parse_utc(value) -> datetime | None:
    """None-safe variant of parse_utc for optional payload fields.

    Numbers are read as Unix epoch seconds; anything else unparseable is None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, (str, datetime)):
        return None
    try:
        return parse_utc(value)
    except (TypeError, ValueError):
        return None
