"""Shared utilities for memquery."""

import json
from datetime import date, datetime, timezone
from typing import Any, Optional

# SQLite CURRENT_TIMESTAMP format (UTC). created_at columns use it, so date
# bounds must be rendered the same way to compare as text.
DB_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def to_db_timestamp(value: Any) -> str:
    """
    Normalize a timestamp-compatible value to the stored UTC text form.

    Accepts datetime (naive = UTC), date (midnight), epoch seconds, and ISO-8601
    strings (a trailing "Z" is allowed). Raises TypeError/ValueError otherwise.
    """
    if isinstance(value, bool):
        raise TypeError("booleans are not timestamps")

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text[-1:] in ("Z", "z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise TypeError(f"unsupported timestamp type: {type(value).__name__}")

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(DB_TIMESTAMP_FORMAT)


def load_metadata(raw: Optional[str]) -> Optional[dict]:
    """Decode a stored metadata column."""
    if not raw:
        return None
    return json.loads(raw)
