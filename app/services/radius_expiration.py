"""Codec for the FreeRADIUS ``Expiration`` attribute.

The value is written as ``"DD Mon YYYY HH:MM:SS"`` in the server's local
timezone, which is what rlm_expiration parses. Month names come from a fixed
table so the output does not depend on the process locale.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_MONTH_INDEX = {name: index for index, name in enumerate(MONTHS, start=1)}
_EXPIRATION_RE = re.compile(r"^(\d{2}) ([A-Z][a-z]{2}) (\d{4}) (\d{2}):(\d{2}):(\d{2})$")


def encode(value: datetime) -> str:
    """Render ``value`` as a RADIUS expiration string in local time.

    Naive datetimes are taken to already be local time.
    """
    local = value.astimezone()
    return (
        f"{local.day:02d} {MONTHS[local.month - 1]} {local.year:04d} "
        f"{local.hour:02d}:{local.minute:02d}:{local.second:02d}"
    )


def decode(value: str | None) -> datetime | None:
    """Parse an expiration string into an aware UTC datetime.

    Falls back to ISO-8601 when the fixed layout does not match and returns
    ``None`` when neither parses.
    """
    if not value:
        return None
    text = value.strip()
    match = _EXPIRATION_RE.match(text)
    if match:
        day, month_name, year, hour, minute, second = match.groups()
        month = _MONTH_INDEX.get(month_name)
        if month is not None:
            try:
                local = datetime(
                    int(year), month, int(day), int(hour), int(minute), int(second)
                )
            except ValueError:
                return None
            return local.astimezone().astimezone(timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(timezone.utc)
