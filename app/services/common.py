"""Common helper functions for the service layer.

This module provides reusable utilities for:
- Timezone normalisation of stored timestamps
- Monetary rounding
- Random identifiers for orders and vouchers
"""

from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on round-trip, so naive values read back from the
    database are treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round monetary value to 2 decimal places.

    Args:
        value: Monetary value to round

    Returns:
        Decimal rounded to 2 decimal places
    """
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def random_digits(length: int) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def generate_reference(prefix: str, length: int = 14) -> str:
    """Generate an externally visible order reference, e.g. ``ORD_7K2M...``."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(length))
    return f"{prefix}_{suffix}"
