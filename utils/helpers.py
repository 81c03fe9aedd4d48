"""
Shared helpers: identifiers, naive-UTC clock and money precision.

All persisted datetimes are naive UTC so that comparisons behave the same on
PostgreSQL ``timestamp`` columns and on SQLite.
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Union

logger = logging.getLogger(__name__)

MONEY_PRECISION = Decimal("0.01")


def utc_now() -> datetime:
    """Current UTC time as a naive datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert a timezone-aware datetime to naive UTC.

    Naive inputs are assumed to already be UTC and are returned unchanged.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier such as ``RF_20261018_9f2c4a1b7d3e``"""
    stamp = utc_now().strftime("%Y%m%d")
    return f"{prefix.upper()}_{stamp}_{secrets.token_hex(6)}"


def to_decimal(value: Union[str, int, float, Decimal, None], field: str = "amount") -> Decimal:
    """Convert a numeric value to Decimal through its string form"""
    if isinstance(value, Decimal):
        return value
    if value is None:
        raise ValueError(f"{field} is required")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{field} is not a valid number: {value!r}") from e


def quantize_money(amount: Union[str, int, float, Decimal]) -> Decimal:
    """Quantize to two decimal places with ROUND_HALF_UP"""
    return to_decimal(amount).quantize(MONEY_PRECISION, rounding=ROUND_HALF_UP)
