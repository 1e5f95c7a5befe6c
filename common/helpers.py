"""
Storefront Core - Shared Helpers
=================================
Pure utility functions with NO module dependencies
(the unique-code generators only receive a session and a model column).
"""

import secrets
import string
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from config.settings import MONEY_QUANTUM, ORDER_NUMBER_PREFIX


def now_utc() -> datetime:
    """Returns current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value) -> Decimal:
    """Round to 2 decimal places, half away from zero."""
    return to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


# ==========================================
# Request context
# ==========================================

@dataclass
class RequestContext:
    """Caller-supplied request metadata stored alongside history rows."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def as_meta(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ==========================================
# Code Generators
# ==========================================

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_code(length: int = 6) -> str:
    """Random uppercase alphanumeric code."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def generate_order_number(when: Optional[datetime] = None) -> str:
    """Human-readable order number: ORD-YYYYMMDD-XXXXXX."""
    when = when or now_utc()
    return f"{ORDER_NUMBER_PREFIX}-{when.strftime('%Y%m%d')}-{generate_code(6)}"


def generate_unique_value(db, column, factory, max_retries: int = 10) -> str:
    """Call factory until it yields a value not present in `column` (checks DB for collision)."""
    for _ in range(max_retries):
        value = factory()
        exists = db.query(column).filter(column == value).first()
        if not exists:
            return value
    raise RuntimeError(f"Failed to generate unique value for {column} after retries")
