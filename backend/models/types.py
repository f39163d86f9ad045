"""Shared SQLAlchemy column types used across ORM models."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import String, TypeDecorator

# Fixed-point precision for every money / quantity column (scale 8).
DECIMAL_PLACES = Decimal("0.00000001")


def to_decimal(value: Any) -> Decimal:
    """Coerce str / int / float / Decimal into a Decimal without binary artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid decimal value: {value!r}") from exc


def quantize(value: Any) -> Decimal:
    return to_decimal(value).quantize(DECIMAL_PLACES)


class DecimalString(TypeDecorator):
    """Persist Decimal values as canonical fixed-point strings.

    SQLite has no native DECIMAL; storing text keeps all 8 decimal places
    exact on every backend and matches the string wire format of the API.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        return format(quantize(value), "f")

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return Decimal(value)
