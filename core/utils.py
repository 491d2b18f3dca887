"""
Shared numeric and date helpers for the engine.
"""

import math
from datetime import date, datetime
from typing import Any

import pandas as pd


def round_half_up(value: float, ndigits: int = 2) -> float:
    """
    Round half up (ties go towards positive infinity), the way bill amounts
    are rounded everywhere in the product.
    """
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def round_money(value: float) -> float:
    """Rounds a currency amount to 2 decimals."""
    return round_half_up(value, 2)


def round_int(value: float) -> int:
    return int(math.floor(value + 0.5))


def to_base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def is_missing(value: Any) -> bool:
    """True for None and pandas/numpy missing markers (NaN, NaT)."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def coerce_date(value: Any) -> date:
    """
    Converts a date-like value (date, datetime, Timestamp, ISO string) to a
    calendar date.

    Raises:
        ValueError: If the value cannot be interpreted as a date at all.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if is_missing(value):
        raise ValueError("Missing date")
    try:
        parsed = pd.to_datetime(value)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Not a date: {value!r}") from exc
    if pd.isna(parsed):
        raise ValueError(f"Not a date: {value!r}")
    return parsed.date()
