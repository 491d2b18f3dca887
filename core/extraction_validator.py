"""
extraction_validator.py
------------------------
Sanitizes and bounds-checks the amount and due date returned by the
OCR/LLM extraction call.

Only two things are hard errors: a non-finite amount and a date that cannot
be read as a calendar date. Everything else (negative, tiny or huge
amounts, reformatted or far-off dates) is corrected or kept and surfaced as
a warning.
"""

import math
import re
from datetime import date
from typing import Any, Mapping, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from config.config_loader import get_extraction_config
from core.models import ValidationResult
from core.utils import round_money

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DAY_MONTH_YEAR = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$")


def validate_extraction(raw: Mapping[str, Any], today: date | None = None) -> ValidationResult:
    """
    Args:
        raw: Extraction output with "amount" and "dueDate" (or "due_date").
        today: Reference date for the past/future range checks.

    Returns:
        ValidationResult with corrected values. is_valid is False when any
        hard error was recorded.
    """
    config = get_extraction_config()
    today = today or date.today()
    warnings: list[str] = []
    errors: list[str] = []

    amount = _validate_amount(raw.get("amount"), config, warnings, errors)
    due_date = raw.get("dueDate", raw.get("due_date"))
    corrected_date = _validate_date(due_date, config, today, warnings, errors)

    return ValidationResult(
        is_valid=not errors,
        corrected_amount=amount,
        corrected_date=corrected_date,
        warnings=warnings,
        errors=errors,
    )


def _validate_amount(value: Any, config: dict, warnings: list, errors: list) -> Optional[float]:
    if value is None:
        return None

    try:
        amount = float(value)
    except (TypeError, ValueError, OverflowError):
        amount = math.nan

    if not math.isfinite(amount):
        errors.append("Extracted amount is not a valid number")
        return None

    if amount < 0:
        warnings.append("Negative amount detected, converted to positive")
        amount = abs(amount)
    elif amount > config["max_amount"]:
        warnings.append(f"Amount over ${config['max_amount']:,} - please verify")
    elif amount < config["min_amount"]:
        warnings.append(f"Amount is less than ${config['min_amount']} - please verify")

    return round_money(amount)


def _validate_date(
    value: Any, config: dict, today: date, warnings: list, errors: list
) -> Optional[str]:
    if not value:
        return None

    text = str(value).strip()
    if not ISO_DATE.match(text):
        parsed = try_parse_date(text)
        if parsed is None:
            errors.append("Could not parse the extracted date")
            return None
        warnings.append(f"Date format corrected to {parsed}")
        text = parsed

    try:
        due = date.fromisoformat(text)
    except ValueError:
        errors.append("Extracted date is invalid")
        return None

    if due < today - relativedelta(years=config["max_years_past"]):
        warnings.append(f"Due date is more than {config['max_years_past']} year in the past - please verify")
    if due > today + relativedelta(years=config["max_years_future"]):
        warnings.append(f"Due date is more than {config['max_years_future']} years in the future - please verify")

    return text


def try_parse_date(text: str) -> Optional[str]:
    """
    Reformats a non-ISO date string as YYYY-MM-DD.

    Order of attempts:
        1. D/M/Y (also '-' or '.' separated), when the month slot is 1-12.
        2. The same digits as M/D/Y, when the first slot is 1-12.
        3. The digits literally as M/D/Y. The result may not be a real
           date; the caller rejects it.
        4. Free-text parsing ("March 15, 2026").

    Returns:
        ISO string, or None if nothing could be read.
    """
    match = DAY_MONTH_YEAR.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), match.group(3)
        if 1 <= second <= 12 and 1 <= first <= 31:
            return f"{year}-{second:02d}-{first:02d}"
        if 1 <= first <= 12 and 1 <= second <= 31:
            return f"{year}-{first:02d}-{second:02d}"
        return f"{year}-{first:02d}-{second:02d}"

    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    return parsed.strftime("%Y-%m-%d")
