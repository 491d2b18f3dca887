"""
extraction.py
--------------
Post-processing of the OCR/LLM extraction response.

The extraction call itself is an external collaborator. This module turns
its raw text reply into a sanitized BillExtraction: parse the JSON, match
the vendor against the provider registry, clip free-text fields, and apply
the validator's corrected amount and date.
"""

import json
import logging
import math
import re
from datetime import date
from typing import Any, Mapping, Optional

from config.config_loader import get_extraction_config
from core.extraction_validator import validate_extraction
from core.models import BillExtraction, ValidationResult
from core.provider_matcher import fuzzy_match_provider
from core.utils import round_half_up

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*")
_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_model_response(text: str) -> Optional[dict]:
    """
    Parses the model's JSON reply. Tolerates markdown code fences and
    leading/trailing prose around a single JSON object.

    Returns:
        The parsed dict, or None if no JSON object can be recovered.
    """
    if not text:
        return None

    cleaned = _FENCE.sub("", text).strip()
    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    match = _OBJECT.search(text)
    if match:
        try:
            parsed = json.loads(match.group(0))
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            logger.warning("Extraction response contained an unparseable JSON block.")
    return None


def sanitize_string(value: Any, max_length: int = 1000) -> str:
    """Non-strings become ''. Truncates and strips angle brackets."""
    if not isinstance(value, str):
        return ""
    return value[:max_length].replace("<", "").replace(">", "")


def overall_confidence(raw: Mapping[str, Any]) -> float:
    """Weighted blend of per-field confidences; missing fields count as 0.5."""
    config = get_extraction_config()
    weights = config["confidence_weights"]
    default = config["default_field_confidence"]
    vendor = _confidence(raw, "confidenceVendor", default)
    amount = _confidence(raw, "confidenceAmount", default)
    due = _confidence(raw, "confidenceDueDate", default)
    blended = vendor * weights["vendor"] + amount * weights["amount"] + due * weights["due_date"]
    return round_half_up(blended, 2)


def _confidence(raw: Mapping[str, Any], key: str, default: float) -> float:
    """Missing, non-numeric or non-finite confidences fall back to default."""
    try:
        value = float(raw.get(key))
    except (TypeError, ValueError, OverflowError):
        return default
    return value if math.isfinite(value) else default


def build_extraction_result(
    raw: Mapping[str, Any], today: date | None = None
) -> tuple[BillExtraction, ValidationResult]:
    """
    Builds the sanitized extraction from the model's raw field set.

    Args:
        raw: {vendor, amount, dueDate, billingPeriod, accountNumber, currency,
            category, confidenceVendor, confidenceAmount, confidenceDueDate}
        today: Reference date for due-date range warnings.

    Returns:
        Tuple of (BillExtraction with corrections applied, ValidationResult).
    """
    config = get_extraction_config()
    default = config["default_field_confidence"]
    vendor = sanitize_string(raw.get("vendor"), config["max_vendor_length"])
    match = fuzzy_match_provider(vendor)

    validation = validate_extraction(raw, today=today)

    extraction = BillExtraction(
        vendor=vendor,
        amount=validation.corrected_amount,
        due_date=validation.corrected_date,
        billing_period=sanitize_string(raw.get("billingPeriod"), config["max_billing_period_length"]),
        account_number=sanitize_string(raw.get("accountNumber"), config["max_account_number_length"]),
        currency=raw.get("currency") or config["default_currency"],
        category=(match.category if match else None) or raw.get("category") or None,
        subcategory=match.types[0] if match and match.types else None,
        confidence={
            "overall": overall_confidence(raw),
            "vendor": _confidence(raw, "confidenceVendor", default),
            "amount": _confidence(raw, "confidenceAmount", default),
            "due_date": _confidence(raw, "confidenceDueDate", default),
        },
        matched_provider_id=match.provider_id if match else None,
        matched_provider_name=match.provider_name if match else None,
        is_custom_provider=match is None,
    )

    if validation.errors:
        logger.info(f"Extraction has blocking errors: {validation.errors}")
    return extraction, validation
