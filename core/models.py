"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Bill: The record fetched from the bill store. Read-mostly; the engine only
  ever returns modified copies.

- RecurrenceDetection, SpikeInfo, AnnualProjection, SavingsScore,
  DuplicateCheckResult, ValidationResult: Derived, ephemeral results. Always
  re-derivable from the bill list; safe to cache, never authoritative.

- RateLimitResult, GuardDecision: Abuse-guard outcomes.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Mapping, Optional

from core.utils import coerce_date, is_missing


# Record keys accepted by Bill.from_record, snake_case -> camelCase alias.
_FIELD_ALIASES = {
    "id": "id",
    "user_id": "userId",
    "company_name": "companyName",
    "provider_id": "providerId",
    "provider_name": "providerName",
    "account_number": "accountNumber",
    "total_amount": "totalAmount",
    "paid_amount": "paidAmount",
    "status": "status",
    "due_date": "dueDate",
    "category": "category",
    "subcategory": "subcategory",
    "billing_cycle": "billingCycle",
    "is_recurring": "isRecurring",
    "recurring_frequency": "recurringFrequency",
    "recurring_confidence": "recurringConfidence",
    "avg_recurring_amount": "avgRecurringAmount",
    "amount_deviation_percent": "amountDeviationPercent",
    "amount_deviation_flag": "amountDeviationFlag",
}


@dataclass
class Bill:
    """
    A single bill as held by the bill store.

    provider_id is either a registry slug, a synthesized custom_<slug>, or
    "unknown". It is the preferred "same biller" key.
    """

    # Identity
    id: Optional[str]
    company_name: str
    provider_id: str = "unknown"

    # Amounts & status
    total_amount: float = 0.0
    paid_amount: float = 0.0
    status: str = "unpaid"               # "unpaid" | "partial" | "paid"
    due_date: Optional[date] = None

    # Classification
    category: Optional[str] = None
    subcategory: Optional[str] = None
    billing_cycle: Optional[str] = None  # "monthly" | "biweekly" | "annual" | "one-time"
    provider_name: Optional[str] = None
    account_number: Optional[str] = None
    user_id: Optional[str] = None

    # Recurrence fields. Only the recurrence writer sets these, except a
    # user-confirmed override which pins recurring_confidence to 1.0.
    is_recurring: Optional[bool] = None
    recurring_frequency: Optional[str] = None   # "monthly" | "quarterly" | "yearly"
    recurring_confidence: Optional[float] = None
    avg_recurring_amount: Optional[float] = None
    amount_deviation_percent: Optional[float] = None
    amount_deviation_flag: Optional[bool] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Bill":
        """
        Builds a Bill from a document-store or CSV row. Accepts snake_case or
        camelCase keys; missing values (None / NaN) become None.

        Raises:
            ValueError: If the due date is present but is not a date.
        """
        values: dict[str, Any] = {}
        for attr, alias in _FIELD_ALIASES.items():
            raw = record.get(attr, record.get(alias))
            values[attr] = None if is_missing(raw) else raw

        if values["due_date"] is not None:
            try:
                values["due_date"] = coerce_date(values["due_date"])
            except ValueError as exc:
                raise ValueError(f"Bill {values['id']!r}: {exc}") from exc

        bill_id = values["id"]
        return cls(
            id=str(bill_id) if bill_id is not None else None,
            company_name=str(values["company_name"] or ""),
            provider_id=str(values["provider_id"] or "unknown"),
            total_amount=float(values["total_amount"] or 0.0),
            paid_amount=float(values["paid_amount"] or 0.0),
            status=str(values["status"] or "unpaid"),
            due_date=values["due_date"],
            category=values["category"],
            subcategory=values["subcategory"],
            billing_cycle=values["billing_cycle"],
            provider_name=values["provider_name"],
            account_number=values["account_number"],
            user_id=values["user_id"],
            is_recurring=_as_bool(values["is_recurring"]),
            recurring_frequency=values["recurring_frequency"],
            recurring_confidence=_as_float(values["recurring_confidence"]),
            avg_recurring_amount=_as_float(values["avg_recurring_amount"]),
            amount_deviation_percent=_as_float(values["amount_deviation_percent"]),
            amount_deviation_flag=_as_bool(values["amount_deviation_flag"]),
        )


def _as_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


@dataclass(frozen=True)
class ProviderEntry:
    """A static registry entry. Never mutated at runtime."""
    name: str
    category: str
    types: tuple[str, ...] = ()


@dataclass
class RecurrenceDetection:
    """Per-bill recurrence output of RecurrenceDetector."""
    is_recurring: bool
    frequency: Optional[str]             # "monthly" | "quarterly" | "yearly" | None
    confidence: float                    # 0.0 – 1.0
    avg_amount: float                    # Trailing-3 mean of the group
    deviation_percent: Optional[float]   # vs avg_amount, 1 decimal. None for singletons.
    deviation_flag: bool                 # Only ever True on the group's latest bill.


@dataclass
class SpikeInfo:
    """Always-on spike signal for display, independent of recurrence gating."""
    type: Optional[str]                  # "increase" | "decrease" | None
    percent: int
    compared_to: str                     # "previous" | "average"


@dataclass
class AnnualProjection:
    biller_name: str
    category: Optional[str]
    monthly_avg: float
    annual_estimate: float
    bill_count: int
    trend: str                           # "rising" | "falling" | "stable"
    trend_percent: int


@dataclass
class ProjectionSummary:
    per_biller: list[AnnualProjection] = field(default_factory=list)
    total_annual: float = 0.0


@dataclass
class SavingsFactor:
    label: str
    impact: str                          # "positive" | "negative" | "neutral"
    detail: str


@dataclass
class SavingsScore:
    score: int                           # 0 – 100
    label: str                           # "Optimized" | "Good" | "Moderate" | "Needs Attention"
    factors: list[SavingsFactor] = field(default_factory=list)


@dataclass
class DuplicateCandidate:
    """A freshly extracted or entered bill, before acceptance."""
    vendor: str
    amount: Optional[float]
    due_date: Optional[date]


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool
    match_score: float                   # 0.0 – 1.0
    matched_bill_id: Optional[str] = None
    matched_bill_name: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ValidationResult:
    """
    Outcome of sanitizing raw extraction output. errors block acceptance;
    warnings are surfaced but never block.
    """
    is_valid: bool
    corrected_amount: Optional[float]
    corrected_date: Optional[str]        # "YYYY-MM-DD"
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ProviderMatch:
    provider_id: str
    provider_name: str
    category: str
    types: tuple[str, ...]
    score: float


@dataclass
class ResolvedProvider:
    provider_id: str
    provider_name: str
    is_custom: bool


@dataclass
class BillExtraction:
    """Sanitized extraction output, ready to prefill a new bill."""
    vendor: str
    amount: Optional[float]
    due_date: Optional[str]
    billing_period: str
    account_number: str
    currency: str
    category: Optional[str]
    subcategory: Optional[str]
    confidence: dict[str, float]
    matched_provider_id: Optional[str] = None
    matched_provider_name: Optional[str] = None
    is_custom_provider: bool = True


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    resets_in_ms: int


@dataclass
class GuardDecision:
    """
    Abuse-guard verdict for an upload. reason is one of
    "rate_limited_user" | "rate_limited_ip" | "duplicate_file" when rejected.
    """
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    resets_in_ms: Optional[int] = None
