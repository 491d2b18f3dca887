"""
duplicate_detector.py
----------------------
Flags a freshly extracted or entered bill that probably already exists.

Each existing bill is scored on three independent signals:
    - provider   0.40  provider_id equality when both sides are known,
                       else case-insensitive exact-or-substring name match
    - amount     0.35  within 0.01, else 0.20 within 2% relative difference
    - due date   0.25  same day, else 0.10 within 3 days

Ordering contract: check() returns the FIRST existing bill, in the order the
caller supplies, that reaches the threshold. Callers must pass bills in a
stable documented order (the bill store returns them most recent first).
best_match() is the order-independent variant.
"""

from datetime import date
from typing import Optional, Sequence

from config.config_loader import get_duplicate_config
from core.models import Bill, DuplicateCandidate, DuplicateCheckResult
from core.utils import coerce_date, round_half_up


class DuplicateDetector:
    """
    Usage:
        detector = DuplicateDetector()
        result = detector.check(candidate, existing_bills, matched_provider_id)
    """

    def __init__(self):
        self.config = get_duplicate_config()
        self.threshold = self.config["match_threshold"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def check(
        self,
        candidate: DuplicateCandidate,
        existing_bills: Sequence[Bill],
        matched_provider_id: Optional[str] = None,
    ) -> DuplicateCheckResult:
        """First-match-wins duplicate check."""
        for bill in existing_bills:
            score, reasons = self.score(candidate, bill, matched_provider_id)
            if score >= self.threshold:
                return self._duplicate(bill, score, reasons)
        return DuplicateCheckResult(is_duplicate=False, match_score=0.0)

    def best_match(
        self,
        candidate: DuplicateCandidate,
        existing_bills: Sequence[Bill],
        matched_provider_id: Optional[str] = None,
    ) -> DuplicateCheckResult:
        """Highest-scoring bill over the threshold. Earliest wins ties."""
        best = None
        for bill in existing_bills:
            score, reasons = self.score(candidate, bill, matched_provider_id)
            if score >= self.threshold and (best is None or score > best[1]):
                best = (bill, score, reasons)
        if best is None:
            return DuplicateCheckResult(is_duplicate=False, match_score=0.0)
        return self._duplicate(*best)

    def score(
        self, candidate: DuplicateCandidate, bill: Bill, matched_provider_id: Optional[str] = None
    ) -> tuple[float, list[str]]:
        """Similarity score in [0, 1] with the signals that matched."""
        c = self.config
        score = 0.0
        reasons: list[str] = []

        if self._same_provider(candidate, bill, matched_provider_id):
            score += c["provider_weight"]
            reasons.append("same provider")

        if candidate.amount is not None and bill.total_amount is not None:
            diff = abs(candidate.amount - bill.total_amount)
            largest = max(candidate.amount, bill.total_amount)
            if diff < c["exact_amount_tolerance"]:
                score += c["exact_amount_weight"]
                reasons.append("same amount")
            elif largest > 0 and diff / largest < c["similar_amount_ratio"]:
                score += c["similar_amount_weight"]
                reasons.append("similar amount")

        if candidate.due_date is not None and bill.due_date is not None:
            days = abs((coerce_date(candidate.due_date) - coerce_date(bill.due_date)).days)
            if days < 1:
                score += c["same_day_weight"]
                reasons.append("same due date")
            elif days <= c["near_day_window"]:
                score += c["near_day_weight"]
                reasons.append("similar due date")

        return round_half_up(min(score, 1.0), 2), reasons

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _same_provider(
        self, candidate: DuplicateCandidate, bill: Bill, matched_provider_id: Optional[str]
    ) -> bool:
        unknown = self.config["unknown_provider_id"]
        if self._is_known(matched_provider_id, unknown) and self._is_known(bill.provider_id, unknown):
            return matched_provider_id == bill.provider_id

        vendor = (candidate.vendor or "").lower().strip()
        name = (bill.company_name or "").lower().strip()
        if not vendor or not name:
            return False
        return vendor == name or name in vendor or vendor in name

    @staticmethod
    def _is_known(provider_id: Optional[str], unknown: str) -> bool:
        return bool(provider_id) and provider_id != unknown

    @staticmethod
    def _duplicate(bill: Bill, score: float, reasons: list[str]) -> DuplicateCheckResult:
        return DuplicateCheckResult(
            is_duplicate=True,
            match_score=score,
            matched_bill_id=bill.id,
            matched_bill_name=bill.company_name,
            reason=f"Possible duplicate: {', '.join(reasons)}",
        )


def candidate_from_fields(vendor: str, amount: Optional[float], due_date) -> DuplicateCandidate:
    """Builds a candidate from raw fields; due_date may be an ISO string."""
    parsed: Optional[date] = None
    if due_date:
        parsed = coerce_date(due_date)
    return DuplicateCandidate(vendor=vendor or "", amount=amount, due_date=parsed)


def check_for_duplicate(
    candidate: DuplicateCandidate,
    existing_bills: Sequence[Bill],
    matched_provider_id: Optional[str] = None,
) -> DuplicateCheckResult:
    """Shortcut: DuplicateDetector().check(...). First match wins."""
    return DuplicateDetector().check(candidate, existing_bills, matched_provider_id)


def find_best_duplicate(
    candidate: DuplicateCandidate,
    existing_bills: Sequence[Bill],
    matched_provider_id: Optional[str] = None,
) -> DuplicateCheckResult:
    """Shortcut: DuplicateDetector().best_match(...). Order-independent."""
    return DuplicateDetector().best_match(candidate, existing_bills, matched_provider_id)
