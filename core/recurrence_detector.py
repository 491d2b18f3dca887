"""
recurrence_detector.py
-----------------------
Recurring bill detection engine.

Answers one question per bill: "Is this biller charging this user on a
regular cadence, and how sure are we?"

Output: a RecurrenceDetection per bill id. These are derived values: they
are recomputed from the full bill list on every pass and only cached on the
bill records by the caller.

Design decisions:
    - Grouping key is provider_id when known, else the lower-cased trimmed
      company name. provider_id survives vendor renames; the name fallback
      covers bills entered before provider resolution existed.
    - Cadence is classified from the MEAN day-gap, not per gap. A group
      whose mean falls outside every bucket is not recurring, even if some
      individual gaps match.
    - Confidence = gap consistency x history sufficiency. Five or more bills
      max out the history factor.
    - The average amount is the trailing-3 mean, so recent amounts dominate.
    - All thresholds and buckets are read from config.yaml.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from config.config_loader import get_recurrence_config
from core.deviation_analyzer import DeviationAnalyzer
from core.models import Bill, RecurrenceDetection
from core.utils import round_half_up, round_money

logger = logging.getLogger(__name__)


class RecurrenceDetector:
    """
    Detects recurring bill patterns in a single user's bill list.

    Usage:
        detector = RecurrenceDetector()
        detections = detector.detect(bills)     # {bill_id: RecurrenceDetection}
        annotated = detector.apply(bills)       # copies with recurrence fields merged
    """

    def __init__(self, deviation_analyzer: DeviationAnalyzer | None = None):
        self.config = get_recurrence_config()
        self.min_group_size = self.config["min_group_size"]
        self.unknown_provider_id = self.config["unknown_provider_id"]
        self.frequency_buckets = self.config["frequency_buckets"]
        self.full_history_samples = self.config["full_history_samples"]
        self.min_confidence = self.config["min_confidence"]
        self.user_confirmed_confidence = self.config["user_confirmed_confidence"]
        self.deviation_analyzer = deviation_analyzer or DeviationAnalyzer()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect(self, bills: Sequence[Bill]) -> Dict[str, RecurrenceDetection]:
        """
        Run recurrence detection over all of one user's bills.

        Args:
            bills: Bill records. Every bill must carry a due date.

        Returns:
            Dict of bill id -> RecurrenceDetection. Bills without an id are
            analysed (they still count towards their group) but not reported.
        """
        df = self._prepare(bills)
        results: Dict[str, RecurrenceDetection] = {}

        if df.empty:
            return results

        for _, group in df.groupby("group_key", sort=False):
            if len(group) < self.min_group_size:
                for row in group.itertuples():
                    if row.bill_id is not None:
                        results[row.bill_id] = RecurrenceDetection(
                            is_recurring=False,
                            frequency=None,
                            confidence=0.0,
                            avg_amount=round_money(row.amount),
                            deviation_percent=None,
                            deviation_flag=False,
                        )
                continue

            results.update(self._detect_group(group))

        logger.debug(f"Recurrence detection complete. Bills: {len(bills)}, groups: {df['group_key'].nunique()}.")
        return results

    def apply(self, bills: Sequence[Bill]) -> List[Bill]:
        """
        Merges fresh detections into copies of the bills. Pure: no I/O.

        Merge rules:
            - recurring_confidence == 1.0 is a user confirmation. It keeps
              is_recurring, its own frequency and confidence; only the
              amount fields refresh.
            - amount_deviation_flag explicitly False is a user dismissal and
              stays False. Bills with no persisted flag (new bills) take the
              detected flag.
        """
        detections = self.detect(bills)
        merged: List[Bill] = []

        for bill in bills:
            det = detections.get(bill.id) if bill.id is not None else None
            if det is None:
                merged.append(bill)
                continue

            confirmed = bill.recurring_confidence == self.user_confirmed_confidence
            if confirmed:
                is_recurring = True
                frequency = bill.recurring_frequency or det.frequency
                confidence = self.user_confirmed_confidence
            else:
                is_recurring = det.is_recurring
                frequency = det.frequency
                confidence = det.confidence

            deviation_flag = False if bill.amount_deviation_flag is False else det.deviation_flag

            merged.append(replace(
                bill,
                is_recurring=is_recurring,
                recurring_frequency=frequency,
                recurring_confidence=confidence,
                avg_recurring_amount=det.avg_amount,
                amount_deviation_percent=det.deviation_percent,
                amount_deviation_flag=deviation_flag,
            ))

        return merged

    def check_for_recurring_provider(
        self, bills: Sequence[Bill], company_name: str, provider_id: Optional[str] = None
    ) -> dict:
        """
        Looks for existing bills from the same biller when a new bill is being
        added, and suggests a cadence for it.

        Returns:
            {"found": bool, "count": int, "frequency": str | None}. The
            suggested frequency defaults to monthly when the history is too
            short or the gaps are not quarterly/yearly.
        """
        if provider_id and provider_id != self.unknown_provider_id:
            key = provider_id
        else:
            key = company_name.lower().strip()

        matches = [b for b in bills if self._group_key(b) == key]
        if not matches:
            return {"found": False, "count": 0, "frequency": None}

        frequency = "monthly"
        gaps = self._positive_gaps(sorted(b.due_date for b in matches))
        if len(gaps) > 0:
            mean_gap = float(np.mean(gaps))
            for name in ("quarterly", "yearly"):
                bucket = self.frequency_buckets[name]
                if bucket["min_gap_days"] <= mean_gap <= bucket["max_gap_days"]:
                    frequency = name
                    break

        return {"found": True, "count": len(matches), "frequency": frequency}

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(self, bills: Sequence[Bill]) -> pd.DataFrame:
        """
        Validates input and builds the working frame, one row per bill in
        caller order.
        """
        missing = [b.id for b in bills if b.due_date is None]
        if missing:
            raise ValueError(f"Bills missing due dates: {missing}")

        df = pd.DataFrame({
            "bill_id": [b.id for b in bills],
            "group_key": [self._group_key(b) for b in bills],
            "due_date": pd.to_datetime([b.due_date for b in bills]),
            "amount": [float(b.total_amount) for b in bills],
        })
        return df

    def _group_key(self, bill: Bill) -> str:
        if bill.provider_id and bill.provider_id != self.unknown_provider_id:
            return bill.provider_id
        return bill.company_name.lower().strip()

    # -------------------------------------------------------------------------
    # INTERNAL: GROUP ANALYSIS
    # -------------------------------------------------------------------------

    def _detect_group(self, group: pd.DataFrame) -> Dict[str, RecurrenceDetection]:
        """Builds detections for one same-biller group of 2+ bills."""
        # mergesort is stable: same-day bills keep caller order, so the
        # "most recent" bill is deterministic.
        ordered = group.sort_values("due_date", kind="mergesort")

        gaps = self._positive_gaps(ordered["due_date"].dt.date.tolist())
        frequency, matching = self._classify_frequency(gaps)
        confidence = self._compute_confidence(len(gaps), matching, frequency, len(ordered))
        is_recurring = confidence >= self.min_confidence and frequency is not None

        amounts = ordered["amount"].tolist()
        recent_avg = self.deviation_analyzer.trailing_average(amounts)

        results: Dict[str, RecurrenceDetection] = {}
        last_position = len(ordered) - 1
        for position, row in enumerate(ordered.itertuples()):
            percent, flag = self.deviation_analyzer.deviation(row.amount, recent_avg, is_recurring)
            if row.bill_id is None:
                continue
            results[row.bill_id] = RecurrenceDetection(
                is_recurring=is_recurring,
                frequency=frequency,
                confidence=round_half_up(confidence, 2),
                avg_amount=round_money(recent_avg),
                deviation_percent=round_half_up(percent, 1),
                deviation_flag=flag if position == last_position else False,
            )
        return results

    @staticmethod
    def _positive_gaps(dates: list) -> np.ndarray:
        """Consecutive day gaps, dropping same-day and out-of-order pairs."""
        if len(dates) < 2:
            return np.array([], dtype=float)
        gaps = np.array([(later - earlier).days for earlier, later in zip(dates, dates[1:])], dtype=float)
        return gaps[gaps > 0]

    def _classify_frequency(self, gaps: np.ndarray) -> tuple[Optional[str], int]:
        """
        Places the mean gap into the first matching bucket.

        Returns:
            Tuple of (frequency or None, number of individual gaps inside
            that bucket).
        """
        if len(gaps) == 0:
            return (None, 0)

        mean_gap = float(np.mean(gaps))
        for name, bucket in self.frequency_buckets.items():
            low, high = bucket["min_gap_days"], bucket["max_gap_days"]
            if low <= mean_gap <= high:
                matching = int(np.sum((gaps >= low) & (gaps <= high)))
                return (name, matching)

        return (None, 0)

    def _compute_confidence(
        self, gap_count: int, matching: int, frequency: Optional[str], group_size: int
    ) -> float:
        """
        (matching gaps / all gaps) x min(group_size, 5) / 5, in [0, 1].
        """
        if gap_count == 0 or frequency is None:
            return 0.0
        consistency = matching / gap_count
        history = min(group_size, self.full_history_samples) / self.full_history_samples
        return min(consistency * history, 1.0)


# -----------------------------------------------------------------------------
# RECURRENCE WRITER HELPERS
# -----------------------------------------------------------------------------

def persisted_fields(detection: RecurrenceDetection) -> dict:
    """
    Update payload for the bill store's recurrence writer. Frequency and
    deviation percent are omitted when there is nothing to write.
    """
    fields = {
        "isRecurring": detection.is_recurring,
        "recurringConfidence": detection.confidence,
        "avgRecurringAmount": detection.avg_amount,
        "amountDeviationFlag": detection.deviation_flag,
    }
    if detection.frequency:
        fields["recurringFrequency"] = detection.frequency
    if detection.deviation_percent is not None:
        fields["amountDeviationPercent"] = detection.deviation_percent
    return fields


def confirm_recurring(bill: Bill, frequency: str) -> Bill:
    """User confirmation: pins the bill as recurring at full confidence."""
    if frequency not in get_recurrence_config()["frequency_buckets"]:
        raise ValueError(f"Unknown recurring frequency: {frequency!r}")
    return replace(bill, is_recurring=True, recurring_frequency=frequency, recurring_confidence=1.0)


def dismiss_amount_alert(bill: Bill) -> Bill:
    """User dismissal of the deviation flag. Sticky against re-detection."""
    return replace(bill, amount_deviation_flag=False)


def detect_recurrence(bills: Sequence[Bill]) -> Dict[str, RecurrenceDetection]:
    """Shortcut: RecurrenceDetector().detect(bills)."""
    return RecurrenceDetector().detect(bills)


def apply_recurrence(bills: Sequence[Bill]) -> List[Bill]:
    """Shortcut: RecurrenceDetector().apply(bills)."""
    return RecurrenceDetector().apply(bills)
