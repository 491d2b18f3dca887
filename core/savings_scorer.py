"""
savings_scorer.py
------------------
Single 0-100 "savings score" over a user's bills, with the factors that
moved it.

Starts from a base score and applies five independent, additive
adjustments (spikes, recurring coverage, payment record, overdue bills,
amount variability). Each adjustment that fires contributes exactly one
factor. The result is clamped to [0, 100] and mapped to a label band.
"""

from datetime import date
from typing import List, Sequence

import numpy as np
import pandas as pd

from config.config_loader import get_savings_score_config
from core.models import Bill, SavingsFactor, SavingsScore
from core.utils import round_int


class SavingsScorer:
    """
    Usage:
        scorer = SavingsScorer()
        result = scorer.score(bills, as_of=date.today())
    """

    def __init__(self):
        self.config = get_savings_score_config()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def score(self, bills: Sequence[Bill], as_of: date | None = None) -> SavingsScore:
        """
        Args:
            bills: All of the user's bills.
            as_of: Date used to decide which unpaid bills are overdue.
                Defaults to today.
        """
        c = self.config
        if not bills:
            return SavingsScore(
                score=c["empty_score"],
                label=self._label(c["empty_score"]),
                factors=[SavingsFactor("No bills", "neutral", "Add bills to get a personalized score.")],
            )

        as_of = as_of or date.today()
        df = pd.DataFrame({
            "name_key": [b.company_name.lower().strip() for b in bills],
            "amount": [float(b.total_amount) for b in bills],
            "status": [b.status for b in bills],
            "is_recurring": [bool(b.is_recurring) for b in bills],
            "due_date": [b.due_date for b in bills],
        })

        score = c["base_score"]
        factors: List[SavingsFactor] = []

        for adjust in (self._spikes, self._recurring, self._payments, self._overdue, self._variability):
            delta, factor = adjust(df, as_of)
            score += delta
            if factor is not None:
                factors.append(factor)

        score = int(max(0, min(100, score)))
        return SavingsScore(score=score, label=self._label(score), factors=factors)

    # -------------------------------------------------------------------------
    # INTERNAL: ADJUSTMENTS
    # Each returns (score delta, factor or None).
    # -------------------------------------------------------------------------

    def _spikes(self, df: pd.DataFrame, as_of: date):
        c = self.config
        spikes = self.count_spikes(df)

        if spikes == 0:
            return c["no_spikes_bonus"], SavingsFactor(
                "Stable spending", "positive", "No unusual bill spikes detected.")
        if spikes <= c["minor_spike_max"]:
            plural = "s" if spikes > 1 else ""
            return -c["minor_spike_penalty"], SavingsFactor(
                "Minor spikes", "negative", f"{spikes} bill amount spike{plural} detected.")
        return -c["frequent_spike_penalty"], SavingsFactor(
            "Frequent spikes", "negative", f"{spikes} bill spikes detected. Review your plans.")

    def count_spikes(self, df: pd.DataFrame) -> int:
        """
        Bills deviating more than spike_threshold from their biller's mean,
        counted over billers with at least two bills.
        """
        sizes = df.groupby("name_key")["amount"].transform("size")
        means = df.groupby("name_key")["amount"].transform("mean")
        eligible = sizes >= 2
        deviates = (df["amount"] - means).abs() > means * self.config["spike_threshold"]
        return int((eligible & deviates).sum())

    def _recurring(self, df: pd.DataFrame, as_of: date):
        c = self.config
        recurring = int(df["is_recurring"].sum())
        pct = recurring / len(df) * 100
        if pct >= c["recurring_coverage_percent"]:
            return c["recurring_bonus"], SavingsFactor(
                "Well-tracked recurring", "positive",
                f"{recurring} of {len(df)} bills are recurring and tracked.")
        return 0, None

    def _payments(self, df: pd.DataFrame, as_of: date):
        c = self.config
        paid_pct = (df["status"] == "paid").sum() / len(df) * 100
        shown = round_int(paid_pct)

        if paid_pct >= c["paid_good_percent"]:
            return c["paid_bonus"], SavingsFactor(
                "Great payment record", "positive", f"{shown}% of bills are paid on time.")
        if paid_pct >= c["paid_moderate_percent"]:
            return 0, SavingsFactor(
                "Moderate payment record", "neutral", f"{shown}% of bills are paid.")
        return -c["unpaid_penalty"], SavingsFactor(
            "Unpaid bills", "negative",
            f"Only {shown}% of bills are paid. Prioritize overdue bills.")

    def _overdue(self, df: pd.DataFrame, as_of: date):
        c = self.config
        unpaid = df[df["status"] != "paid"]
        overdue = int(sum(1 for d in unpaid["due_date"] if d is not None and d < as_of))

        if overdue > 0:
            plural = "s" if overdue > 1 else ""
            return -c["overdue_penalty_each"] * overdue, SavingsFactor(
                "Overdue bills", "negative",
                f"{overdue} overdue bill{plural}. Pay these first to avoid late fees.")
        if len(unpaid) > 0:
            return c["no_overdue_bonus"], SavingsFactor(
                "No overdue bills", "positive", "All unpaid bills are still within their due dates.")
        return 0, None

    def _variability(self, df: pd.DataFrame, as_of: date):
        c = self.config
        amounts = df["amount"].to_numpy()
        mean = float(np.mean(amounts))
        # Population standard deviation (ddof=0).
        cv = float(np.std(amounts)) / mean * 100 if mean > 0 else 0.0

        if cv < c["cv_predictable_below"]:
            return c["cv_adjustment"], SavingsFactor(
                "Predictable bills", "positive", "Your bill amounts are consistent and predictable.")
        if cv > c["cv_variable_above"]:
            return -c["cv_adjustment"], SavingsFactor(
                "Variable bills", "negative", "Large variation in bill amounts. Consider fixed-rate plans.")
        return 0, None

    def _label(self, score: int) -> str:
        for label, floor in self.config["label_bands"].items():
            if score >= floor:
                return label
        return "Needs Attention"


def compute_savings_score(bills: Sequence[Bill], as_of: date | None = None) -> SavingsScore:
    """Shortcut: SavingsScorer().score(bills, as_of)."""
    return SavingsScorer().score(bills, as_of=as_of)
