"""
deviation_analyzer.py
----------------------
Amount deviation and spike signals for recurring bills.

Two signals:

    1. deviation(): the gated flag. Only meaningful for a group that the
       RecurrenceDetector classified as recurring, and only surfaced on the
       group's most recent bill. Trips on a relative OR an absolute
       threshold, so small bills still flag on a few dollars of change.

    2. detect_spike(): the always-on display signal. Compares a bill against
       the trailing average of its *other* same-name bills, no recurrence
       gate.

Both use the trailing-3 average as the "recent normal" baseline.
"""

from typing import Sequence

import numpy as np

from config.config_loader import get_deviation_config, get_recurrence_config
from core.models import Bill, SpikeInfo
from core.utils import round_int


class DeviationAnalyzer:
    """
    Usage:
        analyzer = DeviationAnalyzer()
        percent, flag = analyzer.deviation(amount, recent_avg, is_recurring=True)
        spike = analyzer.detect_spike(bill, all_bills)
    """

    def __init__(self):
        self.config = get_deviation_config()
        self.relative_threshold = self.config["relative_threshold"]
        self.absolute_threshold = self.config["absolute_threshold"]
        self.spike_threshold = self.config["spike_threshold_percent"]
        self.trailing_window = get_recurrence_config()["trailing_window"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def trailing_average(self, amounts: Sequence[float]) -> float:
        """Mean of the last (up to) trailing_window amounts, oldest first."""
        recent = list(amounts)[-self.trailing_window:]
        if not recent:
            return 0.0
        return float(np.mean(recent))

    def deviation(self, amount: float, recent_avg: float, is_recurring: bool) -> tuple[float, bool]:
        """
        Returns (deviation_percent, deviation_flag) for one amount against
        its group's recent average. Percent is unrounded.
        """
        diff = abs(amount - recent_avg)
        percent = ((amount - recent_avg) / recent_avg) * 100 if recent_avg > 0 else 0.0
        flag = is_recurring and (
            diff > recent_avg * self.relative_threshold or diff > self.absolute_threshold
        )
        return percent, bool(flag)

    def detect_spike(self, bill: Bill, all_bills: Sequence[Bill]) -> SpikeInfo:
        """
        Compares a bill to the trailing average of other bills with the same
        (case-insensitive) company name.
        """
        name = bill.company_name.lower()
        peers = [
            b for b in all_bills
            if b is not bill
            and b.due_date is not None
            and b.company_name.lower() == name
            and (bill.id is None or b.id != bill.id)
        ]
        # Stable sort keeps caller order for same-day bills.
        peers.sort(key=lambda b: b.due_date)

        if not peers:
            return SpikeInfo(type=None, percent=0, compared_to="previous")

        avg = self.trailing_average([b.total_amount for b in peers])
        if avg == 0:
            return SpikeInfo(type=None, percent=0, compared_to="average")

        pct_change = ((bill.total_amount - avg) / avg) * 100
        if abs(pct_change) >= self.spike_threshold:
            return SpikeInfo(
                type="increase" if pct_change > 0 else "decrease",
                percent=round_int(abs(pct_change)),
                compared_to="average" if len(peers) >= self.trailing_window else "previous",
            )

        return SpikeInfo(type=None, percent=0, compared_to="average")


def detect_spike(bill: Bill, all_bills: Sequence[Bill]) -> SpikeInfo:
    """Shortcut: DeviationAnalyzer().detect_spike(bill, all_bills)."""
    return DeviationAnalyzer().detect_spike(bill, all_bills)
