"""
projection_engine.py
---------------------
Annual spend projection per biller, plus a portfolio total.

Groups by lower-cased trimmed company name rather than provider_id, so a
biller keeps its history when its provider identity is re-resolved.

Two different averages are used on purpose:
    - monthly_avg uses the trailing-3 amounts (recent normal).
    - trend compares the two halves of the FULL history.
"""

import math
import logging
from typing import List, Sequence

import numpy as np
import pandas as pd

from config.config_loader import get_projection_config
from core.deviation_analyzer import DeviationAnalyzer
from core.models import AnnualProjection, Bill, ProjectionSummary
from core.utils import round_int, round_money

logger = logging.getLogger(__name__)


class ProjectionEngine:
    """
    Usage:
        engine = ProjectionEngine()
        summary = engine.compute(bills)
        summary.total_annual
    """

    def __init__(self, deviation_analyzer: DeviationAnalyzer | None = None):
        self.config = get_projection_config()
        self.multipliers = self.config["multipliers"]
        self.trend_threshold = self.config["trend_threshold_percent"]
        self.deviation_analyzer = deviation_analyzer or DeviationAnalyzer()

    def compute(self, bills: Sequence[Bill]) -> ProjectionSummary:
        if not bills:
            return ProjectionSummary(per_biller=[], total_annual=0.0)

        df = pd.DataFrame({
            "position": range(len(bills)),
            "name_key": [b.company_name.lower().strip() for b in bills],
            "due_date": pd.to_datetime([b.due_date for b in bills]),
        })

        projections: List[AnnualProjection] = []
        for _, group in df.groupby("name_key", sort=False):
            ordered = group.sort_values("due_date", kind="mergesort")
            projections.append(self._project([bills[i] for i in ordered["position"]]))

        # Python's sort is stable: equal estimates keep first-seen order.
        projections.sort(key=lambda p: p.annual_estimate, reverse=True)
        total = round_money(sum(p.annual_estimate for p in projections))

        logger.debug(f"Projections computed for {len(projections)} billers. Total annual: {total}.")
        return ProjectionSummary(per_biller=projections, total_annual=total)

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _project(self, ordered: List[Bill]) -> AnnualProjection:
        """Projection for one biller's bills, oldest first."""
        amounts = [b.total_amount for b in ordered]
        latest = ordered[-1]

        monthly_avg = self.deviation_analyzer.trailing_average(amounts)
        multiplier = self._annual_multiplier(latest)
        trend, trend_percent = self._trend(amounts)

        return AnnualProjection(
            biller_name=latest.company_name,
            category=latest.category,
            monthly_avg=round_money(monthly_avg),
            annual_estimate=round_money(monthly_avg * multiplier),
            bill_count=len(ordered),
            trend=trend,
            trend_percent=round_int(trend_percent),
        )

    def _annual_multiplier(self, latest: Bill) -> int:
        """Billing cycle takes precedence over detected recurrence."""
        if latest.billing_cycle == "biweekly":
            return self.multipliers["biweekly"]
        if latest.billing_cycle == "annual":
            return self.multipliers["annual"]
        if latest.recurring_frequency == "quarterly":
            return self.multipliers["quarterly"]
        if latest.recurring_frequency == "yearly":
            return self.multipliers["yearly"]
        return self.multipliers["default"]

    def _trend(self, amounts: List[float]) -> tuple[str, float]:
        if len(amounts) < 2:
            return ("stable", 0.0)

        split = math.ceil(len(amounts) / 2)
        first_avg = float(np.mean(amounts[:split]))
        second_avg = float(np.mean(amounts[split:]))
        trend_percent = ((second_avg - first_avg) / first_avg) * 100 if first_avg > 0 else 0.0

        if trend_percent > self.trend_threshold:
            return ("rising", trend_percent)
        if trend_percent < -self.trend_threshold:
            return ("falling", trend_percent)
        return ("stable", trend_percent)


def compute_projections(bills: Sequence[Bill]) -> ProjectionSummary:
    """Shortcut: ProjectionEngine().compute(bills)."""
    return ProjectionEngine().compute(bills)
