"""
pipeline.py
------------
Main orchestration layer. Wires together two flows:

    Analysis (run whenever a user's bill list changes):
        1. RecurrenceDetector  ->  recurrence + deviation fields per bill
        2. DeviationAnalyzer   ->  always-on spike signal per bill
        3. ProjectionEngine    ->  per-biller annual estimates
        4. SavingsScorer       ->  0-100 score with factors

    Intake (run for each new upload / extracted bill):
        1. AbuseGuards         ->  user rate limit, IP rate limit, content hash
        2. Extraction          ->  parse, validate, match provider
        3. DuplicateDetector   ->  first-match duplicate check

The engine never calls back into storage: callers fetch the bill list and
persist whatever they choose from the returned results.

Usage:
    from pipeline import BillIntelligencePipeline

    pipeline = BillIntelligencePipeline()
    insights = pipeline.analyze(bills)
    frame = pipeline.insights_to_frame(insights)
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from config.config_loader import load_config
from core.deviation_analyzer import DeviationAnalyzer
from core.duplicate_detector import DuplicateDetector, candidate_from_fields
from core.extraction import build_extraction_result
from core.models import (
    Bill, BillExtraction, DuplicateCheckResult, GuardDecision,
    ProjectionSummary, SavingsScore, SpikeInfo, ValidationResult,
)
from core.projection_engine import ProjectionEngine
from core.recurrence_detector import RecurrenceDetector
from core.savings_scorer import SavingsScorer
from guards.abuse_guards import GuardStore, HashDeduplicator, RateLimiter, content_hash
from monitoring.activity_monitor import ActivityMonitor

logger = logging.getLogger(__name__)


BILL_FRAME_COLUMNS = [
    "bill_id", "company_name", "provider_id", "due_date", "total_amount", "status",
    "is_recurring", "recurring_frequency", "recurring_confidence",
    "avg_recurring_amount", "amount_deviation_percent", "amount_deviation_flag",
    "spike_type", "spike_percent",
]


@dataclass
class BillInsights:
    """Everything the analysis flow derives from one bill list."""
    bills: List[Bill] = field(default_factory=list)
    spikes: Dict[str, SpikeInfo] = field(default_factory=dict)
    projections: ProjectionSummary = field(default_factory=ProjectionSummary)
    savings: Optional[SavingsScore] = None


@dataclass
class ExtractionOutcome:
    """Result of the intake flow for one extracted bill."""
    extraction: BillExtraction
    validation: ValidationResult
    duplicate: DuplicateCheckResult

    @property
    def accepted(self) -> bool:
        """Hard validation errors and probable duplicates block acceptance."""
        return self.validation.is_valid and not self.duplicate.is_duplicate


class BillIntelligencePipeline:
    """
    End-to-end bill intelligence pipeline.

    One instance per process. The guard store is the only shared mutable
    state; pass one in to share limits across pipelines or to isolate tests.
    """

    def __init__(self, guard_store: GuardStore | None = None, clock=None, monitor: ActivityMonitor | None = None):
        self.config = load_config()
        self.guard_store = guard_store or GuardStore()

        self.deviation_analyzer = DeviationAnalyzer()
        self.recurrence_detector = RecurrenceDetector(self.deviation_analyzer)
        self.projection_engine = ProjectionEngine(self.deviation_analyzer)
        self.savings_scorer = SavingsScorer()
        self.duplicate_detector = DuplicateDetector()

        guard_kwargs = {"clock": clock} if clock is not None else {}
        self.rate_limiter = RateLimiter(self.guard_store, **guard_kwargs)
        self.hash_deduplicator = HashDeduplicator(self.guard_store, **guard_kwargs)
        self.monitor = monitor or ActivityMonitor(**guard_kwargs)

        logger.info("Pipeline initialized.")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: ANALYSIS
    # -------------------------------------------------------------------------

    def analyze(self, bills: Sequence[Bill], as_of: date | None = None) -> BillInsights:
        """
        Run the full analysis flow over one user's bills.

        Args:
            bills: The user's bills, in store order.
            as_of: Reference date for overdue checks. Defaults to today.
        """
        logger.info(f"Analysis starting. Input: {len(bills):,} bills.")

        # --- Stage 1: Recurrence + gated deviation ---
        annotated = self.recurrence_detector.apply(bills)
        recurring = sum(1 for b in annotated if b.is_recurring)
        logger.info(f"Stage 1 complete. Recurring bills: {recurring:,}.")

        # --- Stage 2: Always-on spikes ---
        spikes = {
            b.id: self.deviation_analyzer.detect_spike(b, annotated)
            for b in annotated if b.id is not None
        }

        # --- Stage 3: Projections & score ---
        projections = self.projection_engine.compute(annotated)
        savings = self.savings_scorer.score(annotated, as_of=as_of)
        logger.info(
            f"Analysis complete. Billers: {len(projections.per_biller):,}. "
            f"Annual total: {projections.total_annual:,.2f}. Score: {savings.score} ({savings.label})."
        )

        return BillInsights(bills=annotated, spikes=spikes, projections=projections, savings=savings)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: INTAKE
    # -------------------------------------------------------------------------

    def admit_upload(self, user_id: str, ip_address: str | None, file_data: str) -> GuardDecision:
        """
        Abuse guards for one upload, in order: user limit, IP limit,
        duplicate content. Each accepted check consumes quota.
        """
        user_check = self.rate_limiter.check(user_id)
        if not user_check.allowed:
            hours = max(1, -(-user_check.resets_in_ms // (60 * 60 * 1000)))
            return GuardDecision(
                allowed=False,
                reason="rate_limited_user",
                message=f"Daily scan limit reached. Try again in {hours} hour{'s' if hours > 1 else ''}.",
                resets_in_ms=user_check.resets_in_ms,
            )

        ip_check = self.rate_limiter.check(self.rate_limiter.ip_key(ip_address or "unknown"))
        if not ip_check.allowed:
            return GuardDecision(
                allowed=False,
                reason="rate_limited_ip",
                message="Too many requests from this location. Please try again later.",
                resets_in_ms=ip_check.resets_in_ms,
            )

        if self.hash_deduplicator.check_and_record(user_id, content_hash(file_data)):
            logger.warning(f"Duplicate upload rejected for user {user_id[:8]}...")
            return GuardDecision(
                allowed=False,
                reason="duplicate_file",
                message="This file was already scanned recently.",
            )

        return GuardDecision(allowed=True)

    def process_extraction(
        self,
        raw: Mapping[str, Any],
        existing_bills: Sequence[Bill],
        today: date | None = None,
    ) -> ExtractionOutcome:
        """
        Validate -> match provider -> duplicate-check one extraction result.

        Args:
            raw: Field set returned by the extraction collaborator.
            existing_bills: The user's bills in store order. The first
                duplicate in this order is reported.
            today: Reference date for due-date range warnings.
        """
        extraction, validation = build_extraction_result(raw, today=today)

        if not validation.is_valid:
            self.monitor.track_failed_scan("validation_error")

        candidate = candidate_from_fields(extraction.vendor, extraction.amount, extraction.due_date)
        duplicate = self.duplicate_detector.check(candidate, existing_bills, extraction.matched_provider_id)

        if duplicate.is_duplicate:
            logger.info(f"Extraction matches existing bill {duplicate.matched_bill_id}: {duplicate.reason}.")

        return ExtractionOutcome(extraction=extraction, validation=validation, duplicate=duplicate)

    # -------------------------------------------------------------------------
    # OUTPUT SERIALIZATION
    # -------------------------------------------------------------------------

    def insights_to_frame(self, insights: BillInsights) -> pd.DataFrame:
        """
        Flattens per-bill analysis into a DataFrame, one row per bill,
        sorted by company then due date.
        """
        if not insights.bills:
            return pd.DataFrame(columns=BILL_FRAME_COLUMNS)

        rows = []
        for b in insights.bills:
            spike = insights.spikes.get(b.id) if b.id is not None else None
            rows.append({
                "bill_id": b.id,
                "company_name": b.company_name,
                "provider_id": b.provider_id,
                "due_date": b.due_date.isoformat() if b.due_date else None,
                "total_amount": b.total_amount,
                "status": b.status,
                "is_recurring": b.is_recurring,
                "recurring_frequency": b.recurring_frequency,
                "recurring_confidence": b.recurring_confidence,
                "avg_recurring_amount": b.avg_recurring_amount,
                "amount_deviation_percent": b.amount_deviation_percent,
                "amount_deviation_flag": b.amount_deviation_flag,
                "spike_type": spike.type if spike else None,
                "spike_percent": spike.percent if spike else 0,
            })

        df = pd.DataFrame(rows, columns=BILL_FRAME_COLUMNS)
        return df.sort_values(["company_name", "due_date"], kind="mergesort").reset_index(drop=True)

    @staticmethod
    def projections_to_frame(projections: ProjectionSummary) -> pd.DataFrame:
        """Per-biller projections, already sorted by annual estimate."""
        columns = ["biller_name", "category", "monthly_avg", "annual_estimate",
                   "bill_count", "trend", "trend_percent"]
        return pd.DataFrame([vars(p) for p in projections.per_biller], columns=columns)
