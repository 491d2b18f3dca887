"""
main.py
--------
Entry point for the Bill Intelligence Engine.

Reads one user's bills from CSV, runs the analysis pipeline, and writes the
per-bill analysis and per-biller projections to the outputs/ folder.

Usage (from the project root):
    python main.py --input path/to/bills.csv

    # With optional arguments:
    python main.py --input bills.csv --as-of 2026-10-19
    python main.py --input bills.csv --output-dir /tmp/out
"""

import sys
import os
import argparse
import logging
import pandas as pd
from datetime import date, datetime

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.models import Bill
from pipeline import BillIntelligencePipeline, BillInsights


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")

REQUIRED_COLUMNS = ["id", "company_name", "total_amount", "due_date"]


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bill Intelligence Engine: recurrence, projections and savings score for a bill list."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to a bills CSV (snake_case or camelCase columns)."
    )
    parser.add_argument(
        "--as-of", type=date.fromisoformat, default=None,
        help="Reference date (YYYY-MM-DD) for overdue checks. Defaults to today."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    return parser.parse_args(argv)


def load_bills(path: str) -> list[Bill]:
    """
    Reads a bills CSV into Bill records.

    Raises:
        ValueError: If required columns are missing, or a due date is blank
            or unreadable.
    """
    frame = pd.read_csv(path, dtype={"id": str})
    columns = set(frame.columns)
    camel = {"id": "id", "company_name": "companyName", "total_amount": "totalAmount", "due_date": "dueDate"}
    missing = [c for c in REQUIRED_COLUMNS if c not in columns and camel[c] not in columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    bills = [Bill.from_record(row) for row in frame.to_dict(orient="records")]
    missing_dates = [b.id for b in bills if b.due_date is None]
    if missing_dates:
        raise ValueError(f"Bills missing due dates: {missing_dates}")
    return bills


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = parse_args(argv)

    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    logger.info(f"Loading bills from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    try:
        bills = load_bills(args.input)
    except ValueError as exc:
        logger.error(f"Could not load bills: {exc}")
        sys.exit(1)
    logger.info(f"Loaded {len(bills):,} bills.")

    pipeline = BillIntelligencePipeline()
    try:
        insights = pipeline.analyze(bills, as_of=args.as_of)
    except ValueError as exc:
        logger.error(f"Analysis failed: {exc}")
        sys.exit(1)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    bills_path = os.path.join(output_dir, f"bill_analysis_{timestamp}.csv")
    pipeline.insights_to_frame(insights).to_csv(bills_path, index=False)
    logger.info(f"Bill analysis saved to: {bills_path}")

    projections_path = os.path.join(output_dir, f"projections_{timestamp}.csv")
    pipeline.projections_to_frame(insights.projections).to_csv(projections_path, index=False)
    logger.info(f"Projections saved to: {projections_path}")

    _print_summary(insights)


def _print_summary(insights: BillInsights):
    """Prints a clean summary to the console."""
    if not insights.bills:
        print("\n  No bills to analyze.\n")
        return

    print("\n" + "=" * 80)
    print("  BILL INTELLIGENCE SUMMARY")
    print("=" * 80)

    print("\n  Annual Projections:")
    print("  " + "-" * 60)
    for p in insights.projections.per_biller:
        print(f"    {p.biller_name:30s}  {p.annual_estimate:>12,.2f}  ({p.trend}, {p.trend_percent:+d}%)")
    print(f"    {'TOTAL':30s}  {insights.projections.total_annual:>12,.2f}")

    flagged = [b for b in insights.bills if b.amount_deviation_flag]
    print(f"\n  Recurring bills: {sum(1 for b in insights.bills if b.is_recurring):,}")
    print(f"  Amount alerts:   {len(flagged):,}")
    for b in flagged:
        print(f"    {b.company_name}: {b.total_amount:,.2f} vs avg {b.avg_recurring_amount:,.2f} "
              f"({b.amount_deviation_percent:+.1f}%)")

    score = insights.savings
    print(f"\n  Savings score: {score.score} ({score.label})")
    print("  " + "-" * 60)
    for f in score.factors:
        print(f"    [{f.impact:8s}] {f.label}: {f.detail}")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
