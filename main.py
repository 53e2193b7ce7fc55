"""
main.py
--------
Entry point for the recurring transaction detection engine.

Reads a transactions CSV (and optionally the currently persisted patterns),
runs the batch pipeline, and writes the reconciled patterns to the outputs/
folder.

Usage (from the project root):
    python main.py --input transactions.csv

    # With optional arguments:
    python main.py --input transactions.csv --persisted patterns.csv
    python main.py --input transactions.csv --as-of 2024-06-30 --account-id 42
    python main.py --input transactions.csv --show-reminders
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

from config.config_loader import get_detection_config, reset_config
from core.models import DetectionContext
from core.reminders import find_due_reminders
from pipeline import RecurringDetectionPipeline, patterns_from_dataframe, patterns_to_dataframe


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recurring Transaction Detection Engine: detect subscriptions, bills and payroll."
    )
    parser.add_argument(
        "--input", type=str, required=True,
        help="Path to input transactions CSV (merchant_group_id, date, amount, transaction_type, ...)."
    )
    parser.add_argument(
        "--persisted", type=str, default=None,
        help="Path to a CSV of previously persisted patterns to reconcile against."
    )
    parser.add_argument(
        "--as-of", type=date.fromisoformat, default=None,
        help="Reference date (YYYY-MM-DD) for recency and liveness. Defaults to today."
    )
    parser.add_argument(
        "--account-id", type=str, default=None,
        help="Budget account the transactions belong to."
    )
    parser.add_argument(
        "--lookback", type=int, default=None,
        help="Lookback window in days. Defaults to the full history."
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to an alternative config.yaml."
    )
    parser.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )
    parser.add_argument(
        "--show-reminders", action="store_true", default=False,
        help="Also list reminders due on the as-of date."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv: list[str] | None = None):
    args = parse_args(argv)

    # --- Resolve paths ---
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    # --- Load transactions ---
    logger.info(f"Loading transactions from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    transactions = pd.read_csv(args.input)
    logger.info(f"Loaded {len(transactions):,} transactions.")

    persisted = []
    if args.persisted:
        if not os.path.exists(args.persisted):
            logger.error(f"Persisted patterns file not found: {args.persisted}")
            sys.exit(1)
        persisted = patterns_from_dataframe(pd.read_csv(args.persisted))
        logger.info(f"Loaded {len(persisted):,} persisted patterns.")

    # --- Run pipeline ---
    if args.config:
        reset_config()
    config = get_detection_config(args.config)
    context = DetectionContext(as_of=args.as_of or date.today(), account_id=args.account_id)

    pipeline = RecurringDetectionPipeline(config=config, lookback_days=args.lookback)
    result = pipeline.run(transactions, context, persisted=persisted)

    for group_id, error in result.failures.items():
        logger.warning(f"Merchant group {group_id} failed: {error}")

    # --- Output: Patterns ---
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    patterns_path = os.path.join(output_dir, f"recurring_patterns_{timestamp}.csv")
    patterns_to_dataframe(result.patterns).to_csv(patterns_path, index=False)
    logger.info(f"Patterns saved to: {patterns_path}")

    # --- Print summary ---
    _print_summary(result.patterns)

    # --- Optional: Reminders ---
    if args.show_reminders:
        reminders = find_due_reminders(result.patterns, context.as_of, config.reminder_horizon_days)
        if not reminders:
            logger.info("No reminders due.")
        for reminder in reminders:
            p = reminder.pattern
            when = "today" if reminder.is_due_today else f"in {reminder.days_until_due} days"
            logger.info(
                f"Reminder: {p.merchant_name} {p.transaction_type} of ${p.expected_amount:,.2f} "
                f"due {when} ({reminder.due_date})."
            )


def _print_summary(patterns):
    """Prints a clean summary table to the console."""
    if not patterns:
        print("\n  No recurring patterns detected.\n")
        return

    print("\n" + "=" * 80)
    print("  RECURRING PATTERN SUMMARY")
    print("=" * 80)

    print(f"\n  {'Merchant':30s} {'Type':8s} {'Frequency':10s} {'Amount':>10s} {'Conf':>6s}  Active")
    print("  " + "-" * 76)
    for p in patterns:
        print(
            f"  {p.merchant_name[:30]:30s} {p.transaction_type:8s} {p.frequency:10s} "
            f"{p.expected_amount:>10,.2f} {p.confidence_score:>6.2f}  {'yes' if p.is_active else 'no'}"
        )

    active = sum(1 for p in patterns if p.is_active)
    confirmed = sum(1 for p in patterns if p.is_confirmed)
    print(f"\n  Patterns: {len(patterns):,}  (active: {active:,}, confirmed: {confirmed:,})")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
