"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. PatternBuilder      →  draft RecurringPatterns per merchant group
    2. PatternReconciler   →  merges drafts into persisted patterns
    3. Serialization       →  patterns to / from a flat DataFrame

This is the single entry point for running the engine over a batch of
transactions. Merchant groups are independent: a group whose input violates
the contract is logged and reported in BatchResult.failures, and every other
group is still processed.

Usage:
    from pipeline import RecurringDetectionPipeline

    pipeline = RecurringDetectionPipeline()
    result = pipeline.run(transactions_df, DetectionContext(as_of=date.today()),
                          persisted=existing_patterns)
"""

import dataclasses
import logging
import math
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Iterable, List, Mapping, Sequence

import pandas as pd

from config.config_loader import get_detection_config
from config.detection_config import DetectionConfig
from core.models import (
    BatchResult, DetectionContext, RecurringPattern, Transaction, to_date,
)
from core.pattern_builder import PatternBuilder
from reconciliation.pattern_reconciler import PatternReconciler

logger = logging.getLogger(__name__)


REQUIRED_COLUMNS = ["merchant_group_id", "date", "amount", "transaction_type"]

PATTERN_COLUMNS = [f.name for f in dataclasses.fields(RecurringPattern)]

_DATE_FIELDS = ("last_occurrence_date", "next_expected_date", "first_occurrence_date")
_BOOL_FIELDS = ("is_amount_variable", "is_active", "is_confirmed", "reminder_enabled")
_INT_FIELDS = ("interval", "occurrence_count", "reminder_days_before")
_OPTIONAL_INT_FIELDS = ("day_of_month", "day_of_week", "week_of_month")
_FLOAT_FIELDS = ("expected_amount", "amount_variance", "confidence_score")


class RecurringDetectionPipeline:
    """
    End-to-end recurring detection over many merchant groups.

    Orchestrates build → reconcile → output without exposing internal
    objects to callers.
    """

    def __init__(self, config: DetectionConfig | None = None, lookback_days: int | None = None):
        """
        Args:
            config: Engine configuration. Defaults to config.yaml.
            lookback_days: Ignore transactions older than as_of - lookback_days.
                None analyses the full history.
        """
        self.config = config or get_detection_config()
        self.lookback_days = lookback_days
        self.builder = PatternBuilder(self.config)
        self.reconciler = PatternReconciler(self.config)

        logger.info(
            f"Pipeline initialized. "
            f"Exclusion rules: {self.builder.exclusions.rule_names}. "
            f"Lookback: {lookback_days or 'full history'} days."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(
        self,
        transactions: pd.DataFrame | Sequence[Mapping[str, Any]],
        context: DetectionContext,
        persisted: Iterable[RecurringPattern] | None = None,
    ) -> BatchResult:
        """
        Detect and reconcile recurring patterns for every merchant group.

        Args:
            transactions: DataFrame or list of mappings with columns
                merchant_group_id, date, amount, transaction_type and optionally
                merchant_name, transaction_id, category_id, account_id.
            context: Reference date and account for this run.
            persisted: Previously stored patterns, any merchant group.

        Returns:
            BatchResult with the patterns to persist and per-group failures.
        """
        context = _normalize_context(context)
        df = self._prepare(transactions)
        logger.info(
            f"Pipeline starting. Input: {len(df):,} transactions, "
            f"{df['merchant_group_id'].nunique():,} merchant groups, as of {context.as_of}."
        )

        persisted_by_group = defaultdict(list)
        for record in persisted or []:
            persisted_by_group[record.merchant_group_id].append(record)

        result = BatchResult()

        # --- Stage 1 + 2: build and reconcile each merchant group ---
        for group_id, group in df.groupby("merchant_group_id", sort=False):
            try:
                drafts = self._build_group(group, context)
                reconciled = self.reconciler.reconcile(
                    drafts, persisted_by_group.pop(group_id, []), context.as_of
                )
            except ValueError as e:
                logger.warning(f"Merchant group {group_id} skipped: {e}")
                result.failures[group_id] = str(e)
                continue

            result.draft_count += len(drafts)
            self._accumulate(result, reconciled)

        # --- Persisted groups with no new transactions still get a liveness pass ---
        for group_id, records in persisted_by_group.items():
            try:
                reconciled = self.reconciler.reconcile([], records, context.as_of)
            except ValueError as e:
                logger.warning(f"Merchant group {group_id} skipped: {e}")
                result.failures[group_id] = str(e)
                continue
            self._accumulate(result, reconciled)

        result.patterns.sort(
            key=lambda p: (str(p.merchant_group_id), p.transaction_type, p.expected_amount)
        )

        logger.info(
            f"Pipeline complete. Drafts: {result.draft_count:,}. "
            f"Created: {result.created:,}, updated: {result.updated:,}, "
            f"retained: {result.retained:,}, failed groups: {len(result.failures):,}."
        )
        return result

    def run_detection_only(
        self,
        transactions: pd.DataFrame | Sequence[Mapping[str, Any]],
        context: DetectionContext,
    ) -> List[RecurringPattern]:
        """
        Run only the Pattern Builder. Useful for debugging and tuning.
        Unlike run(), contract violations are raised, not collected.
        """
        context = _normalize_context(context)
        df = self._prepare(transactions)
        drafts: List[RecurringPattern] = []
        for _, group in df.groupby("merchant_group_id", sort=False):
            drafts.extend(self._build_group(group, context))
        return drafts

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _prepare(self, transactions) -> pd.DataFrame:
        """Validates columns and drops rows that belong to no merchant group."""
        if isinstance(transactions, pd.DataFrame):
            df = transactions.copy()
        else:
            df = pd.DataFrame(list(transactions))

        if df.empty and not set(REQUIRED_COLUMNS).issubset(df.columns):
            df = pd.DataFrame(columns=REQUIRED_COLUMNS)

        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        ungrouped = df["merchant_group_id"].isna()
        if ungrouped.any():
            logger.warning(
                f"Dropping {int(ungrouped.sum()):,} transactions without a merchant group."
            )
            df = df[~ungrouped]

        return df.reset_index(drop=True)

    def _build_group(self, group: pd.DataFrame, context: DetectionContext) -> List[RecurringPattern]:
        txns = [Transaction.from_record(row) for row in group.to_dict("records")]

        if self.lookback_days is not None:
            cutoff = context.as_of - timedelta(days=self.lookback_days)
            txns = [t for t in txns if t.date >= cutoff]

        return self.builder.build(txns, context)

    @staticmethod
    def _accumulate(result: BatchResult, reconciled) -> None:
        result.patterns.extend(reconciled.patterns)
        result.created += reconciled.created
        result.updated += reconciled.updated
        result.retained += reconciled.retained
        result.warnings.extend(reconciled.warnings)


# =============================================================================
# SERIALIZATION
# =============================================================================

def patterns_to_dataframe(patterns: Iterable[RecurringPattern]) -> pd.DataFrame:
    """
    Flattens patterns into one row each. Dates become ISO strings and
    transaction_ids a "|"-joined string.
    """
    rows = []
    for p in patterns:
        row = dataclasses.asdict(p)
        for name in _DATE_FIELDS:
            row[name] = row[name].isoformat() if row[name] is not None else None
        row["transaction_ids"] = "|".join(str(x) for x in p.transaction_ids)
        rows.append(row)

    if not rows:
        return pd.DataFrame(columns=PATTERN_COLUMNS)
    return pd.DataFrame(rows, columns=PATTERN_COLUMNS)


def patterns_from_dataframe(df: pd.DataFrame) -> List[RecurringPattern]:
    """
    Rebuilds persisted patterns from a DataFrame shaped like
    patterns_to_dataframe() output (e.g. read back from CSV).

    Raises:
        ValueError: missing required columns or invalid values.
    """
    required = [
        f.name for f in dataclasses.fields(RecurringPattern)
        if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
    ]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    patterns = []
    for row in df.to_dict("records"):
        values = {k: (None if _is_null(v) else v) for k, v in row.items() if k in PATTERN_COLUMNS}

        for name in _DATE_FIELDS:
            if values.get(name) is not None:
                values[name] = to_date(values[name], name)
        for name in _BOOL_FIELDS:
            if name in values:
                values[name] = _as_bool(values[name])
        for name in _INT_FIELDS + _OPTIONAL_INT_FIELDS:
            if values.get(name) is not None:
                values[name] = int(values[name])
        for name in _FLOAT_FIELDS:
            if values.get(name) is not None:
                values[name] = float(values[name])

        ids = values.get("transaction_ids")
        values["transaction_ids"] = [x for x in str(ids).split("|") if x] if ids is not None else []

        # Blank user-owned cells fall back to the dataclass defaults
        for name in ("is_confirmed", "reminder_enabled", "reminder_days_before"):
            if values.get(name) is None:
                values.pop(name, None)

        patterns.append(RecurringPattern(**values))
    return patterns


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    return bool(value)


def _normalize_context(context: DetectionContext) -> DetectionContext:
    """Coerces as_of (datetime, Timestamp, ISO string) to a plain date."""
    if type(context.as_of) is date:
        return context
    return dataclasses.replace(context, as_of=to_date(context.as_of, "as_of"))
