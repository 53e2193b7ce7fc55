"""
pattern_builder.py
-------------------
Per-merchant-group orchestrator. Answers one question:

    "Which recurring obligations hide in this merchant's history?"

Output: zero or more draft RecurringPattern objects, one per qualifying
amount cluster. The drafts are then merged into persisted state by the
PatternReconciler.

Design decisions:
    - Income and expense never share a cluster; each type is clustered on
      its own.
    - Amount clustering runs before any cadence analysis. That is what splits
      two subscription tiers billed by the same merchant.
    - A gap far beyond the usual interval (a paused subscription) splits the
      history; only the most recent run with enough occurrences is scored.
    - A mean interval inside a bucket is not enough: the individual gaps must
      fit the cycle too (see RegularityConfig), or a coffee shop visited
      every few days would pass as weekly.
    - Exclusions (interest, internal transfers, ...) are matched on the
      merchant name and skip the whole group, however regular it looks.
    - as_of comes from the DetectionContext, never from the wall clock, so a
      rerun on unchanged input produces identical drafts.
    - All thresholds come from the injected DetectionConfig.
"""

import logging
from collections import Counter
from typing import List, Optional, Sequence

import numpy as np

from config.config_loader import get_detection_config
from config.detection_config import DetectionConfig
from core.amount_clustering import cluster_amounts
from core.exclusions import ExclusionMatcher
from core.frequency_classifier import (
    classify_frequency, compute_anchors, next_expected_date, regularity_failure,
)
from core.interval_statistics import compute_interval_statistics, segment_by_gap
from core.models import (
    TRANSACTION_TYPES, AmountCluster, DetectionContext, RecurringPattern, Transaction,
)
from scoring.confidence_scorer import ConfidenceScorer
from scoring.liveness import days_since, evaluate_liveness

logger = logging.getLogger(__name__)


class PatternBuilder:
    """
    Builds draft recurring patterns for one merchant group at a time.

    Usage:
        builder = PatternBuilder(config)
        drafts = builder.build(transactions, DetectionContext(as_of=date.today()))
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        exclusions: ExclusionMatcher | None = None,
    ):
        self.config = config or get_detection_config()
        self.exclusions = exclusions or ExclusionMatcher(self.config.exclusion_rules)
        self.scorer = ConfidenceScorer(self.config.confidence)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def build(
        self,
        transactions: Sequence[Transaction],
        context: DetectionContext,
        merchant_name: Optional[str] = None,
    ) -> List[RecurringPattern]:
        """
        Produce draft patterns for a single merchant group.

        Args:
            transactions: Every transaction of one merchant group.
            context: Reference date and account for this run.
            merchant_name: Display name. Defaults to the first transaction
                carrying one, then to the merchant group id.

        Returns:
            Drafts sorted by (transaction_type, expected_amount). Too little
            evidence is not an error: it simply yields no draft.

        Raises:
            ValueError: transactions from more than one merchant group.
        """
        if not transactions:
            return []

        group_ids = {t.merchant_group_id for t in transactions}
        if len(group_ids) > 1:
            raise ValueError(
                f"PatternBuilder.build expects one merchant group, got {len(group_ids)}"
            )
        merchant_group_id = next(iter(group_ids))

        if merchant_name is None:
            merchant_name = next(
                (t.merchant_name for t in transactions if t.merchant_name),
                str(merchant_group_id),
            )

        rule = self.exclusions.match(merchant_name)
        if rule is not None:
            logger.info(
                f"Merchant group {merchant_group_id} ('{merchant_name}') excluded by rule '{rule}'."
            )
            return []

        patterns: List[RecurringPattern] = []

        for transaction_type in TRANSACTION_TYPES:
            partition = [t for t in transactions if t.transaction_type == transaction_type]
            if len(partition) < self.config.min_occurrences:
                continue

            clusters = cluster_amounts(
                partition, self.config.amount_clustering, self.config.min_occurrences
            )
            for cluster in clusters:
                pattern = self._build_pattern(
                    merchant_group_id, merchant_name, transaction_type, cluster, context
                )
                if pattern is not None:
                    patterns.append(pattern)

        patterns.sort(key=lambda p: (p.transaction_type, p.expected_amount, p.last_occurrence_date))

        logger.debug(
            f"Merchant group {merchant_group_id}: {len(transactions)} transactions, "
            f"{len(patterns)} draft patterns."
        )
        return patterns

    # -------------------------------------------------------------------------
    # INTERNAL: PATTERN CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_pattern(
        self,
        merchant_group_id,
        merchant_name: str,
        transaction_type: str,
        cluster: AmountCluster,
        context: DetectionContext,
    ) -> RecurringPattern | None:
        """
        Builds a draft from one amount cluster.

        Returns None if the cluster is not periodic (all on one day), fails a
        regularity gate, or its confidence is below min_confidence.
        """
        cluster = self._latest_segment(merchant_group_id, cluster)
        if cluster is None:
            return None

        txns = cluster.transactions
        dates = [t.date for t in txns]

        # --- Cadence ---
        stats = compute_interval_statistics(dates)
        if stats.is_degenerate:
            logger.debug(
                f"Merchant group {merchant_group_id}: cluster at {cluster.median} "
                f"has zero mean interval, skipped."
            )
            return None

        classification = classify_frequency(stats.mean_interval_days, self.config.frequency)
        reason = regularity_failure(classification, stats, self.config.regularity)
        if reason is not None:
            logger.debug(
                f"Merchant group {merchant_group_id}: cluster at {cluster.median} "
                f"({classification.frequency}) rejected: {reason}."
            )
            return None

        anchors = compute_anchors(dates, classification.frequency)

        # --- Liveness & confidence ---
        last_date = dates[-1]
        gap = days_since(last_date, context.as_of)
        is_active = evaluate_liveness(
            last_date,
            classification.expected_interval_days,
            context.as_of,
            self.config.liveness.recency_multiplier,
        )
        confidence = self.scorer.score(
            occurrence_count=len(txns),
            coefficient_of_variation=stats.coefficient_of_variation,
            days_since_last=gap,
            expected_interval_days=classification.expected_interval_days,
        )
        if confidence < self.config.min_confidence:
            logger.debug(
                f"Merchant group {merchant_group_id}: cluster at {cluster.median} "
                f"({classification.frequency}) scored {confidence}, below "
                f"{self.config.min_confidence}."
            )
            return None

        # --- Amount statistics (this cluster only) ---
        amounts = np.array(cluster.amounts, dtype=float)
        mean_amt = float(np.mean(amounts))
        amount_cv = float(np.std(amounts)) / mean_amt if mean_amt > 0 else 0.0

        # --- Evidence ---
        categories = [t.category_id for t in txns if t.category_id is not None]
        category_id = _most_common(categories)
        account_id = next(
            (t.account_id for t in reversed(txns) if t.account_id is not None),
            context.account_id,
        )

        return RecurringPattern(
            merchant_group_id=merchant_group_id,
            merchant_name=merchant_name,
            transaction_type=transaction_type,
            frequency=classification.frequency,
            interval=classification.interval,
            expected_amount=cluster.median,
            amount_variance=round(amount_cv, 4),
            is_amount_variable=amount_cv > self.config.amount_clustering.variable_amount_cv,
            confidence_score=confidence,
            detection_method="exact_amount" if cluster.is_exact else "amount_band",
            occurrence_count=len(txns),
            last_occurrence_date=last_date,
            next_expected_date=next_expected_date(last_date, classification, anchors),
            is_active=is_active,
            day_of_month=anchors.day_of_month,
            day_of_week=anchors.day_of_week,
            week_of_month=anchors.week_of_month,
            first_occurrence_date=dates[0],
            mean_interval_days=round(stats.mean_interval_days, 4),
            account_id=account_id,
            category_id=category_id,
            transaction_ids=[t.transaction_id for t in txns if t.transaction_id is not None],
            is_confirmed=self.config.user_defaults.is_confirmed,
            notes=self.config.user_defaults.notes,
            reminder_enabled=self.config.user_defaults.reminder_enabled,
            reminder_days_before=self.config.user_defaults.reminder_days_before,
        )

    def _latest_segment(self, merchant_group_id, cluster: AmountCluster) -> AmountCluster | None:
        """
        Most recent run of the cluster with at least min_occurrences members,
        after splitting at pause-length gaps. None if no run is long enough.
        """
        txns = cluster.transactions
        if len(txns) < self.config.min_occurrences:
            return None

        segments = segment_by_gap(
            [t.date for t in txns], self.config.regularity.pause_gap_multiplier
        )
        if len(segments) == 1:
            return cluster

        for positions in reversed(segments):
            if len(positions) >= self.config.min_occurrences:
                logger.debug(
                    f"Merchant group {merchant_group_id}: cluster at {cluster.median} split into "
                    f"{len(segments)} runs, using the latest {len(positions)} occurrences."
                )
                return AmountCluster([txns[i] for i in positions], cluster.median)
        return None


def _most_common(values: list):
    """Most frequent value, first seen wins ties. None for an empty list."""
    if not values:
        return None
    return Counter(values).most_common(1)[0][0]
