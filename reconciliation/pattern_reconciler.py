"""
pattern_reconciler.py
----------------------
Merges freshly computed draft patterns with the patterns already persisted
for the same merchant group.

Rules:
    - A draft matches a persisted pattern of the same merchant group and
      transaction type when their expected amounts fall in the same tolerance
      band used for clustering. Each draft goes to its nearest match.
    - Matched: computed fields come from the draft; user-owned fields
      (is_confirmed, notes, reminder_enabled, reminder_days_before) and the
      persisted pattern_id are carried over unchanged.
    - Unmatched draft: a new pattern with the configured user defaults.
    - Unmatched persisted pattern: kept, never deleted and never reactivated
      here. Its liveness is re-evaluated, so a lapsed pattern turns inactive.
    - Two drafts on one persisted pattern: the larger occurrence_count wins,
      the other is dropped with a warning. The batch keeps going.

Merging rather than overwriting makes recomputation safe to rerun at any
time.
"""

import dataclasses
import logging
from datetime import date
from typing import Dict, List, Sequence

from config.config_loader import get_detection_config
from config.detection_config import DetectionConfig
from core.amount_clustering import within_tolerance
from core.frequency_classifier import expected_interval_days
from core.models import USER_OWNED_FIELDS, ReconciliationResult, RecurringPattern
from scoring.liveness import evaluate_liveness

logger = logging.getLogger(__name__)


class PatternReconciler:
    """
    Usage:
        reconciler = PatternReconciler(config)
        result = reconciler.reconcile(drafts, persisted, as_of=date.today())
        store.upsert(result.patterns)
    """

    def __init__(self, config: DetectionConfig | None = None):
        self.config = config or get_detection_config()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def reconcile(
        self,
        drafts: Sequence[RecurringPattern],
        persisted: Sequence[RecurringPattern],
        as_of: date,
    ) -> ReconciliationResult:
        """
        Produce the final set of patterns to persist for one merchant group.

        Raises:
            ValueError: inputs span several merchant groups, or a persisted
                pattern carries a negative occurrence count.
        """
        drafts = list(drafts)
        persisted = list(persisted)
        self._validate(drafts, persisted)

        result = ReconciliationResult()

        # --- Step 1: each draft proposes its nearest persisted match ---
        proposals: Dict[int, List[int]] = {}
        unmatched_drafts: List[int] = []
        for d_idx, draft in enumerate(drafts):
            p_idx = self._nearest_persisted(draft, persisted)
            if p_idx is None:
                unmatched_drafts.append(d_idx)
            else:
                proposals.setdefault(p_idx, []).append(d_idx)

        # --- Step 2: merge matched pairs, resolving conflicts ---
        for p_idx in sorted(proposals):
            record = persisted[p_idx]
            candidates = proposals[p_idx]
            winner = self._pick_winner(record, [drafts[i] for i in candidates])

            if len(candidates) > 1:
                losers = [drafts[i] for i in candidates if drafts[i] is not winner]
                message = (
                    f"Merchant group {record.merchant_group_id}: {len(candidates)} drafts "
                    f"matched persisted pattern {record.pattern_id!r} at {record.expected_amount}; "
                    f"kept the draft at {winner.expected_amount} "
                    f"({winner.occurrence_count} occurrences), dropped "
                    f"{[d.expected_amount for d in losers]}."
                )
                logger.warning(message)
                result.warnings.append(message)

            result.patterns.append(self._merge(record, winner))
            result.updated += 1

        # --- Step 3: new patterns ---
        for d_idx in unmatched_drafts:
            result.patterns.append(self._new_pattern(drafts[d_idx]))
            result.created += 1

        # --- Step 4: persisted patterns nobody matched ---
        for p_idx, record in enumerate(persisted):
            if p_idx in proposals:
                continue
            result.patterns.append(self._refresh_liveness(record, as_of))
            result.retained += 1

        result.patterns.sort(
            key=lambda p: (p.transaction_type, p.expected_amount, str(p.pattern_id))
        )
        return result

    # -------------------------------------------------------------------------
    # INTERNAL: MATCHING
    # -------------------------------------------------------------------------

    def _validate(self, drafts: List[RecurringPattern], persisted: List[RecurringPattern]) -> None:
        group_ids = {p.merchant_group_id for p in drafts + persisted}
        if len(group_ids) > 1:
            raise ValueError(
                f"Reconciliation expects one merchant group, got {sorted(map(str, group_ids))}"
            )
        for record in persisted:
            if record.occurrence_count is None or record.occurrence_count < 0:
                raise ValueError(
                    f"Persisted pattern {record.pattern_id!r} has an invalid "
                    f"occurrence_count: {record.occurrence_count!r}"
                )

    def _nearest_persisted(
        self, draft: RecurringPattern, persisted: List[RecurringPattern]
    ) -> int | None:
        tolerance = self.config.amount_clustering
        best = None
        for idx, record in enumerate(persisted):
            if record.transaction_type != draft.transaction_type:
                continue
            if not within_tolerance(draft.expected_amount, record.expected_amount, tolerance):
                continue
            key = (abs(draft.expected_amount - record.expected_amount), idx)
            if best is None or key < best:
                best = key
        return None if best is None else best[1]

    @staticmethod
    def _pick_winner(record: RecurringPattern, candidates: List[RecurringPattern]) -> RecurringPattern:
        """Largest occurrence_count, then closest amount, then lowest amount."""
        return min(
            candidates,
            key=lambda d: (
                -d.occurrence_count,
                abs(d.expected_amount - record.expected_amount),
                d.expected_amount,
            ),
        )

    # -------------------------------------------------------------------------
    # INTERNAL: MERGING
    # -------------------------------------------------------------------------

    @staticmethod
    def _merge(record: RecurringPattern, draft: RecurringPattern) -> RecurringPattern:
        carried = {name: getattr(record, name) for name in USER_OWNED_FIELDS}
        return dataclasses.replace(draft, pattern_id=record.pattern_id, **carried)

    def _new_pattern(self, draft: RecurringPattern) -> RecurringPattern:
        defaults = self.config.user_defaults
        return dataclasses.replace(
            draft,
            pattern_id=None,
            is_confirmed=defaults.is_confirmed,
            notes=defaults.notes,
            reminder_enabled=defaults.reminder_enabled,
            reminder_days_before=defaults.reminder_days_before,
        )

    def _refresh_liveness(self, record: RecurringPattern, as_of: date) -> RecurringPattern:
        """A retained pattern may lapse here but is never switched back on."""
        if not record.is_active or record.last_occurrence_date is None:
            return dataclasses.replace(record)

        cycle = expected_interval_days(record.frequency, record.interval, self.config.frequency)
        still_active = evaluate_liveness(
            record.last_occurrence_date,
            cycle,
            as_of,
            self.config.liveness.recency_multiplier,
        )
        if not still_active:
            logger.info(
                f"Merchant group {record.merchant_group_id}: pattern {record.pattern_id!r} "
                f"at {record.expected_amount} has lapsed, marking inactive."
            )
        return dataclasses.replace(record, is_active=still_active)
