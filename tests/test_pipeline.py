"""
test_pipeline.py
-----------------
Tests for reconciliation, reminders, the batch pipeline and the CLI.

Run from the project root:
    python -m pytest tests/test_pipeline.py -v

Tests are organized by layer:
    - Pattern Reconciler
    - Reminders
    - Full Pipeline (integration)
    - Serialization
    - CLI
"""

import sys
import os
import dataclasses
import pytest
import pandas as pd
from datetime import date, datetime, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.models import RecurringPattern, DetectionContext
from core.reminders import find_due_reminders
from reconciliation.pattern_reconciler import PatternReconciler
from pipeline import (
    RecurringDetectionPipeline, patterns_to_dataframe, patterns_from_dataframe, REQUIRED_COLUMNS,
)
import main as cli


AS_OF = date(2024, 6, 25)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


def _make_pattern(**overrides) -> RecurringPattern:
    """Helper: a plausible monthly expense pattern, fields overridable."""
    values = dict(
        merchant_group_id="MG_ACME",
        merchant_name="Acme Streaming",
        transaction_type="expense",
        frequency="monthly",
        interval=1,
        expected_amount=9.99,
        amount_variance=0.0,
        is_amount_variable=False,
        confidence_score=0.8,
        detection_method="exact_amount",
        occurrence_count=6,
        last_occurrence_date=date(2024, 6, 5),
        next_expected_date=date(2024, 7, 5),
        is_active=True,
        day_of_month=5,
    )
    values.update(overrides)
    return RecurringPattern(**values)


def _monthly_rows(
    merchant_group_id: str,
    merchant_name: str,
    amount: float,
    day: int,
    n_months: int = 6,
    transaction_type: str = "expense",
    id_prefix: str = "T",
) -> list[dict]:
    """Helper: monthly transaction rows from January 2024."""
    return [
        {
            "transaction_id": f"{id_prefix}{merchant_group_id}_{i}",
            "merchant_group_id": merchant_group_id,
            "merchant_name": merchant_name,
            "date": date(2024, 1 + i, day).isoformat(),
            "amount": amount,
            "transaction_type": transaction_type,
        }
        for i in range(n_months)
    ]


def _make_transactions_df() -> pd.DataFrame:
    """Helper: two subscriptions at Acme, one at Netflix, and a bank's interest credits."""
    rows = (
        _monthly_rows("MG_ACME", "Acme Streaming", 9.99, day=5, id_prefix="A")
        + _monthly_rows("MG_ACME", "Acme Streaming", 14.99, day=20, id_prefix="B")
        + _monthly_rows("MG_NETFLIX", "Netflix", 15.49, day=15)
        + _monthly_rows("MG_BANK", "Interest Payment", 0.62, day=28, transaction_type="income")
    )
    return pd.DataFrame(rows)


# =============================================================================
# PATTERN RECONCILER TESTS
# =============================================================================

class TestPatternReconciler:
    def setup_method(self):
        self.reconciler = PatternReconciler()

    def test_user_state_survives_recompute(self):
        persisted = _make_pattern(
            pattern_id="P1", expected_amount=9.99, occurrence_count=4, confidence_score=0.6,
            is_confirmed=True, notes="family plan", reminder_enabled=False, reminder_days_before=5,
        )
        draft = _make_pattern(expected_amount=10.19, occurrence_count=7, confidence_score=0.9)

        result = self.reconciler.reconcile([draft], [persisted], AS_OF)

        assert (result.created, result.updated, result.retained) == (0, 1, 0)
        assert len(result.patterns) == 1
        p = result.patterns[0]
        assert p.pattern_id == "P1"
        assert p.is_confirmed is True
        assert p.notes == "family plan"
        assert p.reminder_enabled is False
        assert p.reminder_days_before == 5
        # Computed fields come from the draft
        assert p.expected_amount == pytest.approx(10.19)
        assert p.occurrence_count == 7
        assert p.confidence_score == pytest.approx(0.9)

    def test_new_pattern_gets_user_defaults(self):
        draft = _make_pattern(is_confirmed=True, notes="stale", reminder_enabled=False,
                              reminder_days_before=9, pattern_id="X")
        result = self.reconciler.reconcile([draft], [], AS_OF)

        assert result.created == 1
        p = result.patterns[0]
        assert p.pattern_id is None
        assert p.is_confirmed is False
        assert p.notes is None
        assert p.reminder_enabled is True
        assert p.reminder_days_before == 2

    def test_unmatched_persisted_pattern_is_kept_and_lapses(self):
        persisted = _make_pattern(pattern_id="P_OLD", expected_amount=29.99,
                                  last_occurrence_date=date(2024, 1, 15), is_confirmed=True)
        draft = _make_pattern(expected_amount=9.99)

        result = self.reconciler.reconcile([draft], [persisted], AS_OF)

        assert (result.created, result.updated, result.retained) == (1, 0, 1)
        kept = next(p for p in result.patterns if p.pattern_id == "P_OLD")
        assert kept.is_active is False
        assert kept.is_confirmed is True

    def test_recent_unmatched_pattern_stays_active(self):
        persisted = _make_pattern(pattern_id="P1", last_occurrence_date=date(2024, 6, 1))
        result = self.reconciler.reconcile([], [persisted], AS_OF)
        assert result.patterns[0].is_active is True

    def test_unmatched_inactive_pattern_never_reactivated(self):
        persisted = _make_pattern(pattern_id="P1", last_occurrence_date=date(2024, 6, 20), is_active=False)
        result = self.reconciler.reconcile([], [persisted], AS_OF)
        assert result.patterns[0].is_active is False

    def test_two_drafts_on_one_persisted_pattern(self):
        persisted = _make_pattern(pattern_id="P1", expected_amount=10.20, notes="keep me")
        small = _make_pattern(expected_amount=10.00, occurrence_count=5)
        large = _make_pattern(expected_amount=10.50, occurrence_count=8)

        result = self.reconciler.reconcile([small, large], [persisted], AS_OF)

        assert len(result.patterns) == 1
        assert result.patterns[0].expected_amount == pytest.approx(10.50)
        assert result.patterns[0].pattern_id == "P1"
        assert result.patterns[0].notes == "keep me"
        assert len(result.warnings) == 1

    def test_transaction_type_must_match(self):
        persisted = _make_pattern(pattern_id="P1", transaction_type="income")
        draft = _make_pattern(transaction_type="expense")

        result = self.reconciler.reconcile([draft], [persisted], AS_OF)
        assert (result.created, result.updated, result.retained) == (1, 0, 1)

    def test_rerun_with_own_output_is_stable(self):
        persisted = _make_pattern(pattern_id="P1", is_confirmed=True)
        draft = _make_pattern(expected_amount=10.09, occurrence_count=7)

        first = self.reconciler.reconcile([draft], [persisted], AS_OF)
        second = self.reconciler.reconcile([draft], first.patterns, AS_OF)
        assert second.patterns == first.patterns

    def test_multiple_merchant_groups_rejected(self):
        with pytest.raises(ValueError, match="one merchant group"):
            self.reconciler.reconcile(
                [_make_pattern()], [_make_pattern(merchant_group_id="MG_OTHER")], AS_OF
            )

    def test_negative_persisted_occurrence_count_rejected(self):
        persisted = _make_pattern(pattern_id="P1")
        persisted.occurrence_count = -1
        with pytest.raises(ValueError, match="occurrence_count"):
            self.reconciler.reconcile([], [persisted], AS_OF)

    def test_pattern_rejects_negative_count_and_bad_confidence(self):
        with pytest.raises(ValueError):
            _make_pattern(occurrence_count=-1)
        with pytest.raises(ValueError):
            _make_pattern(confidence_score=1.2)


# =============================================================================
# REMINDER TESTS
# =============================================================================

class TestReminders:
    def test_reminder_due_days_before(self):
        pattern = _make_pattern(next_expected_date=date(2024, 3, 3), reminder_days_before=2)
        due = find_due_reminders([pattern], date(2024, 3, 1))
        assert len(due) == 1
        assert due[0].days_until_due == 2
        assert not due[0].is_due_today

    def test_reminder_due_today(self):
        pattern = _make_pattern(next_expected_date=date(2024, 3, 3), reminder_days_before=2)
        due = find_due_reminders([pattern], date(2024, 3, 3))
        assert len(due) == 1
        assert due[0].is_due_today

    def test_no_reminder_between_lead_day_and_due_day(self):
        pattern = _make_pattern(next_expected_date=date(2024, 3, 3), reminder_days_before=2)
        assert find_due_reminders([pattern], date(2024, 3, 2)) == []

    def test_inactive_or_disabled_patterns_skipped(self):
        inactive = _make_pattern(next_expected_date=date(2024, 3, 3), is_active=False)
        disabled = _make_pattern(next_expected_date=date(2024, 3, 3), reminder_enabled=False)
        assert find_due_reminders([inactive, disabled], date(2024, 3, 1)) == []

    def test_lead_time_beyond_horizon_skipped(self):
        pattern = _make_pattern(next_expected_date=date(2024, 3, 3), reminder_days_before=10)
        assert find_due_reminders([pattern], date(2024, 2, 22), horizon_days=7) == []

    def test_reminders_sorted_by_due_date(self):
        later = _make_pattern(merchant_name="Later", next_expected_date=date(2024, 3, 3))
        today = _make_pattern(merchant_name="Today", next_expected_date=date(2024, 3, 1))
        due = find_due_reminders([later, today], date(2024, 3, 1))
        assert [r.pattern.merchant_name for r in due] == ["Today", "Later"]

    def test_negative_horizon_raises(self):
        with pytest.raises(ValueError):
            find_due_reminders([], date(2024, 3, 1), horizon_days=-1)


# =============================================================================
# FULL PIPELINE INTEGRATION TESTS
# =============================================================================

class TestPipeline:
    def test_pipeline_runs_end_to_end(self):
        pipeline = RecurringDetectionPipeline()
        result = pipeline.run(_make_transactions_df(), DetectionContext(as_of=AS_OF))

        assert result.failures == {}
        assert [(p.merchant_group_id, p.expected_amount) for p in result.patterns] == [
            ("MG_ACME", 9.99), ("MG_ACME", 14.99), ("MG_NETFLIX", 15.49),
        ]
        assert result.created == 3
        assert result.draft_count == 3
        assert all(p.frequency == "monthly" and p.is_active for p in result.patterns)

    def test_accepts_list_of_mappings_and_timestamps(self):
        df = _make_transactions_df()
        df["date"] = pd.to_datetime(df["date"])
        pipeline = RecurringDetectionPipeline()
        from_df = pipeline.run(df, DetectionContext(as_of=AS_OF))
        from_rows = pipeline.run(df.to_dict("records"), DetectionContext(as_of=AS_OF))
        assert from_rows.patterns == from_df.patterns

    def test_bad_group_does_not_stop_batch(self):
        df = _make_transactions_df()
        bad = pd.DataFrame(_monthly_rows("MG_BAD", "Broken Feed", 20.0, day=3))
        bad.loc[2, "date"] = None
        df = pd.concat([df, bad], ignore_index=True)

        result = RecurringDetectionPipeline().run(df, DetectionContext(as_of=AS_OF))

        assert set(result.failures) == {"MG_BAD"}
        assert len(result.patterns) == 3

    def test_detection_only_raises_on_bad_group(self):
        df = pd.DataFrame(_monthly_rows("MG_BAD", "Broken Feed", 20.0, day=3, transaction_type="refund"))
        with pytest.raises(ValueError):
            RecurringDetectionPipeline().run_detection_only(df, DetectionContext(as_of=AS_OF))

    def test_missing_columns_raises(self):
        bad_df = pd.DataFrame({"merchant_group_id": ["MG1"], "amount": [10.0]})
        with pytest.raises(ValueError, match="Missing required columns"):
            RecurringDetectionPipeline().run(bad_df, DetectionContext(as_of=AS_OF))

    def test_empty_input(self):
        result = RecurringDetectionPipeline().run(
            pd.DataFrame(columns=REQUIRED_COLUMNS), DetectionContext(as_of=AS_OF)
        )
        assert result.patterns == []
        assert result.failures == {}

    def test_rows_without_merchant_group_dropped(self):
        df = _make_transactions_df()
        df.loc[0, "merchant_group_id"] = None
        result = RecurringDetectionPipeline().run(df, DetectionContext(as_of=AS_OF))
        acme_low = next(p for p in result.patterns if p.expected_amount == pytest.approx(9.99))
        assert acme_low.occurrence_count == 5

    def test_rerun_preserves_user_state(self):
        pipeline = RecurringDetectionPipeline()
        first = pipeline.run(_make_transactions_df(), DetectionContext(as_of=AS_OF))

        stored = [
            dataclasses.replace(p, pattern_id=f"P{i}", is_confirmed=True, notes=f"note {i}")
            for i, p in enumerate(first.patterns)
        ]
        second = pipeline.run(_make_transactions_df(), DetectionContext(as_of=AS_OF), persisted=stored)

        assert (second.created, second.updated, second.retained) == (0, 3, 0)
        assert [p.pattern_id for p in second.patterns] == ["P0", "P1", "P2"]
        assert all(p.is_confirmed for p in second.patterns)
        assert [p.notes for p in second.patterns] == ["note 0", "note 1", "note 2"]

    def test_persisted_group_without_transactions_is_retained(self):
        gym = _make_pattern(merchant_group_id="MG_GYM", merchant_name="Gym", pattern_id="G1",
                            expected_amount=40.0, last_occurrence_date=date(2024, 1, 10))
        result = RecurringDetectionPipeline().run(
            _make_transactions_df(), DetectionContext(as_of=AS_OF), persisted=[gym]
        )

        assert result.retained == 1
        kept = next(p for p in result.patterns if p.pattern_id == "G1")
        assert kept.is_active is False

    def test_lookback_limits_history(self):
        pipeline = RecurringDetectionPipeline(lookback_days=100)   # cutoff 2024-03-17
        result = pipeline.run(_make_transactions_df(), DetectionContext(as_of=AS_OF))

        counts = {(p.merchant_group_id, p.expected_amount): p.occurrence_count for p in result.patterns}
        assert counts == {
            ("MG_ACME", 9.99): 3,
            ("MG_ACME", 14.99): 4,
            ("MG_NETFLIX", 15.49): 3,
        }

    def test_datetime_as_of_is_normalized(self):
        pipeline = RecurringDetectionPipeline(lookback_days=100)
        expected = pipeline.run(_make_transactions_df(), DetectionContext(as_of=AS_OF))

        for as_of in (datetime(2024, 6, 25, 9, 30), pd.Timestamp("2024-06-25 23:59")):
            result = pipeline.run(_make_transactions_df(), DetectionContext(as_of=as_of))
            assert result.patterns == expected.patterns
            drafts = pipeline.run_detection_only(_make_transactions_df(), DetectionContext(as_of=as_of))
            assert len(drafts) == expected.draft_count

    def test_context_account_applied(self):
        result = RecurringDetectionPipeline().run(
            _make_transactions_df(), DetectionContext(as_of=AS_OF, account_id="BUDGET7")
        )
        assert {p.account_id for p in result.patterns} == {"BUDGET7"}


# =============================================================================
# SERIALIZATION TESTS
# =============================================================================

class TestSerialization:
    def test_dataframe_has_every_pattern_field(self):
        df = patterns_to_dataframe([_make_pattern(transaction_ids=["T1", "T2"])])
        expected = {f.name for f in dataclasses.fields(RecurringPattern)}
        assert set(df.columns) == expected
        assert df.iloc[0]["last_occurrence_date"] == "2024-06-05"
        assert df.iloc[0]["transaction_ids"] == "T1|T2"

    def test_empty_patterns_give_empty_frame(self):
        df = patterns_to_dataframe([])
        assert df.empty
        assert "pattern_id" in df.columns

    def test_csv_round_trip(self, tmp_path):
        original = [
            _make_pattern(pattern_id="P1", transaction_ids=["T1", "T2", "T3"], is_confirmed=True,
                          notes="shared", reminder_days_before=3),
            _make_pattern(expected_amount=14.99, frequency="weekly", day_of_month=None, day_of_week=2),
        ]
        path = tmp_path / "patterns.csv"
        patterns_to_dataframe(original).to_csv(path, index=False)
        restored = patterns_from_dataframe(pd.read_csv(path))

        assert len(restored) == 2
        first, second = restored
        assert first.pattern_id == "P1"
        assert first.is_confirmed is True
        assert first.notes == "shared"
        assert first.reminder_days_before == 3
        assert first.transaction_ids == ["T1", "T2", "T3"]
        assert first.last_occurrence_date == date(2024, 6, 5)
        assert first.expected_amount == pytest.approx(9.99)
        assert second.pattern_id is None
        assert second.frequency == "weekly"
        assert second.day_of_week == 2
        assert second.day_of_month is None
        assert second.notes is None

    def test_missing_pattern_columns_raise(self):
        with pytest.raises(ValueError, match="Missing required columns"):
            patterns_from_dataframe(pd.DataFrame({"merchant_group_id": ["MG1"]}))


# =============================================================================
# CLI TESTS
# =============================================================================

class TestCli:
    def test_main_writes_patterns_csv(self, tmp_path):
        input_path = tmp_path / "transactions.csv"
        _make_transactions_df().to_csv(input_path, index=False)
        out_dir = tmp_path / "out"

        cli.main([
            "--input", str(input_path),
            "--as-of", "2024-06-25",
            "--output-dir", str(out_dir),
            "--show-reminders",
        ])

        outputs = list(out_dir.glob("recurring_patterns_*.csv"))
        assert len(outputs) == 1
        written = pd.read_csv(outputs[0])
        assert len(written) == 3
        assert set(written["merchant_group_id"]) == {"MG_ACME", "MG_NETFLIX"}

    def test_main_reconciles_persisted_csv(self, tmp_path):
        input_path = tmp_path / "transactions.csv"
        _make_transactions_df().to_csv(input_path, index=False)

        first = RecurringDetectionPipeline().run(_make_transactions_df(), DetectionContext(as_of=AS_OF))
        stored = [dataclasses.replace(p, pattern_id=f"P{i}", notes="mine") for i, p in enumerate(first.patterns)]
        persisted_path = tmp_path / "persisted.csv"
        patterns_to_dataframe(stored).to_csv(persisted_path, index=False)

        out_dir = tmp_path / "out"
        cli.main([
            "--input", str(input_path),
            "--persisted", str(persisted_path),
            "--as-of", "2024-06-25",
            "--output-dir", str(out_dir),
        ])

        written = pd.read_csv(next(out_dir.glob("recurring_patterns_*.csv")))
        assert sorted(written["pattern_id"]) == ["P0", "P1", "P2"]
        assert set(written["notes"]) == {"mine"}

    def test_missing_input_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--input", str(tmp_path / "missing.csv"), "--output-dir", str(tmp_path)])
        assert exc.value.code == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
