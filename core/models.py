"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- Transaction: Input record, already grouped upstream by merchant_group_id.
  Read-only to the engine.

- IntervalStats / AmountCluster / FrequencyClassification / DayAnchors:
  Intermediate results passed between the detection primitives.

- RecurringPattern: Output of the Pattern Builder and the persisted entity the
  Pattern Reconciler merges into. Splits into computed fields (replaced on
  every recompute) and user-owned fields (never touched by the engine).
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Hashable, List, Mapping, Optional


TRANSACTION_TYPES = ("income", "expense")

FREQUENCIES = (
    "daily", "weekly", "biweekly", "monthly",
    "bimonthly", "quarterly", "yearly", "custom",
)

# Fields owned by the user. Recomputation carries these over unchanged.
USER_OWNED_FIELDS = ("is_confirmed", "notes", "reminder_enabled", "reminder_days_before")


def to_date(value: Any, field_name: str = "date") -> date:
    """
    Normalizes a date-like value (date, datetime, pandas Timestamp, ISO string)
    to a plain date. Null values are a caller contract violation.
    """
    if value is None or (isinstance(value, float) and math.isnan(value)):
        raise ValueError(f"{field_name} is required, got null")
    # pandas NaT compares unequal to itself
    if value != value:
        raise ValueError(f"{field_name} is required, got null")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValueError(f"{field_name} is not an ISO date: {value!r}")
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime().date()
    raise ValueError(f"{field_name} has unsupported type {type(value).__name__}")


@dataclass
class Transaction:
    """
    One posted transaction for a merchant group.

    Only date, amount and transaction_type drive detection. The optional
    identifiers are carried through as evidence on the emitted pattern.
    """

    merchant_group_id: Hashable
    date: date
    amount: float                    # Signed or unsigned; magnitude is used
    transaction_type: str            # "income" | "expense"

    merchant_name: Optional[str] = None
    transaction_id: Optional[Hashable] = None
    category_id: Optional[Hashable] = None
    account_id: Optional[Hashable] = None

    def __post_init__(self):
        if self.merchant_group_id is None:
            raise ValueError("merchant_group_id is required")
        self.date = to_date(self.date)

        if isinstance(self.amount, bool):
            raise ValueError(f"amount must be numeric, got {self.amount!r}")
        try:
            self.amount = float(self.amount)
        except (TypeError, ValueError):
            raise ValueError(f"amount must be numeric, got {self.amount!r}")
        if not math.isfinite(self.amount):
            raise ValueError(f"amount must be finite, got {self.amount!r}")

        if self.transaction_type not in TRANSACTION_TYPES:
            raise ValueError(
                f"transaction_type must be one of {TRANSACTION_TYPES}, "
                f"got {self.transaction_type!r}"
            )

    @property
    def magnitude(self) -> float:
        """Absolute amount rounded to the cent."""
        return round(abs(self.amount), 2)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Transaction":
        """Builds a Transaction from a dict / DataFrame row, mapping NaN to None."""
        def optional(key):
            value = record.get(key)
            if value is None:
                return None
            if isinstance(value, float) and math.isnan(value):
                return None
            return value

        return cls(
            merchant_group_id=optional("merchant_group_id"),
            date=record.get("date"),
            amount=record.get("amount"),
            transaction_type=record.get("transaction_type"),
            merchant_name=optional("merchant_name"),
            transaction_id=optional("transaction_id"),
            category_id=optional("category_id"),
            account_id=optional("account_id"),
        )


@dataclass(frozen=True)
class DetectionContext:
    """
    Explicit per-call context. Replaces ambient session state so the engine
    runs identically from a batch job, a request handler or a test.
    """
    as_of: date                      # Reference "today" for recency and liveness
    account_id: Optional[Hashable] = None


@dataclass
class IntervalStats:
    """Raw gap statistics over an ascending list of dates."""
    mean_interval_days: float
    stddev_days: float
    coefficient_of_variation: float  # stddev / mean; +inf when mean is 0
    intervals: List[int] = field(default_factory=list)
    median_interval_days: float = 0.0

    @property
    def is_degenerate(self) -> bool:
        """All occurrences on the same day: no periodicity to speak of."""
        return self.mean_interval_days <= 0


@dataclass
class AmountCluster:
    """Transactions of one merchant whose amounts share a tolerance band."""
    transactions: List[Transaction]  # Sorted by date
    median: float                    # Rounded to the cent

    @property
    def amounts(self) -> List[float]:
        return [t.magnitude for t in self.transactions]

    @property
    def size(self) -> int:
        return len(self.transactions)

    @property
    def is_exact(self) -> bool:
        """True when every member has the identical rounded amount."""
        return len(set(self.amounts)) == 1


@dataclass(frozen=True)
class FrequencyClassification:
    frequency: str                   # One of FREQUENCIES
    interval: int                    # Multiplier; for "custom" the rounded mean in days
    expected_interval_days: float    # Nominal length of one cycle


@dataclass(frozen=True)
class DayAnchors:
    day_of_month: Optional[int] = None   # 1-31
    day_of_week: Optional[int] = None    # 0 = Monday ... 6 = Sunday
    week_of_month: Optional[int] = None  # 1-5


@dataclass
class RecurringPattern:
    """
    A recurring obligation detected for one amount cluster of a merchant group.

    Everything above the user-owned block is recomputed on each pass; the
    user-owned block is set by user actions only.
    """

    # Identity
    merchant_group_id: Hashable
    merchant_name: str
    transaction_type: str            # "income" | "expense"

    # Cadence
    frequency: str                   # One of FREQUENCIES
    interval: int

    # Amount
    expected_amount: float           # Median of the cluster
    amount_variance: float           # Coefficient of variation of the cluster's amounts
    is_amount_variable: bool

    # Scoring & liveness
    confidence_score: float          # 0.0 to 1.0
    detection_method: str            # "exact_amount" | "amount_band" (diagnostic only)
    occurrence_count: int
    last_occurrence_date: Optional[date]
    next_expected_date: Optional[date]
    is_active: bool

    # Anchors
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    week_of_month: Optional[int] = None

    # Supporting detail
    first_occurrence_date: Optional[date] = None
    mean_interval_days: Optional[float] = None
    account_id: Optional[Hashable] = None
    category_id: Optional[Hashable] = None
    transaction_ids: list = field(default_factory=list)

    # Persistence identity (assigned by the caller's store, never by the engine)
    pattern_id: Optional[Hashable] = None

    # User-owned
    is_confirmed: bool = False
    notes: Optional[str] = None
    reminder_enabled: bool = True
    reminder_days_before: int = 2

    def __post_init__(self):
        if self.occurrence_count is None or self.occurrence_count < 0:
            raise ValueError(
                f"occurrence_count must be a non-negative integer, got {self.occurrence_count!r}"
            )
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValueError(
                f"confidence_score must be within [0, 1], got {self.confidence_score!r}"
            )
        if self.frequency not in FREQUENCIES:
            raise ValueError(f"frequency must be one of {FREQUENCIES}, got {self.frequency!r}")
        if self.transaction_type not in TRANSACTION_TYPES:
            raise ValueError(
                f"transaction_type must be one of {TRANSACTION_TYPES}, "
                f"got {self.transaction_type!r}"
            )
        if self.interval is None or self.interval < 1:
            raise ValueError(f"interval must be a positive integer, got {self.interval!r}")


@dataclass
class ReconciliationResult:
    """Outcome of merging drafts into one merchant group's persisted patterns."""
    patterns: List[RecurringPattern] = field(default_factory=list)
    created: int = 0
    updated: int = 0
    retained: int = 0                # Persisted patterns with no matching draft
    warnings: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    """Outcome of a pipeline run over many merchant groups."""
    patterns: List[RecurringPattern] = field(default_factory=list)
    draft_count: int = 0
    created: int = 0
    updated: int = 0
    retained: int = 0
    warnings: List[str] = field(default_factory=list)
    failures: dict = field(default_factory=dict)     # merchant_group_id -> error message
