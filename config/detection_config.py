"""
detection_config.py
--------------------
Typed configuration struct for the recurring detection engine.

config.yaml is the source of truth; DetectionConfig.from_dict() turns its
raw dictionary into frozen dataclasses so every component receives named,
validated thresholds instead of scattered literals. Constructing
DetectionConfig() directly gives the same defaults, which keeps tests and
embedded callers independent of the file.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.models import FREQUENCIES


@dataclass(frozen=True)
class FrequencyBucket:
    """One canonical cadence and the interval it is centred on."""
    name: str
    target_days: float
    max_deviation_days: Optional[float] = None   # Overrides the generic window


@dataclass(frozen=True)
class ExclusionRule:
    """A named case-insensitive regex matched against merchant names."""
    name: str
    pattern: str


DEFAULT_BUCKETS = (
    FrequencyBucket("daily", 1, max_deviation_days=0.5),
    FrequencyBucket("weekly", 7),
    FrequencyBucket("biweekly", 14),
    FrequencyBucket("monthly", 30),
    FrequencyBucket("bimonthly", 60),
    FrequencyBucket("quarterly", 90),
    FrequencyBucket("yearly", 365),
)

DEFAULT_EXCLUSION_RULES = (
    ExclusionRule("interest_accrual", r"\binterest\b"),
    ExclusionRule("dividend_posting", r"\bdividends?\b"),
    ExclusionRule("internal_transfer", r"\binternal\s+(?:transfer|xfer)\b"),
    ExclusionRule("account_to_account", r"\b(?:to|from)\s+(?:savings|checking)\b"),
)


@dataclass(frozen=True)
class AmountClusteringConfig:
    relative_tolerance: float = 0.10
    absolute_tolerance: float = 0.50
    exact_seed_min: int = 3
    variable_amount_cv: float = 0.02


@dataclass(frozen=True)
class FrequencyConfig:
    relative_tolerance: float = 0.15
    min_tolerance_days: float = 3.0
    detect_interval_multiples: bool = False
    buckets: tuple = DEFAULT_BUCKETS

    def window_for(self, bucket: FrequencyBucket) -> float:
        """Allowed deviation in days around a bucket's target interval."""
        if bucket.max_deviation_days is not None:
            return bucket.max_deviation_days
        return max(self.relative_tolerance * bucket.target_days, self.min_tolerance_days)

    def bucket(self, name: str) -> FrequencyBucket:
        for b in self.buckets:
            if b.name == name:
                return b
        raise KeyError(
            f"No frequency bucket named '{name}'. "
            f"Available: {[b.name for b in self.buckets]}"
        )


@dataclass(frozen=True)
class ConfidenceConfig:
    occurrence_weight: float = 0.40
    regularity_weight: float = 0.60
    occurrence_half_life: float = 2.0
    cv_scale: float = 0.25
    recency_penalty_rate: float = 0.50
    recency_floor: float = 0.25


@dataclass(frozen=True)
class RegularityConfig:
    """Gates that separate real cadences from coincidental repeats."""
    # Share of gaps that must sit within the fit window of the cycle length
    min_fit_ratio: float = 0.60
    fit_relative_tolerance: float = 0.15
    fit_min_days: float = 1.0
    weekly_min_occurrences: int = 6
    custom_min_occurrences: int = 4
    custom_max_cv: float = 0.20
    custom_max_gap_ratio: float = 2.0
    # A gap above this multiple of the median interval splits the history
    pause_gap_multiplier: float = 3.0


@dataclass(frozen=True)
class LivenessConfig:
    recency_multiplier: float = 1.5


@dataclass(frozen=True)
class UserFieldDefaults:
    """Values given to user-owned fields when a pattern is first created."""
    is_confirmed: bool = False
    reminder_enabled: bool = True
    reminder_days_before: int = 2
    notes: Optional[str] = None


@dataclass(frozen=True)
class DetectionConfig:
    """Every tunable the engine uses, grouped by component."""

    min_occurrences: int = 3
    min_confidence: float = 0.5
    amount_clustering: AmountClusteringConfig = field(default_factory=AmountClusteringConfig)
    frequency: FrequencyConfig = field(default_factory=FrequencyConfig)
    confidence: ConfidenceConfig = field(default_factory=ConfidenceConfig)
    regularity: RegularityConfig = field(default_factory=RegularityConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    user_defaults: UserFieldDefaults = field(default_factory=UserFieldDefaults)
    reminder_horizon_days: int = 7
    exclusion_rules: tuple = DEFAULT_EXCLUSION_RULES

    def __post_init__(self):
        if self.min_occurrences < 3:
            raise ValueError(
                f"min_occurrences must be at least 3, got {self.min_occurrences}"
            )
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be within [0, 1], got {self.min_confidence}")
        ac = self.amount_clustering
        if ac.relative_tolerance < 0 or ac.absolute_tolerance < 0:
            raise ValueError("Amount tolerances must be non-negative")
        if ac.exact_seed_min < 1:
            raise ValueError(f"exact_seed_min must be positive, got {ac.exact_seed_min}")
        if self.liveness.recency_multiplier <= 0:
            raise ValueError(
                f"recency_multiplier must be positive, got {self.liveness.recency_multiplier}"
            )
        c = self.confidence
        if c.occurrence_weight < 0 or c.regularity_weight < 0:
            raise ValueError("Confidence weights must be non-negative")
        if c.occurrence_weight + c.regularity_weight == 0:
            raise ValueError("At least one confidence weight must be positive")
        if c.occurrence_half_life <= 0 or c.cv_scale <= 0:
            raise ValueError("occurrence_half_life and cv_scale must be positive")
        if not 0.0 <= c.recency_floor <= 1.0:
            raise ValueError(f"recency_floor must be within [0, 1], got {c.recency_floor}")
        r = self.regularity
        if not 0.0 <= r.min_fit_ratio <= 1.0:
            raise ValueError(f"min_fit_ratio must be within [0, 1], got {r.min_fit_ratio}")
        if r.fit_relative_tolerance < 0 or r.fit_min_days < 0 or r.custom_max_cv < 0:
            raise ValueError("Regularity tolerances must be non-negative")
        if r.custom_max_gap_ratio < 1:
            raise ValueError(f"custom_max_gap_ratio must be at least 1, got {r.custom_max_gap_ratio}")
        if r.pause_gap_multiplier <= 1:
            raise ValueError(f"pause_gap_multiplier must exceed 1, got {r.pause_gap_multiplier}")
        if not self.frequency.buckets:
            raise ValueError("At least one frequency bucket is required")
        for b in self.frequency.buckets:
            if b.name not in FREQUENCIES or b.name == "custom":
                raise ValueError(f"Unknown frequency bucket '{b.name}'")
            if b.target_days <= 0:
                raise ValueError(f"Bucket '{b.name}' needs a positive target_days")
        if self.user_defaults.reminder_days_before < 0:
            raise ValueError("reminder_days_before must be non-negative")

    # -------------------------------------------------------------------------
    # CONSTRUCTION FROM config.yaml
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DetectionConfig":
        """
        Build a DetectionConfig from the full config.yaml dictionary.

        Missing sections fall back to defaults; unknown keys are ignored.
        """
        detection = raw.get("recurring_detection", {}) or {}
        frequency_raw = detection.get("frequency", {}) or {}

        buckets = DEFAULT_BUCKETS
        if frequency_raw.get("buckets"):
            buckets = tuple(
                FrequencyBucket(
                    name=name,
                    target_days=float(bucket_raw["target_days"]),
                    max_deviation_days=(
                        float(bucket_raw["max_deviation_days"])
                        if bucket_raw.get("max_deviation_days") is not None else None
                    ),
                )
                for name, bucket_raw in frequency_raw["buckets"].items()
            )

        exclusion_rules = DEFAULT_EXCLUSION_RULES
        if "exclusions" in raw:
            exclusion_rules = tuple(
                ExclusionRule(name=str(rule["name"]), pattern=str(rule["pattern"]))
                for rule in raw["exclusions"] or []
            )

        defaults_raw = (raw.get("reconciliation", {}) or {}).get("defaults", {}) or {}

        return cls(
            min_occurrences=int(detection.get("min_occurrences", 3)),
            min_confidence=float(detection.get("min_confidence", 0.5)),
            amount_clustering=_build(AmountClusteringConfig, detection.get("amount_clustering")),
            frequency=FrequencyConfig(
                relative_tolerance=float(frequency_raw.get("relative_tolerance", 0.15)),
                min_tolerance_days=float(frequency_raw.get("min_tolerance_days", 3.0)),
                detect_interval_multiples=bool(frequency_raw.get("detect_interval_multiples", False)),
                buckets=buckets,
            ),
            confidence=_build(ConfidenceConfig, detection.get("confidence")),
            regularity=_build(RegularityConfig, detection.get("regularity")),
            liveness=_build(LivenessConfig, detection.get("liveness")),
            user_defaults=_build(UserFieldDefaults, defaults_raw),
            reminder_horizon_days=int((raw.get("reminders", {}) or {}).get("horizon_days", 7)),
            exclusion_rules=exclusion_rules,
        )


def _build(section_cls, values: Optional[Dict[str, Any]]):
    """Instantiate a config section, keeping only the keys it declares."""
    values = values or {}
    known = {name for name in section_cls.__dataclass_fields__}
    return section_cls(**{k: v for k, v in values.items() if k in known})
