"""Configuration for the protocol compliance engine."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Find and load .env file
_env_candidates = [
    Path(__file__).parent.parent / ".env",
    Path(__file__).parent.parent / ".env.template",
]

for env_path in _env_candidates:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Config:
    """Protocol compliance configuration.

    Every value here is a default. Callers pass per-study thresholds and
    limits explicitly where they differ.
    """

    # --- IP Accountability ---
    # Cycles at or above this percentage are compliant
    COMPLIANCE_THRESHOLD_PERCENT: float = float(
        os.getenv("COMPLIANCE_THRESHOLD_PERCENT", "80")
    )
    # Used only when a study has no dosing frequency recorded at all
    DEFAULT_DOSING_FREQUENCY: str = os.getenv("DEFAULT_DOSING_FREQUENCY", "QD")

    # --- Compliance Tiers ---
    TIER_EXCELLENT: float = float(os.getenv("TIER_EXCELLENT", "95"))
    TIER_GOOD: float = float(os.getenv("TIER_GOOD", "85"))
    TIER_ACCEPTABLE: float = float(os.getenv("TIER_ACCEPTABLE", "75"))

    # --- Visit Windows ---
    # 0 = baseline is Day 0, 1 = baseline is Day 1
    VISIT_ANCHOR_DAY: int = int(os.getenv("VISIT_ANCHOR_DAY", "0"))
    DEFAULT_WINDOW_BEFORE_DAYS: int = int(os.getenv("DEFAULT_WINDOW_BEFORE_DAYS", "3"))
    DEFAULT_WINDOW_AFTER_DAYS: int = int(os.getenv("DEFAULT_WINDOW_AFTER_DAYS", "3"))

    # --- Trends ---
    TREND_MONTHS_DEFAULT: int = int(os.getenv("TREND_MONTHS_DEFAULT", "12"))
    TREND_MONTHS_MAX: int = int(os.getenv("TREND_MONTHS_MAX", "60"))

    # --- Alerts ---
    ALERT_LIMIT: int = int(os.getenv("ALERT_LIMIT", "10"))
    # Cycles outside [low, high] raise a high-severity alert
    ALERT_LOW_COMPLIANCE: float = float(os.getenv("ALERT_LOW_COMPLIANCE", "80"))
    ALERT_HIGH_COMPLIANCE: float = float(os.getenv("ALERT_HIGH_COMPLIANCE", "100"))

    # --- Subject Rollup ---
    # Weights of drug and visit compliance in a subject's overall figure
    SUBJECT_DRUG_WEIGHT: float = float(os.getenv("SUBJECT_DRUG_WEIGHT", "0.7"))
    SUBJECT_VISIT_WEIGHT: float = float(os.getenv("SUBJECT_VISIT_WEIGHT", "0.3"))

    @classmethod
    def clamp_trend_months(cls, months: int | None) -> int:
        """Bound a caller-supplied month count to [1, TREND_MONTHS_MAX]."""
        if months is None:
            return cls.TREND_MONTHS_DEFAULT
        return max(1, min(int(months), cls.TREND_MONTHS_MAX))

    @classmethod
    def tier_thresholds(cls) -> dict[str, float]:
        """Tier cut-offs as a dict, highest first."""
        return {
            "excellent": cls.TIER_EXCELLENT,
            "good": cls.TIER_GOOD,
            "acceptable": cls.TIER_ACCEPTABLE,
        }

    @classmethod
    def subject_weights(cls) -> dict[str, float]:
        """Drug/visit weights for the per-subject rollup."""
        return {"drug": cls.SUBJECT_DRUG_WEIGHT, "visit": cls.SUBJECT_VISIT_WEIGHT}


config = Config()
