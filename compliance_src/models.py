"""Data models for protocol compliance computation.

Input records mirror the rows the persistence layer already holds; result
types are what the engine hands back. Date fields are normalized to
``datetime.date`` on construction so no other date representation can
reach the cycle or window arithmetic.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from .dates import parse_date, parse_optional_date, to_utc_datetime


class VisitStatus(Enum):
    """Lifecycle status of a scheduled visit."""
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class DosingFrequency(Enum):
    """Study dosing frequency codes."""
    QD = "QD"            # Once daily
    BID = "BID"          # Twice daily
    TID = "TID"          # Three times daily
    QID = "QID"          # Four times daily
    WEEKLY = "weekly"
    CUSTOM = "custom"    # Requires an explicit dose-per-day


class ComplianceTier(Enum):
    """Classification of a cycle's compliance percentage."""
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"
    NOT_ASSESSED = "not_assessed"  # No expectation yet (open container)


class TimingUnit(Enum):
    """Units used to express a visit's timing in the schedule of events."""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"

    @property
    def days(self) -> int:
        """Calendar days per unit (months are fixed 30-day blocks)."""
        return {"days": 1, "weeks": 7, "months": 30}[self.value]


class WindowStatus(Enum):
    """Where a visit stands relative to its protocol window."""
    SCHEDULED = "scheduled"   # Window not open yet
    DUE = "due"               # Window open, visit not done
    OVERDUE = "overdue"       # Window closed, visit not done
    COMPLETED = "completed"   # Done inside the window
    EARLY = "early"           # Done before the window opened
    LATE = "late"             # Done after the window closed


class AlertType(Enum):
    """Kinds of compliance alerts."""
    TIMING = "timing"
    DRUG = "drug"


class AlertSeverity(Enum):
    """Alert severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Subject:
    """A person enrolled in a study."""
    id: str
    study_id: str
    enrollment_date: date | None = None
    anchor_date: date | None = None  # Randomization or section start
    subject_number: str | None = None

    def __post_init__(self):
        self.enrollment_date = parse_optional_date(self.enrollment_date)
        self.anchor_date = parse_optional_date(self.anchor_date)


@dataclass
class VisitScheduleTemplate:
    """Planned visit definition from a study's schedule of events."""
    id: str
    study_id: str
    visit_day_offset: int  # Days from the anchor date
    window_before_days: int = 3
    window_after_days: int = 3
    visit_name: str = ""
    is_required: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "study_id": self.study_id,
            "visit_day_offset": self.visit_day_offset,
            "window_before_days": self.window_before_days,
            "window_after_days": self.window_after_days,
            "visit_name": self.visit_name,
            "is_required": self.is_required,
        }


@dataclass
class ScheduledVisit:
    """One calendar occurrence of a visit for one subject.

    ``is_within_window`` and ``days_from_scheduled`` are derived. They are
    only ever set by visits.apply_visit_timing and stay None unless the
    visit is completed against a template and an anchor date.
    """
    id: str
    subject_id: str
    visit_date: date | None
    status: VisitStatus = VisitStatus.SCHEDULED
    template_id: str | None = None
    study_id: str | None = None
    visit_name: str = ""

    # Derived
    is_within_window: bool | None = None
    days_from_scheduled: int | None = None

    updated_at: datetime | None = None

    def __post_init__(self):
        self.visit_date = parse_optional_date(self.visit_date)
        if not isinstance(self.status, VisitStatus):
            self.status = VisitStatus(self.status)
        if self.updated_at is not None:
            self.updated_at = to_utc_datetime(self.updated_at)

    @property
    def is_completed(self) -> bool:
        return self.status == VisitStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "visit_date": _iso(self.visit_date),
            "status": self.status.value,
            "template_id": self.template_id,
            "study_id": self.study_id,
            "visit_name": self.visit_name,
            "is_within_window": self.is_within_window,
            "days_from_scheduled": self.days_from_scheduled,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class AccountabilityCycle:
    """One dispensed container's lifecycle from dispense to return.

    The four derived fields are recomputed by cycles.apply_cycle_metrics on
    every write and never edited by hand.
    """
    id: str
    subject_id: str
    container_id: str  # Bottle / kit identifier
    dispensed_count: int
    dispensing_date: date
    returned_count: int = 0
    last_dose_date: date | None = None  # None = not yet returned
    assessment_date: date | None = None  # Date of the return visit

    # Linkage
    study_id: str | None = None
    drug_id: str | None = None
    dispensed_visit_id: str | None = None
    return_visit_id: str | None = None

    # Derived
    actual_taken: int | None = None
    expected_taken: int | None = None
    compliance_percentage: float | None = None
    is_compliant: bool | None = None

    updated_at: datetime | None = None

    def __post_init__(self):
        self.dispensing_date = parse_date(self.dispensing_date)
        self.last_dose_date = parse_optional_date(self.last_dose_date)
        self.assessment_date = parse_optional_date(self.assessment_date)
        if self.updated_at is not None:
            self.updated_at = to_utc_datetime(self.updated_at)

    @property
    def is_open(self) -> bool:
        """Dispensed and not yet returned."""
        return self.last_dose_date is None and self.returned_count == 0

    @property
    def end_date(self) -> date | None:
        """Last day of the dosing interval, if the container came back."""
        if self.is_open:
            return None
        return self.last_dose_date or self.assessment_date

    @property
    def reporting_date(self) -> date | None:
        """Best available date for bucketing: last dose, assessment, last update."""
        if self.last_dose_date:
            return self.last_dose_date
        if self.assessment_date:
            return self.assessment_date
        if self.updated_at:
            return self.updated_at.date()
        return None

    @property
    def has_expectation(self) -> bool:
        """True when the cycle contributes a compliance signal."""
        return self.expected_taken is not None and self.expected_taken > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "container_id": self.container_id,
            "dispensed_count": self.dispensed_count,
            "returned_count": self.returned_count,
            "dispensing_date": _iso(self.dispensing_date),
            "last_dose_date": _iso(self.last_dose_date),
            "assessment_date": _iso(self.assessment_date),
            "study_id": self.study_id,
            "drug_id": self.drug_id,
            "dispensed_visit_id": self.dispensed_visit_id,
            "return_visit_id": self.return_visit_id,
            "actual_taken": self.actual_taken,
            "expected_taken": self.expected_taken,
            "compliance_percentage": self.compliance_percentage,
            "is_compliant": self.is_compliant,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class StudyConfig:
    """Per-study compliance settings."""
    study_id: str
    compliance_threshold_percent: float | None = None  # None = Config default
    dosing_frequency_code: str | None = None  # None = Config default
    dose_per_day_override: float | None = None
    protocol_number: str | None = None


@dataclass
class TimingResult:
    """Outcome of evaluating a visit against its protocol window."""
    within_window: bool | None = None
    days_from_scheduled: int | None = None
    target_date: date | None = None

    @property
    def is_determined(self) -> bool:
        return self.within_window is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "within_window": self.within_window,
            "days_from_scheduled": self.days_from_scheduled,
            "target_date": _iso(self.target_date),
        }


@dataclass
class CycleResult:
    """Derived figures for one accountability cycle."""
    actual_taken: int
    expected_taken: int | None
    compliance_percentage: float
    is_compliant: bool
    tier: ComplianceTier = ComplianceTier.NOT_ASSESSED
    deviations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def percentage(self) -> float:
        """Uncapped compliance percentage."""
        return self.compliance_percentage

    def to_dict(self) -> dict[str, Any]:
        return {
            "actual_taken": self.actual_taken,
            "expected_taken": self.expected_taken,
            "compliance_percentage": self.compliance_percentage,
            "is_compliant": self.is_compliant,
            "tier": self.tier.value,
            "deviations": list(self.deviations),
            "recommendations": list(self.recommendations),
        }


@dataclass
class ScheduledVisitDate:
    """One planned visit of a subject's schedule, with its window."""
    template_id: str
    visit_name: str
    visit_day_offset: int
    target_date: date
    window_start: date
    window_end: date
    is_required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "visit_name": self.visit_name,
            "visit_day_offset": self.visit_day_offset,
            "target_date": _iso(self.target_date),
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "is_required": self.is_required,
        }


@dataclass
class SubjectCompliance:
    """Weighted rollup of one subject's drug and visit compliance."""
    subject_id: str
    percentage: float
    tier: ComplianceTier
    drug_compliance: float | None = None  # Capped mean over assessed cycles
    visit_compliance: float | None = None  # Share of in-window completed visits
    drug_record_count: int = 0
    visit_count: int = 0
    deviations: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "percentage": self.percentage,
            "tier": self.tier.value,
            "drug_compliance": self.drug_compliance,
            "visit_compliance": self.visit_compliance,
            "drug_record_count": self.drug_record_count,
            "visit_count": self.visit_count,
            "deviations": list(self.deviations),
            "recommendations": list(self.recommendations),
        }


@dataclass
class ComplianceAlert:
    """A recomputed-on-read alert for one out-of-window visit or one
    out-of-range accountability cycle. Never persisted."""
    id: str
    alert_type: AlertType
    severity: AlertSeverity
    record_id: str
    subject_id: str
    study_id: str | None
    description: str
    created_at: datetime
    visit_name: str = ""
    value: float | None = None  # Days off schedule or compliance percentage

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "record_id": self.record_id,
            "subject_id": self.subject_id,
            "study_id": self.study_id,
            "visit_name": self.visit_name,
            "description": self.description,
            "value": self.value,
            "created_at": _iso(self.created_at),
        }


@dataclass
class TrendPoint:
    """One month of the compliance trend."""
    month: str  # YYYY-MM
    label: str  # e.g. "Jan 2025"
    visit_timing: int
    drug_compliance: int
    visit_count: int = 0
    drug_record_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": self.month,
            "label": self.label,
            "visit_timing": self.visit_timing,
            "drug_compliance": self.drug_compliance,
            "visit_count": self.visit_count,
            "drug_record_count": self.drug_record_count,
        }


@dataclass
class StudyBreakdownRow:
    """Per-study compliance figures."""
    study_id: str
    total_visits: int = 0  # Timing-eligible completed visits
    within_window_visits: int = 0
    timing_compliance_rate: int = 0
    total_drug_records: int = 0
    avg_drug_compliance: int = 0
    overall_score: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "study_id": self.study_id,
            "total_visits": self.total_visits,
            "within_window_visits": self.within_window_visits,
            "timing_compliance_rate": self.timing_compliance_rate,
            "total_drug_records": self.total_drug_records,
            "avg_drug_compliance": self.avg_drug_compliance,
            "overall_score": self.overall_score,
        }


@dataclass
class ComplianceSummary:
    """Headline figures across every study in scope."""
    overall_timing_rate: int = 0
    overall_drug_rate: int = 0
    total_visits: int = 0
    total_drug_records: int = 0  # Every cycle, open or returned
    assessed_drug_records: int = 0  # Cycles behind overall_drug_rate
    active_alerts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_timing_rate": self.overall_timing_rate,
            "overall_drug_rate": self.overall_drug_rate,
            "total_visits": self.total_visits,
            "total_drug_records": self.total_drug_records,
            "assessed_drug_records": self.assessed_drug_records,
            "active_alerts": self.active_alerts,
        }


@dataclass
class ComplianceReport:
    """Everything a compliance dashboard needs in one object."""
    trends: list[TrendPoint] = field(default_factory=list)
    study_breakdown: list[StudyBreakdownRow] = field(default_factory=list)
    alerts: list[ComplianceAlert] = field(default_factory=list)
    summary: ComplianceSummary = field(default_factory=ComplianceSummary)
    generated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "trends": [t.to_dict() for t in self.trends],
            "study_breakdown": [r.to_dict() for r in self.study_breakdown],
            "alerts": [a.to_dict() for a in self.alerts],
            "summary": self.summary.to_dict(),
            "generated_at": _iso(self.generated_at),
        }
