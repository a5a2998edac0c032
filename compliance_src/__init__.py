"""
Protocol Compliance Engine

Computes clinical trial protocol compliance for in-progress studies:

- Visit timing against each visit's protocol window
- Investigational product accountability (dispensed vs returned doses)
- Monthly compliance trends and per-study breakdowns
- Alerts for out-of-window visits and out-of-range IP compliance

The package is pure computation. The caller fetches records, calls the
engine, and persists or serializes the results.
"""

from .engine import ProtocolComplianceEngine
from .errors import (
    ComplianceError,
    DuplicateContainer,
    InvalidReturnCount,
    MultipleOpenCycles,
    UnknownDosingFrequency,
    UnsupportedDosing,
)
from .models import (
    AccountabilityCycle,
    ComplianceAlert,
    ComplianceReport,
    ComplianceSummary,
    ComplianceTier,
    CycleResult,
    DosingFrequency,
    ScheduledVisit,
    ScheduledVisitDate,
    StudyBreakdownRow,
    StudyConfig,
    Subject,
    SubjectCompliance,
    TimingResult,
    TrendPoint,
    VisitScheduleTemplate,
    VisitStatus,
)

__version__ = "1.0.0"

__all__ = [
    "ProtocolComplianceEngine",
    "ComplianceError",
    "DuplicateContainer",
    "InvalidReturnCount",
    "MultipleOpenCycles",
    "UnknownDosingFrequency",
    "UnsupportedDosing",
    "AccountabilityCycle",
    "ComplianceAlert",
    "ComplianceReport",
    "ComplianceSummary",
    "ComplianceTier",
    "CycleResult",
    "DosingFrequency",
    "ScheduledVisit",
    "ScheduledVisitDate",
    "StudyBreakdownRow",
    "StudyConfig",
    "Subject",
    "SubjectCompliance",
    "TimingResult",
    "TrendPoint",
    "VisitScheduleTemplate",
    "VisitStatus",
]
