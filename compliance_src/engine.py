"""
Protocol compliance engine.

Caller-facing facade over the computation modules. The caller fetches the
rows (subjects, templates, visits, cycles, study settings), hands them in,
and serializes what comes back. Nothing here stores or fetches data.

Operations:
1. evaluate_visit - timing of one completed visit against its window
2. evaluate_cycle - derived figures for one accountability cycle
3. build_trends - monthly visit-timing and drug-compliance series
4. build_study_breakdown - per-study rates
5. build_alerts - most recent out-of-window / out-of-range records
6. build_subject_compliance - weighted drug/visit figure for one subject
7. build_visit_schedule - planned visit dates and windows for one subject
"""

import logging
from datetime import datetime, timezone
from fractions import Fraction
from typing import Optional

from . import aggregation, cycles as cycle_tracker, visits as visit_timing
from .config import Config
from .dosing import doses_per_day
from .models import (
    AccountabilityCycle,
    ComplianceAlert,
    ComplianceReport,
    ComplianceSummary,
    CycleResult,
    ScheduledVisit,
    StudyBreakdownRow,
    ScheduledVisitDate,
    StudyConfig,
    Subject,
    SubjectCompliance,
    TimingResult,
    TrendPoint,
    VisitScheduleTemplate,
)

logger = logging.getLogger(__name__)


class ProtocolComplianceEngine:
    """
    Computes visit-timing and investigational product compliance.

    Holds only configuration; every method is a pure function of its
    arguments, so one engine can serve any number of studies.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

    # --- Per-record evaluation ---

    def evaluate_visit(
        self,
        visit: ScheduledVisit,
        template: Optional[VisitScheduleTemplate] = None,
        anchor_date=None,
    ) -> TimingResult:
        """Evaluate one visit against its protocol window."""
        return visit_timing.evaluate_visit(visit, template, anchor_date)

    def evaluate_cycle(
        self,
        cycle: AccountabilityCycle,
        dose_rate,
        threshold_percent: Optional[float] = None,
    ) -> CycleResult:
        """
        Evaluate one accountability cycle.

        Args:
            cycle: The cycle to evaluate.
            dose_rate: Expected doses per day (see resolve_doses_per_day).
            threshold_percent: Compliance threshold, defaults to the
                configured COMPLIANCE_THRESHOLD_PERCENT.
        """
        if threshold_percent is None:
            threshold_percent = self.config.COMPLIANCE_THRESHOLD_PERCENT
        return cycle_tracker.evaluate_cycle(
            cycle, dose_rate, threshold_percent, self.config.tier_thresholds()
        )

    def resolve_doses_per_day(self, study_config: StudyConfig) -> Fraction:
        """Doses per day for a study, honoring its per-drug override."""
        code = study_config.dosing_frequency_code
        if code is None or (isinstance(code, str) and not code.strip()):
            code = self.config.DEFAULT_DOSING_FREQUENCY
            logger.info(
                f"Study {study_config.study_id} has no dosing frequency, using {code}"
            )
        return doses_per_day(code, study_config.dose_per_day_override)

    def _study_threshold(self, study_config: StudyConfig) -> float:
        if study_config.compliance_threshold_percent is None:
            return self.config.COMPLIANCE_THRESHOLD_PERCENT
        return study_config.compliance_threshold_percent

    def evaluate_cycles_for_study(
        self,
        cycles: list[AccountabilityCycle],
        study_config: StudyConfig,
    ) -> list[AccountabilityCycle]:
        """
        Recompute derived fields for every cycle of one study.

        Dosing is resolved once from the study settings, so an unknown or
        unusable frequency fails before any cycle is touched.

        Returns:
            Copies of the cycles with actual/expected doses, percentage and
            compliance flag set, in input order.
        """
        rate = self.resolve_doses_per_day(study_config)
        threshold = self._study_threshold(study_config)

        evaluated = [
            cycle_tracker.apply_cycle_metrics(cycle, rate, threshold) for cycle in cycles
        ]
        non_compliant = sum(1 for c in evaluated if c.is_compliant is False)
        logger.info(
            f"Study {study_config.study_id}: evaluated {len(evaluated)} cycles, "
            f"{non_compliant} below {threshold:g}%"
        )
        return evaluated

    def evaluate_visits(
        self,
        visits: list[ScheduledVisit],
        templates: list[VisitScheduleTemplate],
        subjects: list[Subject],
    ) -> list[ScheduledVisit]:
        """Recompute timing for many visits at once."""
        return visit_timing.evaluate_visit_batch(visits, templates, subjects)

    def build_visit_schedule(
        self,
        templates: list[VisitScheduleTemplate],
        subject: Subject,
    ) -> list[ScheduledVisitDate]:
        """Planned visit dates and windows for one subject."""
        return visit_timing.build_visit_schedule(templates, subject.anchor_date)

    # --- Aggregation ---

    def build_subject_compliance(
        self,
        subject_id: str,
        visits: list[ScheduledVisit],
        cycles: list[AccountabilityCycle],
    ) -> SubjectCompliance:
        """Weighted drug/visit rollup for one subject, using configured weights."""
        return aggregation.build_subject_compliance(
            subject_id,
            visits,
            cycles,
            self.config.subject_weights(),
            self.config.tier_thresholds(),
        )

    def build_trends(
        self,
        visits: list[ScheduledVisit],
        cycles: list[AccountabilityCycle],
        month_count: Optional[int] = None,
        as_of=None,
    ) -> list[TrendPoint]:
        """Monthly trend, month count clamped to [1, TREND_MONTHS_MAX]."""
        months = self.config.clamp_trend_months(month_count)
        return aggregation.build_trends(visits, cycles, months, as_of)

    def build_study_breakdown(
        self,
        visits: list[ScheduledVisit],
        cycles: list[AccountabilityCycle],
        subjects: Optional[list[Subject]] = None,
    ) -> list[StudyBreakdownRow]:
        return aggregation.build_study_breakdown(visits, cycles, subjects)

    def build_alerts(
        self,
        visits: list[ScheduledVisit],
        cycles: list[AccountabilityCycle],
        max_count: Optional[int] = None,
        subjects: Optional[list[Subject]] = None,
    ) -> list[ComplianceAlert]:
        if max_count is None:
            max_count = self.config.ALERT_LIMIT
        return aggregation.build_alerts(
            visits,
            cycles,
            max_count,
            subjects,
            self.config.ALERT_LOW_COMPLIANCE,
            self.config.ALERT_HIGH_COMPLIANCE,
        )

    def build_summary(
        self,
        visits: list[ScheduledVisit],
        cycles: list[AccountabilityCycle],
    ) -> ComplianceSummary:
        alert_count = len(
            aggregation.collect_alerts(
                visits,
                cycles,
                low_threshold=self.config.ALERT_LOW_COMPLIANCE,
                high_threshold=self.config.ALERT_HIGH_COMPLIANCE,
            )
        )
        return aggregation.build_summary(visits, cycles, alert_count)

    def build_report(
        self,
        visits: list[ScheduledVisit],
        cycles: list[AccountabilityCycle],
        subjects: Optional[list[Subject]] = None,
        month_count: Optional[int] = None,
        max_alerts: Optional[int] = None,
        as_of=None,
    ) -> ComplianceReport:
        """
        Build the full compliance report.

        Args:
            visits: Visits with derived timing fields already set.
            cycles: Cycles with derived compliance fields already set.
            subjects: Used to resolve the study of records without one.
            month_count: Trend length, clamped like build_trends.
            max_alerts: Alert cap, defaults to ALERT_LIMIT.
            as_of: Last day of the trend window, defaults to today (UTC).

        Returns:
            ComplianceReport with trends, study breakdown, alerts and summary.
        """
        report = ComplianceReport(
            trends=self.build_trends(visits, cycles, month_count, as_of),
            study_breakdown=self.build_study_breakdown(visits, cycles, subjects),
            alerts=self.build_alerts(visits, cycles, max_alerts, subjects),
            summary=self.build_summary(visits, cycles),
            generated_at=datetime.now(timezone.utc),
        )
        logger.info(
            f"Compliance report: {len(report.study_breakdown)} studies, "
            f"{report.summary.active_alerts} active alerts"
        )
        return report
