"""Integration tests for the protocol compliance engine facade.

Walks records through the write paths (timing recompute, dispense, return)
and then builds the dashboard report from the results.
"""

import pytest
from datetime import date, datetime, timezone

from compliance_src import (
    ProtocolComplianceEngine,
    ScheduledVisit,
    StudyConfig,
    Subject,
    UnknownDosingFrequency,
    UnsupportedDosing,
    VisitScheduleTemplate,
    VisitStatus,
)
from compliance_src.config import Config
from compliance_src.cycles import dispense_container, record_return
from compliance_src.models import AccountabilityCycle, ComplianceReport


@pytest.fixture
def engine():
    return ProtocolComplianceEngine()


@pytest.fixture
def subject():
    return Subject(id="subj-1", study_id="STUDY-A", anchor_date="2025-01-01")


@pytest.fixture
def template():
    return VisitScheduleTemplate(
        id="tmpl-d14", study_id="STUDY-A", visit_day_offset=14,
        window_before_days=3, window_after_days=3, visit_name="Day 14",
    )


class TestEndToEndTiming:
    """Anchor 2025-01-01, Day 14 visit, +/-3 day window."""

    def test_last_day_in_window(self, engine, subject, template):
        visit = ScheduledVisit(
            id="v1", subject_id="subj-1", visit_date="2025-01-18",
            status=VisitStatus.COMPLETED, template_id="tmpl-d14",
        )
        result = engine.evaluate_visit(visit, template, subject.anchor_date)

        assert result.days_from_scheduled == 3
        assert result.within_window is True

    def test_first_day_outside_window(self, engine, subject, template):
        visit = ScheduledVisit(
            id="v1", subject_id="subj-1", visit_date="2025-01-19",
            status=VisitStatus.COMPLETED, template_id="tmpl-d14",
        )
        result = engine.evaluate_visit(visit, template, subject.anchor_date)

        assert result.days_from_scheduled == 4
        assert result.within_window is False

    def test_missing_anchor_never_in_window(self, engine, template):
        visit = ScheduledVisit(
            id="v1", subject_id="subj-1", visit_date="2025-01-15",
            status=VisitStatus.COMPLETED, template_id="tmpl-d14",
        )
        assert engine.evaluate_visit(visit, template, None).within_window is None


class TestStudyCycles:
    """Test dosing resolution from study settings."""

    @pytest.fixture
    def cycles(self):
        return [
            AccountabilityCycle(
                id="c1", subject_id="subj-1", container_id="A", dispensed_count=20,
                returned_count=6, dispensing_date="2025-09-01", last_dose_date="2025-09-07",
            ),
            AccountabilityCycle(
                id="c2", subject_id="subj-1", container_id="B", dispensed_count=20,
                dispensing_date="2025-09-08",
            ),
        ]

    def test_bid_study(self, engine, cycles):
        config = StudyConfig(study_id="STUDY-A", dosing_frequency_code="BID")
        evaluated = engine.evaluate_cycles_for_study(cycles, config)

        closed, still_out = evaluated
        assert closed.actual_taken == 14
        assert closed.expected_taken == 14
        assert closed.compliance_percentage == 100.0
        assert closed.is_compliant is True
        assert still_out.expected_taken is None
        assert still_out.is_compliant is True

    def test_per_study_threshold(self, engine, cycles):
        config = StudyConfig(
            study_id="STUDY-A", dosing_frequency_code="QD", compliance_threshold_percent=90
        )
        closed = engine.evaluate_cycles_for_study(cycles, config)[0]
        assert closed.compliance_percentage == 200.0
        assert closed.is_compliant is True

    def test_override_used(self, engine, cycles):
        config = StudyConfig(
            study_id="STUDY-A", dosing_frequency_code="custom", dose_per_day_override=4
        )
        closed = engine.evaluate_cycles_for_study(cycles, config)[0]
        assert closed.expected_taken == 28
        assert closed.compliance_percentage == 50.0
        assert closed.is_compliant is False

    def test_missing_code_uses_default(self, engine):
        rate = engine.resolve_doses_per_day(StudyConfig(study_id="STUDY-A"))
        assert rate == 1

    @pytest.mark.parametrize("code", ["", "   "])
    def test_blank_code_uses_default(self, engine, code):
        rate = engine.resolve_doses_per_day(
            StudyConfig(study_id="STUDY-A", dosing_frequency_code=code)
        )
        assert rate == 1

    def test_unknown_code_fails_fast(self, engine, cycles):
        with pytest.raises(UnknownDosingFrequency):
            engine.evaluate_cycles_for_study(
                cycles, StudyConfig(study_id="STUDY-A", dosing_frequency_code="Q8H")
            )

    def test_custom_without_override(self, engine, cycles):
        with pytest.raises(UnsupportedDosing):
            engine.evaluate_cycles_for_study(
                cycles, StudyConfig(study_id="STUDY-A", dosing_frequency_code="custom")
            )

    def test_input_not_mutated(self, engine, cycles):
        engine.evaluate_cycles_for_study(cycles, StudyConfig(study_id="STUDY-A"))
        assert cycles[0].expected_taken is None

    def test_evaluate_cycle_uses_config_threshold(self, engine, cycles):
        result = engine.evaluate_cycle(cycles[0], 2)
        assert result.is_compliant is True
        assert result.tier.value == "excellent"


class TestSubjectViews:
    """Test the per-subject schedule and rollup."""

    def test_visit_schedule_from_subject_anchor(self, engine, subject, template):
        schedule = engine.build_visit_schedule([template], subject)

        assert len(schedule) == 1
        assert schedule[0].target_date == date(2025, 1, 15)

    def test_subject_rollup_uses_configured_weights(self, engine, subject, template):
        visit = engine.evaluate_visits(
            [ScheduledVisit(
                id="v1", subject_id="subj-1", template_id="tmpl-d14",
                visit_date="2025-01-15", status=VisitStatus.COMPLETED,
            )],
            [template],
            [subject],
        )
        cycle = AccountabilityCycle(
            id="c1", subject_id="subj-1", container_id="BTL-1",
            dispensed_count=30, returned_count=20,
            dispensing_date="2025-01-01", last_dose_date="2025-01-20",
        )
        cycles = engine.evaluate_cycles_for_study([cycle], StudyConfig(study_id="STUDY-A"))

        result = engine.build_subject_compliance("subj-1", visit, cycles)

        # 10 of 20 doses (50%) weighted 0.7, one in-window visit weighted 0.3
        assert result.drug_compliance == 50.0
        assert result.visit_compliance == 100.0
        assert result.percentage == 65.0
        assert result.tier.value == "poor"


class TestTrendClamping:
    """Month counts are bounded by the facade."""

    def test_clamped_to_max(self, engine):
        trends = engine.build_trends([], [], month_count=500, as_of="2025-06-01")
        assert len(trends) == Config.TREND_MONTHS_MAX

    def test_clamped_to_one(self, engine):
        trends = engine.build_trends([], [], month_count=-3, as_of="2025-06-01")
        assert [t.month for t in trends] == ["2025-06"]

    def test_default(self, engine):
        trends = engine.build_trends([], [], as_of="2025-06-01")
        assert len(trends) == Config.TREND_MONTHS_DEFAULT


class TestReport:
    """Build a report from records that went through the write paths."""

    def test_full_report(self, engine, subject, template):
        visits = engine.evaluate_visits(
            [
                ScheduledVisit(
                    id="v1", subject_id="subj-1", visit_date="2025-01-16",
                    status=VisitStatus.COMPLETED, template_id="tmpl-d14",
                ),
                ScheduledVisit(
                    id="v2", subject_id="subj-1", visit_date="2025-01-25",
                    status=VisitStatus.COMPLETED, template_id="tmpl-d14",
                ),
                ScheduledVisit(
                    id="v3", subject_id="subj-1", visit_date="2025-02-12",
                    status=VisitStatus.SCHEDULED, template_id="tmpl-d14",
                ),
            ],
            [template],
            [subject],
        )

        dispensed = dispense_container(
            [],
            cycle_id="c1",
            subject_id="subj-1",
            container_id="BTL-001",
            dispensed_count=30,
            dispensing_date="2025-01-01",
            doses_per_day=1,
            study_id="STUDY-A",
        )
        returned = record_return(
            dispensed,
            returned_count=20,
            doses_per_day=1,
            last_dose_date="2025-01-20",
            updated_at=datetime(2025, 1, 21, 9, 0, tzinfo=timezone.utc),
        )

        report = engine.build_report(
            visits, [returned], subjects=[subject], month_count=2, as_of=date(2025, 2, 28)
        )

        assert isinstance(report, ComplianceReport)
        assert [t.month for t in report.trends] == ["2025-01", "2025-02"]
        assert report.trends[0].visit_timing == 50
        assert report.trends[0].drug_compliance == 50

        row = report.study_breakdown[0]
        assert row.study_id == "STUDY-A"
        assert row.timing_compliance_rate == 50
        assert row.avg_drug_compliance == 50
        assert row.overall_score == 50

        assert [a.record_id for a in report.alerts] == ["v2", "c1"]
        assert report.summary.active_alerts == 2

        data = report.to_dict()
        assert data["summary"]["total_visits"] == 2
        assert data["alerts"][0]["type"] == "timing"
        assert data["generated_at"] is not None

    def test_empty_report(self, engine):
        report = engine.build_report([], [], as_of="2025-06-30")
        assert report.study_breakdown == []
        assert report.alerts == []
        assert report.summary.overall_timing_rate == 0
        assert len(report.trends) == Config.TREND_MONTHS_DEFAULT
