"""Unit tests for the visit timing evaluator.

Tests cover window boundaries, the anchor-date scenario used by the study
dashboards, visits whose window cannot be determined, timing conversion
for Day 0 / Day 1 protocols, and open-window status classification.
"""

import pytest
from datetime import date

from compliance_src.models import (
    ScheduledVisit,
    Subject,
    TimingUnit,
    VisitScheduleTemplate,
    VisitStatus,
    WindowStatus,
)
from compliance_src.visits import (
    apply_visit_timing,
    build_visit_schedule,
    evaluate_visit,
    evaluate_visit_batch,
    template_from_timing,
    visit_day_from_timing,
    visit_window,
    visit_window_status,
)

ANCHOR = "2025-01-01"


@pytest.fixture
def day_14_template():
    """Day 14 visit with a +/-3 day window."""
    return VisitScheduleTemplate(
        id="tmpl-d14",
        study_id="STUDY-A",
        visit_day_offset=14,
        window_before_days=3,
        window_after_days=3,
        visit_name="Day 14",
    )


def completed_visit(visit_date, **overrides) -> ScheduledVisit:
    defaults = dict(
        id="visit-1",
        subject_id="subj-1",
        visit_date=visit_date,
        status=VisitStatus.COMPLETED,
        template_id="tmpl-d14",
    )
    defaults.update(overrides)
    return ScheduledVisit(**defaults)


class TestWindowEvaluation:
    """Test the within-window decision for completed visits."""

    def test_on_target(self, day_14_template):
        result = evaluate_visit(completed_visit("2025-01-15"), day_14_template, ANCHOR)

        assert result.target_date == date(2025, 1, 15)
        assert result.days_from_scheduled == 0
        assert result.within_window is True

    def test_last_day_of_window(self, day_14_template):
        result = evaluate_visit(completed_visit("2025-01-18"), day_14_template, ANCHOR)
        assert result.days_from_scheduled == 3
        assert result.within_window is True

    def test_one_day_after_window(self, day_14_template):
        result = evaluate_visit(completed_visit("2025-01-19"), day_14_template, ANCHOR)
        assert result.days_from_scheduled == 4
        assert result.within_window is False

    def test_first_day_of_window(self, day_14_template):
        result = evaluate_visit(completed_visit("2025-01-12"), day_14_template, ANCHOR)
        assert result.days_from_scheduled == -3
        assert result.within_window is True

    def test_one_day_before_window(self, day_14_template):
        result = evaluate_visit(completed_visit("2025-01-11"), day_14_template, ANCHOR)
        assert result.days_from_scheduled == -4
        assert result.within_window is False

    def test_asymmetric_window(self):
        template = VisitScheduleTemplate(
            id="t", study_id="S", visit_day_offset=28, window_before_days=0, window_after_days=7
        )
        early = evaluate_visit(completed_visit("2025-01-28"), template, ANCHOR)
        late_ok = evaluate_visit(completed_visit("2025-02-05"), template, ANCHOR)

        assert early.days_from_scheduled == -1
        assert early.within_window is False
        assert late_ok.days_from_scheduled == 7
        assert late_ok.within_window is True

    def test_deterministic(self, day_14_template):
        visit = completed_visit("2025-01-18")
        assert evaluate_visit(visit, day_14_template, ANCHOR) == evaluate_visit(
            visit, day_14_template, ANCHOR
        )


class TestUndeterminedWindow:
    """A window that cannot be computed is never reported as in-window."""

    def test_missing_template(self):
        result = evaluate_visit(completed_visit("2025-01-15"), None, ANCHOR)
        assert result.within_window is None
        assert result.days_from_scheduled is None
        assert not result.is_determined

    def test_missing_anchor(self, day_14_template):
        result = evaluate_visit(completed_visit("2025-01-15"), day_14_template, None)
        assert result.within_window is None
        assert result.days_from_scheduled is None

    @pytest.mark.parametrize(
        "status", [VisitStatus.SCHEDULED, VisitStatus.MISSED, VisitStatus.CANCELLED]
    )
    def test_not_completed(self, day_14_template, status):
        visit = completed_visit("2025-01-15", status=status)
        result = evaluate_visit(visit, day_14_template, ANCHOR)
        assert result.within_window is None

    def test_status_string_coerced(self, day_14_template):
        visit = completed_visit("2025-01-15", status="completed")
        assert evaluate_visit(visit, day_14_template, ANCHOR).within_window is True


class TestApplyVisitTiming:
    """Test the write-path recompute."""

    def test_sets_derived_fields(self, day_14_template):
        visit = apply_visit_timing(completed_visit("2025-01-19"), day_14_template, ANCHOR)
        assert visit.is_within_window is False
        assert visit.days_from_scheduled == 4

    def test_clears_fields_when_no_longer_completed(self, day_14_template):
        visit = completed_visit(
            "2025-01-19",
            status=VisitStatus.CANCELLED,
            is_within_window=False,
            days_from_scheduled=4,
        )
        updated = apply_visit_timing(visit, day_14_template, ANCHOR)
        assert updated.is_within_window is None
        assert updated.days_from_scheduled is None

    def test_batch_resolves_template_and_anchor(self, day_14_template):
        subjects = [
            Subject(id="subj-1", study_id="STUDY-A", anchor_date=ANCHOR),
            Subject(id="subj-2", study_id="STUDY-A"),
        ]
        visits = [
            completed_visit("2025-01-18", id="v1"),
            completed_visit("2025-01-18", id="v2", subject_id="subj-2"),
            completed_visit("2025-01-18", id="v3", template_id="missing"),
        ]
        evaluated = evaluate_visit_batch(visits, [day_14_template], subjects)

        assert [v.is_within_window for v in evaluated] == [True, None, None]
        assert evaluated[0].days_from_scheduled == 3


class TestTimingConversion:
    """Test schedule-of-events timing to visit-day offset."""

    @pytest.mark.parametrize(
        "value, unit, expected",
        [
            (14, "days", 14),
            (4, "weeks", 28),
            (3, "months", 90),
            (-2, TimingUnit.WEEKS, -14),
            (0, "days", 0),
        ],
    )
    def test_day_zero_protocol(self, value, unit, expected):
        assert visit_day_from_timing(value, unit, anchor_day=0) == expected

    def test_day_one_protocol(self):
        assert visit_day_from_timing(4, "weeks", anchor_day=1) == 27
        assert visit_day_from_timing(1, "days", anchor_day=1) == 0

    def test_invalid_anchor_day(self):
        with pytest.raises(ValueError):
            visit_day_from_timing(4, "weeks", anchor_day=2)

    def test_invalid_unit(self):
        with pytest.raises(ValueError):
            visit_day_from_timing(4, "fortnights", anchor_day=0)

    def test_template_from_timing(self):
        template = template_from_timing(
            "tmpl-w4", "STUDY-A", 4, "weeks", anchor_day=0, visit_name="Week 4"
        )
        assert template.visit_day_offset == 28
        assert template.window_before_days == 3
        assert template.window_after_days == 3
        assert template.to_dict()["visit_name"] == "Week 4"


class TestWindowStatus:
    """Test scheduled/due/overdue and early/late classification."""

    def test_visit_window(self, day_14_template):
        assert visit_window(day_14_template, ANCHOR) == (
            date(2025, 1, 15),
            date(2025, 1, 12),
            date(2025, 1, 18),
        )

    @pytest.mark.parametrize(
        "actual, expected",
        [
            ("2025-01-11", WindowStatus.EARLY),
            ("2025-01-12", WindowStatus.COMPLETED),
            ("2025-01-18", WindowStatus.COMPLETED),
            ("2025-01-19", WindowStatus.LATE),
        ],
    )
    def test_completed_visits(self, day_14_template, actual, expected):
        assert visit_window_status(day_14_template, ANCHOR, actual_date=actual) == expected

    @pytest.mark.parametrize(
        "as_of, expected",
        [
            ("2025-01-11", WindowStatus.SCHEDULED),
            ("2025-01-12", WindowStatus.DUE),
            ("2025-01-18", WindowStatus.DUE),
            ("2025-01-19", WindowStatus.OVERDUE),
        ],
    )
    def test_outstanding_visits(self, day_14_template, as_of, expected):
        assert visit_window_status(day_14_template, ANCHOR, as_of=as_of) == expected


class TestVisitSchedule:
    """Test laying out a subject's planned visits."""

    def test_schedule_ordered_by_visit_day(self, day_14_template):
        day_28 = VisitScheduleTemplate(
            id="tmpl-d28", study_id="STUDY-A", visit_day_offset=28,
            window_before_days=5, window_after_days=2, visit_name="Day 28",
            is_required=False,
        )

        schedule = build_visit_schedule([day_28, day_14_template], ANCHOR)

        assert [s.template_id for s in schedule] == ["tmpl-d14", "tmpl-d28"]
        first, second = schedule
        assert first.target_date == date(2025, 1, 15)
        assert first.window_start == date(2025, 1, 12)
        assert first.window_end == date(2025, 1, 18)
        assert second.window_start == date(2025, 1, 24)
        assert second.window_end == date(2025, 1, 31)
        assert second.to_dict() == {
            "template_id": "tmpl-d28",
            "visit_name": "Day 28",
            "visit_day_offset": 28,
            "target_date": "2025-01-29",
            "window_start": "2025-01-24",
            "window_end": "2025-01-31",
            "is_required": False,
        }

    def test_missing_anchor(self, day_14_template):
        assert build_visit_schedule([day_14_template], None) == []

    def test_no_templates(self):
        assert build_visit_schedule([], ANCHOR) == []
