"""Visit timing evaluator.

Decides whether a completed visit happened inside its protocol window:

    target = anchor_date + template.visit_day_offset
    days_from_scheduled = visit_date - target
    within_window = -window_before <= days_from_scheduled <= window_after

Missing template or anchor date leaves both fields None. An unknown
window is never reported as in-window.
"""

import logging
from dataclasses import replace
from datetime import date

from .config import Config
from .dates import add_days, diff_days, parse_optional_date, today_utc
from .models import (
    ScheduledVisit,
    ScheduledVisitDate,
    Subject,
    TimingResult,
    TimingUnit,
    VisitScheduleTemplate,
    WindowStatus,
)

logger = logging.getLogger(__name__)


def visit_day_from_timing(timing_value: int, timing_unit, anchor_day: int | None = None) -> int:
    """
    Convert schedule-of-events timing into a visit-day offset.

    Day 0 studies count the anchor date as day 0, so Week 4 is 28 days out.
    Day 1 studies count the anchor date as day 1, so Week 4 lands one day
    earlier (27 days after the anchor).

    Args:
        timing_value: Numeric timing (e.g. 4, -14).
        timing_unit: days, weeks or months (months are 30 days).
        anchor_day: 0 or 1. Defaults to Config.VISIT_ANCHOR_DAY.
    """
    if anchor_day is None:
        anchor_day = Config.VISIT_ANCHOR_DAY
    if anchor_day not in (0, 1):
        raise ValueError(f"Anchor day must be 0 or 1, got {anchor_day}")
    unit = timing_unit if isinstance(timing_unit, TimingUnit) else TimingUnit(timing_unit)
    offset = timing_value * unit.days
    return offset - 1 if anchor_day == 1 else offset


def template_from_timing(
    template_id: str,
    study_id: str,
    timing_value: int,
    timing_unit,
    anchor_day: int | None = None,
    window_before_days: int | None = None,
    window_after_days: int | None = None,
    visit_name: str = "",
    is_required: bool = True,
) -> VisitScheduleTemplate:
    """Build a schedule template from value/unit timing."""
    return VisitScheduleTemplate(
        id=template_id,
        study_id=study_id,
        visit_day_offset=visit_day_from_timing(timing_value, timing_unit, anchor_day),
        window_before_days=(
            Config.DEFAULT_WINDOW_BEFORE_DAYS if window_before_days is None else window_before_days
        ),
        window_after_days=(
            Config.DEFAULT_WINDOW_AFTER_DAYS if window_after_days is None else window_after_days
        ),
        visit_name=visit_name,
        is_required=is_required,
    )


def visit_window(template: VisitScheduleTemplate, anchor_date) -> tuple[date, date, date]:
    """Target date and the first/last day of the protocol window."""
    target = add_days(anchor_date, template.visit_day_offset)
    return (
        target,
        add_days(target, -template.window_before_days),
        add_days(target, template.window_after_days),
    )


def build_visit_schedule(
    templates: list[VisitScheduleTemplate],
    anchor_date,
) -> list[ScheduledVisitDate]:
    """
    Lay out a subject's full visit schedule from their anchor date.

    Args:
        templates: The study's schedule-of-events templates.
        anchor_date: Subject's randomization/baseline date.

    Returns:
        One entry per template, ordered by visit day (then template id).
        Empty when the subject has no anchor date yet.
    """
    anchor = parse_optional_date(anchor_date)
    if anchor is None:
        logger.debug("No anchor date; visit schedule not built")
        return []

    schedule = []
    for template in sorted(templates, key=lambda t: (t.visit_day_offset, t.id)):
        target, window_start, window_end = visit_window(template, anchor)
        schedule.append(
            ScheduledVisitDate(
                template_id=template.id,
                visit_name=template.visit_name,
                visit_day_offset=template.visit_day_offset,
                target_date=target,
                window_start=window_start,
                window_end=window_end,
                is_required=template.is_required,
            )
        )
    return schedule


def evaluate_visit(
    visit: ScheduledVisit,
    template: VisitScheduleTemplate | None = None,
    anchor_date=None,
) -> TimingResult:
    """
    Evaluate a visit against its protocol window.

    Args:
        visit: The visit to check. Only completed visits are evaluated.
        template: Schedule template the visit was planned from.
        anchor_date: Subject's anchor (randomization/section start) date.

    Returns:
        TimingResult. Both fields are None when the visit is not completed,
        or when the template, anchor date or visit date is missing.
    """
    anchor = parse_optional_date(anchor_date)

    if not visit.is_completed:
        return TimingResult()
    if template is None or anchor is None or visit.visit_date is None:
        logger.debug(
            f"Visit {visit.id}: window undetermined "
            f"(template={'yes' if template else 'no'}, anchor={anchor})"
        )
        return TimingResult()

    target = add_days(anchor, template.visit_day_offset)
    days_from_scheduled = diff_days(target, visit.visit_date)
    within_window = (
        -template.window_before_days <= days_from_scheduled <= template.window_after_days
    )

    logger.debug(
        f"Visit {visit.id}: target={target}, actual={visit.visit_date}, "
        f"offset={days_from_scheduled:+d}, within_window={within_window}"
    )

    return TimingResult(
        within_window=within_window,
        days_from_scheduled=days_from_scheduled,
        target_date=target,
    )


def apply_visit_timing(
    visit: ScheduledVisit,
    template: VisitScheduleTemplate | None = None,
    anchor_date=None,
) -> ScheduledVisit:
    """Return a copy of the visit with its derived timing fields recomputed.

    Call on every status, date, template or anchor change before persisting.
    Visits that are not completed come back with both fields cleared.
    """
    result = evaluate_visit(visit, template, anchor_date)
    return replace(
        visit,
        is_within_window=result.within_window,
        days_from_scheduled=result.days_from_scheduled,
    )


def evaluate_visit_batch(
    visits: list[ScheduledVisit],
    templates: list[VisitScheduleTemplate],
    subjects: list[Subject],
) -> list[ScheduledVisit]:
    """Recompute timing for many visits, resolving template and anchor by id."""
    templates_by_id = {t.id: t for t in templates}
    subjects_by_id = {s.id: s for s in subjects}

    evaluated = []
    for visit in visits:
        template = templates_by_id.get(visit.template_id) if visit.template_id else None
        subject = subjects_by_id.get(visit.subject_id)
        anchor = subject.anchor_date if subject else None
        evaluated.append(apply_visit_timing(visit, template, anchor))
    return evaluated


def visit_window_status(
    template: VisitScheduleTemplate,
    anchor_date,
    actual_date=None,
    as_of=None,
) -> WindowStatus:
    """
    Classify a visit against its window.

    With an actual date the visit is completed, early or late. Without one
    it is scheduled, due or overdue relative to `as_of` (today in UTC by
    default).
    """
    _, window_start, window_end = visit_window(template, anchor_date)

    actual = parse_optional_date(actual_date)
    if actual is not None:
        if diff_days(window_start, actual) < 0:
            return WindowStatus.EARLY
        if diff_days(actual, window_end) < 0:
            return WindowStatus.LATE
        return WindowStatus.COMPLETED

    today = parse_optional_date(as_of) or today_utc()
    if diff_days(window_start, today) < 0:
        return WindowStatus.SCHEDULED
    if diff_days(today, window_end) >= 0:
        return WindowStatus.DUE
    return WindowStatus.OVERDUE
