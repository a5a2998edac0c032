"""Aggregation and alerting over evaluated visits and cycles.

Reducers here read the derived fields already on the records (as set by
visits.apply_visit_timing and cycles.apply_cycle_metrics); they never
recompute them. All of them accept empty input and return zero-valued
results, since a new study has no data yet.

Rules shared by every reducer:
- Visits count only when completed and their window is known. A None
  window is left out of both numerator and denominator.
- Cycles count only when they carry an expectation (expected_taken > 0).
  Open containers contribute no signal.
- Per-study and overall drug averages cap each cycle at 100% so over-use
  cannot pull an average up. Trends and alerts use the uncapped value.
"""

import logging
from datetime import datetime, timezone
from fractions import Fraction

import pandas as pd

from .config import Config
from .dates import month_key, month_label, month_range, to_utc_datetime, today_utc
from .cycles import classify_tier, cycle_findings
from .models import (
    AccountabilityCycle,
    AlertSeverity,
    AlertType,
    ComplianceAlert,
    ComplianceSummary,
    ComplianceTier,
    ScheduledVisit,
    StudyBreakdownRow,
    Subject,
    SubjectCompliance,
    TrendPoint,
)
from .utils import mean, round_half_up, to_fraction

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _timing_eligible(visit: ScheduledVisit) -> bool:
    return visit.is_completed and visit.is_within_window is not None


def _drug_eligible(cycle: AccountabilityCycle) -> bool:
    return cycle.has_expectation and cycle.compliance_percentage is not None


def _study_lookup(subjects: list[Subject] | None) -> dict[str, str]:
    return {s.id: s.study_id for s in (subjects or [])}


def _study_of(record, subject_study: dict[str, str]) -> str | None:
    return record.study_id or subject_study.get(record.subject_id)


def _percent(numerator: int, denominator: int) -> int:
    if denominator == 0:
        return 0
    return round_half_up(Fraction(numerator * 100, denominator))


def _capped_average(percentages: list[float]) -> int:
    average = mean(min(to_fraction(p), 100) for p in percentages)
    return 0 if average is None else round_half_up(average)


def _monthly_stats(rows: list[tuple[str, float]], months: list[str]) -> pd.DataFrame:
    """Mean and count of values per month, one row per month in `months`."""
    df = pd.DataFrame({
        "month": pd.Series([r[0] for r in rows], dtype="object"),
        "value": pd.Series([r[1] for r in rows], dtype="float64"),
    })
    stats = df.groupby("month")["value"].agg(["mean", "count"])
    return stats.reindex(months)


def build_trends(
    visits: list[ScheduledVisit],
    cycles: list[AccountabilityCycle],
    month_count: int | None = None,
    as_of=None,
) -> list[TrendPoint]:
    """
    Monthly visit-timing and drug-compliance trend.

    Args:
        visits: Visits with derived timing fields.
        cycles: Cycles with derived compliance fields.
        month_count: Number of months ending with the month of `as_of`.
            Defaults to Config.TREND_MONTHS_DEFAULT.
        as_of: Last day of the window. Defaults to today (UTC).

    Returns:
        One TrendPoint per month, oldest first. Visit timing is the share of
        in-window visits (each visit 0 or 100); drug compliance is the mean
        uncapped cycle percentage. Months without data report 0.
    """
    if month_count is None:
        month_count = Config.TREND_MONTHS_DEFAULT
    if month_count <= 0:
        return []

    months = month_range(as_of or today_utc(), month_count)

    visit_rows = [
        (month_key(v.visit_date), 100.0 if v.is_within_window else 0.0)
        for v in visits
        if _timing_eligible(v) and v.visit_date is not None
    ]
    drug_rows = [
        (month_key(c.reporting_date), float(c.compliance_percentage))
        for c in cycles
        if _drug_eligible(c) and c.reporting_date is not None
    ]

    visit_stats = _monthly_stats(visit_rows, months)
    drug_stats = _monthly_stats(drug_rows, months)

    trends = []
    for month in months:
        visit_mean = visit_stats.at[month, "mean"]
        drug_mean = drug_stats.at[month, "mean"]
        visit_count = visit_stats.at[month, "count"]
        drug_count = drug_stats.at[month, "count"]
        trends.append(
            TrendPoint(
                month=month,
                label=month_label(month),
                visit_timing=0 if pd.isna(visit_mean) else round_half_up(float(visit_mean)),
                drug_compliance=0 if pd.isna(drug_mean) else round_half_up(float(drug_mean)),
                visit_count=0 if pd.isna(visit_count) else int(visit_count),
                drug_record_count=0 if pd.isna(drug_count) else int(drug_count),
            )
        )

    logger.info(
        f"Built {len(trends)} trend buckets from {len(visit_rows)} visits "
        f"and {len(drug_rows)} cycles"
    )
    return trends


def build_study_breakdown(
    visits: list[ScheduledVisit],
    cycles: list[AccountabilityCycle],
    subjects: list[Subject] | None = None,
) -> list[StudyBreakdownRow]:
    """
    Per-study timing and drug compliance.

    Records without a study_id are resolved through `subjects`; records
    whose study cannot be resolved are skipped.

    Returns:
        One row per study seen in the completed visits or cycles, sorted by
        study id. overall_score is the rounded mean of the timing rate and
        the capped drug average.
    """
    subject_study = _study_lookup(subjects)
    visit_tally: dict[str, list[int]] = {}  # study -> [eligible, within]
    drug_values: dict[str, list[float]] = {}

    for visit in visits:
        if not visit.is_completed:
            continue
        study_id = _study_of(visit, subject_study)
        if study_id is None:
            logger.debug(f"Visit {visit.id} has no resolvable study; skipped")
            continue
        tally = visit_tally.setdefault(study_id, [0, 0])
        if visit.is_within_window is not None:
            tally[0] += 1
        if visit.is_within_window is True:
            tally[1] += 1

    for cycle in cycles:
        study_id = _study_of(cycle, subject_study)
        if study_id is None:
            logger.debug(f"Cycle {cycle.id} has no resolvable study; skipped")
            continue
        values = drug_values.setdefault(study_id, [])
        if _drug_eligible(cycle):
            values.append(cycle.compliance_percentage)

    rows = []
    for study_id in sorted(set(visit_tally) | set(drug_values)):
        eligible, within = visit_tally.get(study_id, [0, 0])
        percentages = drug_values.get(study_id, [])
        timing_rate = _percent(within, eligible)
        drug_rate = _capped_average(percentages)
        rows.append(
            StudyBreakdownRow(
                study_id=study_id,
                total_visits=eligible,
                within_window_visits=within,
                timing_compliance_rate=timing_rate,
                total_drug_records=len(percentages),
                avg_drug_compliance=drug_rate,
                overall_score=round_half_up(Fraction(timing_rate + drug_rate, 2)),
            )
        )
    return rows


def _visit_timestamp(visit: ScheduledVisit) -> datetime:
    if visit.updated_at is not None:
        return visit.updated_at
    if visit.visit_date is not None:
        return to_utc_datetime(visit.visit_date)
    return _EPOCH


def _cycle_timestamp(cycle: AccountabilityCycle) -> datetime:
    if cycle.updated_at is not None:
        return cycle.updated_at
    if cycle.reporting_date is not None:
        return to_utc_datetime(cycle.reporting_date)
    return _EPOCH


def collect_alerts(
    visits: list[ScheduledVisit],
    cycles: list[AccountabilityCycle],
    subjects: list[Subject] | None = None,
    low_threshold: float | None = None,
    high_threshold: float | None = None,
) -> list[ComplianceAlert]:
    """Every alert condition, newest first, ties broken by record id."""
    low = Config.ALERT_LOW_COMPLIANCE if low_threshold is None else low_threshold
    high = Config.ALERT_HIGH_COMPLIANCE if high_threshold is None else high_threshold
    subject_study = _study_lookup(subjects)
    alerts = []

    for visit in visits:
        if not visit.is_completed or visit.is_within_window is not False:
            continue
        description = "Visit completed outside protocol window"
        if visit.days_from_scheduled is not None:
            description += f" ({visit.days_from_scheduled:+d} days from target)"
        alerts.append(
            ComplianceAlert(
                id=f"{AlertType.TIMING.value}-{visit.id}",
                alert_type=AlertType.TIMING,
                severity=AlertSeverity.MEDIUM,
                record_id=visit.id,
                subject_id=visit.subject_id,
                study_id=_study_of(visit, subject_study),
                visit_name=visit.visit_name,
                description=description,
                value=visit.days_from_scheduled,
                created_at=_visit_timestamp(visit),
            )
        )

    for cycle in cycles:
        if not _drug_eligible(cycle):
            continue
        percentage = cycle.compliance_percentage
        if percentage < low:
            description = f"Low investigational product compliance ({percentage:.1f}%)"
        elif percentage > high:
            description = f"Investigational product over-use ({percentage:.1f}%)"
        else:
            continue
        alerts.append(
            ComplianceAlert(
                id=f"{AlertType.DRUG.value}-{cycle.id}",
                alert_type=AlertType.DRUG,
                severity=AlertSeverity.HIGH,
                record_id=cycle.id,
                subject_id=cycle.subject_id,
                study_id=_study_of(cycle, subject_study),
                visit_name="IP Compliance",
                description=description,
                value=percentage,
                created_at=_cycle_timestamp(cycle),
            )
        )

    # Two stable passes: id ascending, then newest first
    alerts.sort(key=lambda a: (a.record_id, a.alert_type.value))
    alerts.sort(key=lambda a: a.created_at, reverse=True)
    return alerts


def build_alerts(
    visits: list[ScheduledVisit],
    cycles: list[AccountabilityCycle],
    max_count: int | None = None,
    subjects: list[Subject] | None = None,
    low_threshold: float | None = None,
    high_threshold: float | None = None,
) -> list[ComplianceAlert]:
    """
    The most recent compliance alerts across visits and cycles combined.

    One medium-severity alert per out-of-window completed visit and one
    high-severity alert per cycle below `low_threshold` or above
    `high_threshold` (80 and 100 by default).

    Args:
        max_count: Cap on the number returned. Defaults to Config.ALERT_LIMIT.
    """
    if max_count is None:
        max_count = Config.ALERT_LIMIT
    if max_count <= 0:
        return []
    alerts = collect_alerts(visits, cycles, subjects, low_threshold, high_threshold)
    logger.info(f"{len(alerts)} alert conditions found, returning {min(len(alerts), max_count)}")
    return alerts[:max_count]


def build_summary(
    visits: list[ScheduledVisit],
    cycles: list[AccountabilityCycle],
    active_alerts: int | None = None,
) -> ComplianceSummary:
    """Headline timing/drug rates across every study in the input."""
    eligible = [v for v in visits if _timing_eligible(v)]
    within = sum(1 for v in eligible if v.is_within_window)
    percentages = [c.compliance_percentage for c in cycles if _drug_eligible(c)]

    if active_alerts is None:
        active_alerts = len(collect_alerts(visits, cycles))

    return ComplianceSummary(
        overall_timing_rate=_percent(within, len(eligible)),
        overall_drug_rate=_capped_average(percentages),
        total_visits=len(eligible),
        total_drug_records=len(cycles),
        assessed_drug_records=len(percentages),
        active_alerts=active_alerts,
    )


def _subject_weights(weights: dict[str, float] | None) -> tuple[Fraction, Fraction]:
    weights = weights or Config.subject_weights()
    drug_weight = to_fraction(weights["drug"])
    visit_weight = to_fraction(weights["visit"])
    if drug_weight < 0 or visit_weight < 0 or drug_weight + visit_weight == 0:
        raise ValueError(f"Subject weights must be non-negative and not both zero, got {weights}")
    return drug_weight, visit_weight


def build_subject_compliance(
    subject_id: str,
    visits: list[ScheduledVisit],
    cycles: list[AccountabilityCycle],
    weights: dict[str, float] | None = None,
    thresholds: dict[str, float] | None = None,
) -> SubjectCompliance:
    """
    Roll one subject's cycles and visits into a single weighted figure.

    Drug compliance is the capped mean over the subject's assessed cycles;
    visit compliance is the share of in-window completed visits. The two are
    combined with `weights` (drug 0.7 / visit 0.3 by default). When only one
    side has data it stands alone; with neither the tier is not_assessed.

    Args:
        subject_id: Subject to roll up. Records of other subjects are ignored.
        visits: Visits with derived timing fields.
        cycles: Cycles with derived compliance fields.
        weights: {"drug": w, "visit": w}, defaults to Config.subject_weights().
        thresholds: Tier cut-offs, defaults to Config.tier_thresholds().

    Returns:
        SubjectCompliance with the rounded percentage (2 decimals), tier, and
        deduplicated deviations and recommendations.
    """
    drug_weight, visit_weight = _subject_weights(weights)
    thresholds = thresholds or Config.tier_thresholds()

    subject_visits = [v for v in visits if v.subject_id == subject_id and _timing_eligible(v)]
    subject_cycles = [c for c in cycles if c.subject_id == subject_id]
    assessed = [c.compliance_percentage for c in subject_cycles if _drug_eligible(c)]

    drug = mean(min(to_fraction(p), 100) for p in assessed)
    visit = None
    if subject_visits:
        within = sum(1 for v in subject_visits if v.is_within_window)
        visit = Fraction(within * 100, len(subject_visits))

    parts = [(value, weight) for value, weight in ((drug, drug_weight), (visit, visit_weight))
             if value is not None and weight > 0]
    if parts:
        weighted = sum(value * weight for value, weight in parts) / sum(w for _, w in parts)
        percentage = round_half_up(weighted, 2)
        tier = classify_tier(percentage, thresholds)
    else:
        percentage = 0.0
        tier = ComplianceTier.NOT_ASSESSED

    deviations = []
    recommendations = []
    for cycle in subject_cycles:
        if cycle.actual_taken is None:
            continue
        cycle_deviations, cycle_recommendations = cycle_findings(
            cycle.actual_taken,
            cycle.expected_taken,
            cycle.compliance_percentage,
            cycle.dispensed_count,
            thresholds,
        )
        deviations.extend(cycle_deviations)
        recommendations.extend(cycle_recommendations)

    for visit_record in subject_visits:
        if visit_record.is_within_window:
            continue
        label = visit_record.visit_name or visit_record.id
        offset = visit_record.days_from_scheduled
        if offset is None:
            deviations.append(f"Visit {label} completed outside protocol window")
        else:
            deviations.append(
                f"Visit {label} completed {offset:+d} days from target, outside protocol window"
            )
        recommendations.append("Document protocol deviation")

    deviations = list(dict.fromkeys(deviations))
    recommendations = list(dict.fromkeys(recommendations))
    if tier == ComplianceTier.POOR:
        for extra in (
            "Consider subject for enhanced monitoring",
            "Review study protocol adherence with subject",
        ):
            if extra not in recommendations:
                recommendations.append(extra)

    logger.debug(
        f"Subject {subject_id}: {percentage}% ({tier.value}) from "
        f"{len(assessed)} cycles and {len(subject_visits)} visits"
    )

    return SubjectCompliance(
        subject_id=subject_id,
        percentage=float(percentage),
        tier=tier,
        drug_compliance=None if drug is None else round_half_up(drug, 2),
        visit_compliance=None if visit is None else round_half_up(visit, 2),
        drug_record_count=len(assessed),
        visit_count=len(subject_visits),
        deviations=deviations,
        recommendations=recommendations,
    )
