"""Investigational product accountability cycle tracker.

A cycle is one dispensed container (bottle or kit) for one subject, from
the visit where it was dispensed to the visit where it came back. This
module owns every derived figure on a cycle:

- actual_taken = dispensed - returned
- expected_taken = round(days_on_drug * doses_per_day), floored at 0, where
  days_on_drug counts both the dispensing day and the last dose day. None
  while the container is still out (no last dose date, nothing returned).
- compliance_percentage = round(100 * actual / expected, 1), 0 without an
  expectation. Not capped: over-consumption reads above 100.
- is_compliant = percentage >= threshold, True without an expectation.

Write paths (dispense_container, record_return) recompute the derived
fields before handing the cycle back, so a persisted cycle is never stale.
"""

import logging
from dataclasses import replace
from datetime import datetime
from fractions import Fraction

from .config import Config
from .dates import diff_days, parse_optional_date
from .errors import (
    DuplicateContainer,
    InvalidReturnCount,
    MultipleOpenCycles,
    UnsupportedDosing,
)
from .models import AccountabilityCycle, ComplianceTier, CycleResult
from .utils import round_half_up, to_fraction

logger = logging.getLogger(__name__)


def validate_counts(dispensed_count: int, returned_count: int, container_id: str | None = None) -> None:
    """Check dispensed/returned counts are usable.

    Raises:
        InvalidReturnCount: negative counts or more returned than dispensed.
    """
    if dispensed_count < 0 or returned_count < 0 or returned_count > dispensed_count:
        logger.warning(
            f"Rejecting counts for container {container_id}: "
            f"dispensed={dispensed_count}, returned={returned_count}"
        )
        raise InvalidReturnCount(dispensed_count, returned_count, container_id)


def _validate_threshold(threshold: float) -> float:
    if threshold < 0 or threshold > 100:
        raise ValueError(f"Compliance threshold must be between 0 and 100, got {threshold}")
    return threshold


def _rate(doses_per_day) -> Fraction:
    rate = to_fraction(doses_per_day)
    if rate <= 0:
        raise UnsupportedDosing(f"Doses per day must be positive, got {doses_per_day!r}")
    return rate


def days_on_drug(cycle: AccountabilityCycle) -> int | None:
    """Inclusive days between dispensing and the end of the cycle.

    A container dispensed on the 1st with a last dose on the 7th covers
    7 days. None while the container is still out.
    """
    end = cycle.end_date
    if end is None:
        return None
    return diff_days(cycle.dispensing_date, end) + 1


def expected_doses(cycle: AccountabilityCycle, doses_per_day) -> int | None:
    """Doses the subject should have taken over the cycle, never negative."""
    days = days_on_drug(cycle)
    if days is None:
        return None
    return max(0, round_half_up(days * _rate(doses_per_day)))


def classify_tier(percentage: float, thresholds: dict[str, float] | None = None) -> ComplianceTier:
    """Bucket a compliance percentage into a tier."""
    thresholds = thresholds or Config.tier_thresholds()
    if percentage >= thresholds["excellent"]:
        return ComplianceTier.EXCELLENT
    if percentage >= thresholds["good"]:
        return ComplianceTier.GOOD
    if percentage >= thresholds["acceptable"]:
        return ComplianceTier.ACCEPTABLE
    return ComplianceTier.POOR


def cycle_findings(
    actual_taken: int | None,
    expected_taken: int | None,
    percentage: float | None,
    dispensed_count: int,
    thresholds: dict[str, float] | None = None,
) -> tuple[list[str], list[str]]:
    """Deviations and recommendations for a cycle's figures.

    Percentage-based findings only apply when the cycle has an expectation.
    """
    thresholds = thresholds or Config.tier_thresholds()
    deviations = []
    recommendations = []

    if expected_taken and actual_taken is not None and percentage is not None:
        if actual_taken > expected_taken:
            deviations.append(
                f"Over-consumption: {actual_taken} doses taken vs {expected_taken} expected"
            )
            recommendations.append("Reinforce proper dosing instructions with subject")

        if percentage < thresholds["acceptable"]:
            deviations.append(
                f"Poor compliance: {percentage:.1f}% (below {thresholds['acceptable']:g}% threshold)"
            )
            recommendations.append("Schedule additional subject counseling session")
            recommendations.append("Consider IP counting and compliance aids")

    if dispensed_count == 0:
        deviations.append("No IP dispensed recorded")
        recommendations.append("Verify dispensing records")

    return deviations, recommendations


def evaluate_cycle(
    cycle: AccountabilityCycle,
    doses_per_day,
    compliance_threshold: float | None = None,
    thresholds: dict[str, float] | None = None,
) -> CycleResult:
    """
    Compute the derived figures for one accountability cycle.

    Args:
        cycle: The cycle to evaluate. Its own derived fields are ignored.
        doses_per_day: Expected doses per day (see dosing.doses_per_day).
        compliance_threshold: Percentage at or above which the cycle is
            compliant. Defaults to Config.COMPLIANCE_THRESHOLD_PERCENT.
        thresholds: Tier cut-offs, defaults to Config.tier_thresholds().

    Returns:
        CycleResult with actual/expected doses, percentage, compliance flag,
        tier, and any deviations found.

    Raises:
        InvalidReturnCount: counts are negative or returned > dispensed.
        UnsupportedDosing: doses_per_day is not positive.
    """
    if compliance_threshold is None:
        compliance_threshold = Config.COMPLIANCE_THRESHOLD_PERCENT
    _validate_threshold(compliance_threshold)
    validate_counts(cycle.dispensed_count, cycle.returned_count, cycle.container_id)
    thresholds = thresholds or Config.tier_thresholds()

    actual_taken = cycle.dispensed_count - cycle.returned_count
    expected_taken = expected_doses(cycle, doses_per_day)

    if expected_taken:
        percentage = round_half_up(Fraction(100 * actual_taken, expected_taken), 1)
        is_compliant = percentage >= compliance_threshold
        tier = classify_tier(percentage, thresholds)
    else:
        # No expectation (open container or empty interval): vacuously compliant
        percentage = 0.0
        is_compliant = True
        tier = ComplianceTier.NOT_ASSESSED

    deviations, recommendations = cycle_findings(
        actual_taken, expected_taken, percentage, cycle.dispensed_count, thresholds
    )

    logger.debug(
        f"Cycle {cycle.id} ({cycle.container_id}): actual={actual_taken}, "
        f"expected={expected_taken}, pct={percentage}, compliant={is_compliant}"
    )

    return CycleResult(
        actual_taken=actual_taken,
        expected_taken=expected_taken,
        compliance_percentage=float(percentage),
        is_compliant=is_compliant,
        tier=tier,
        deviations=deviations,
        recommendations=recommendations,
    )


def apply_cycle_metrics(
    cycle: AccountabilityCycle,
    doses_per_day,
    compliance_threshold: float | None = None,
) -> AccountabilityCycle:
    """Return a copy of the cycle with its derived fields recomputed.

    This is the only place derived cycle fields are written. Call it on
    every write, immediately before persisting.
    """
    result = evaluate_cycle(cycle, doses_per_day, compliance_threshold)
    return replace(
        cycle,
        actual_taken=result.actual_taken,
        expected_taken=result.expected_taken,
        compliance_percentage=result.compliance_percentage,
        is_compliant=result.is_compliant,
    )


def find_cycle(
    cycles: list[AccountabilityCycle],
    subject_id: str,
    container_id: str,
) -> AccountabilityCycle | None:
    """Find the cycle for a subject's container, if it was ever dispensed."""
    for cycle in cycles:
        if cycle.subject_id == subject_id and cycle.container_id == container_id:
            return cycle
    return None


def dispense_container(
    existing_cycles: list[AccountabilityCycle],
    *,
    cycle_id: str,
    subject_id: str,
    container_id: str,
    dispensed_count: int,
    dispensing_date,
    doses_per_day,
    compliance_threshold: float | None = None,
    study_id: str | None = None,
    drug_id: str | None = None,
    dispensed_visit_id: str | None = None,
    updated_at: datetime | None = None,
) -> AccountabilityCycle:
    """
    Open a new accountability cycle for a container dispensed at a visit.

    Args:
        existing_cycles: Cycles already recorded (any subjects).
        cycle_id: Identifier for the new cycle record.
        subject_id: Subject receiving the container.
        container_id: Bottle/kit identifier.
        dispensed_count: Units in the container.
        dispensing_date: Day the subject started the container.
        doses_per_day: Expected doses per day for the drug.

    Returns:
        The new open cycle with derived fields set.

    Raises:
        DuplicateContainer: the container was already dispensed to this subject.
        InvalidReturnCount: dispensed_count is negative.
    """
    if find_cycle(existing_cycles, subject_id, container_id) is not None:
        logger.warning(f"Duplicate dispense of {container_id} for subject {subject_id}")
        raise DuplicateContainer(subject_id, container_id)

    validate_counts(dispensed_count, 0, container_id)

    cycle = AccountabilityCycle(
        id=cycle_id,
        subject_id=subject_id,
        container_id=container_id,
        dispensed_count=dispensed_count,
        dispensing_date=dispensing_date,
        study_id=study_id,
        drug_id=drug_id,
        dispensed_visit_id=dispensed_visit_id,
        updated_at=updated_at,
    )
    return apply_cycle_metrics(cycle, doses_per_day, compliance_threshold)


def record_return(
    cycle: AccountabilityCycle,
    *,
    returned_count: int,
    doses_per_day,
    last_dose_date=None,
    assessment_date=None,
    return_visit_id: str | None = None,
    compliance_threshold: float | None = None,
    updated_at: datetime | None = None,
) -> AccountabilityCycle:
    """
    Close (or correct) a cycle with the counts from its return visit.

    Args:
        cycle: The cycle being returned.
        returned_count: Units brought back.
        doses_per_day: Expected doses per day for the drug.
        last_dose_date: Day of the last dose from this container.
        assessment_date: Day of the return visit. Used as the end of the
            dosing interval when no last dose date is known.
        return_visit_id: Visit at which the container came back.

    Returns:
        The updated cycle with derived fields recomputed.

    Raises:
        InvalidReturnCount: returned_count is negative or exceeds dispensed.
    """
    validate_counts(cycle.dispensed_count, returned_count, cycle.container_id)

    last_dose = parse_optional_date(last_dose_date)
    if last_dose is not None and diff_days(cycle.dispensing_date, last_dose) < 0:
        logger.warning(
            f"Container {cycle.container_id}: last dose {last_dose} precedes "
            f"dispensing {cycle.dispensing_date}; expectation will be 0"
        )

    returned = replace(
        cycle,
        returned_count=returned_count,
        last_dose_date=last_dose,
        assessment_date=parse_optional_date(assessment_date) or cycle.assessment_date,
        return_visit_id=return_visit_id or cycle.return_visit_id,
        updated_at=updated_at or cycle.updated_at,
    )
    return apply_cycle_metrics(returned, doses_per_day, compliance_threshold)


def reconcile_open_cycle(
    cycles: list[AccountabilityCycle],
    subject_id: str,
    container_id: str | None = None,
) -> AccountabilityCycle | None:
    """
    Find the subject's single container that is still out.

    Args:
        cycles: Cycles to search (other subjects are ignored).
        subject_id: Subject to reconcile.
        container_id: When given, only return the open cycle if it is this
            container.

    Returns:
        The open cycle, or None if nothing is outstanding.

    Raises:
        MultipleOpenCycles: the subject has more than one unreturned
            container. This is a data-quality problem and is never resolved
            by picking one.
    """
    open_cycles = [c for c in cycles if c.subject_id == subject_id and c.is_open]

    if len(open_cycles) > 1:
        logger.warning(
            f"Subject {subject_id} has {len(open_cycles)} open cycles: "
            f"{[c.container_id for c in open_cycles]}"
        )
        raise MultipleOpenCycles(subject_id, open_cycles)

    if not open_cycles:
        return None

    found = open_cycles[0]
    if container_id is not None and found.container_id != container_id:
        return None
    return found


def suggest_return_candidates(
    cycles: list[AccountabilityCycle],
    subject_id: str,
    previous_visit_id: str | None = None,
) -> list[AccountabilityCycle]:
    """Containers a subject is expected to bring back at a visit.

    Prefers containers dispensed at the previous visit that are still out,
    falling back to every outstanding container for the subject.
    """
    outstanding = sorted(
        (c for c in cycles if c.subject_id == subject_id and c.is_open),
        key=lambda c: (c.dispensing_date, c.container_id),
    )
    if previous_visit_id:
        from_previous = [c for c in outstanding if c.dispensed_visit_id == previous_visit_id]
        if from_previous:
            return from_previous
    return outstanding
