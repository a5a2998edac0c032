"""Dosing frequency model.

Maps a study's dosing frequency code to the number of doses a subject is
expected to take per day. Unknown codes fail instead of falling back to
once daily.
"""

from fractions import Fraction

from .errors import UnknownDosingFrequency, UnsupportedDosing
from .models import DosingFrequency
from .utils import to_fraction


DOSES_PER_DAY: dict[DosingFrequency, Fraction] = {
    DosingFrequency.QD: Fraction(1),
    DosingFrequency.BID: Fraction(2),
    DosingFrequency.TID: Fraction(3),
    DosingFrequency.QID: Fraction(4),
    DosingFrequency.WEEKLY: Fraction(1, 7),
}


def parse_frequency(code) -> DosingFrequency:
    """Resolve a frequency code ('QD', 'bid', 'Weekly', ...) to the enum.

    Raises:
        UnknownDosingFrequency: for anything that is not a recognized code.
    """
    if isinstance(code, DosingFrequency):
        return code
    if not isinstance(code, str) or not code.strip():
        raise UnknownDosingFrequency(code)
    normalized = code.strip().lower()
    for freq in DosingFrequency:
        if freq.value.lower() == normalized:
            return freq
    raise UnknownDosingFrequency(code)


def doses_per_day(frequency_code, override=None) -> Fraction:
    """Expected doses per day for a dosing frequency.

    Args:
        frequency_code: QD, BID, TID, QID, weekly or custom.
        override: Explicit doses-per-day (e.g. from the study drug record).
            Required for 'custom'; takes precedence for every other code.

    Returns:
        Exact rational rate, e.g. Fraction(1, 7) for weekly.

    Raises:
        UnknownDosingFrequency: unrecognized code.
        UnsupportedDosing: 'custom' without an override, or a non-positive
            override.
    """
    freq = parse_frequency(frequency_code)

    if override is not None:
        rate = to_fraction(override)
        if rate <= 0:
            raise UnsupportedDosing(f"Dose-per-day override must be positive, got {override!r}")
        return rate

    if freq == DosingFrequency.CUSTOM:
        raise UnsupportedDosing("Custom dosing frequency requires a dose-per-day override")

    return DOSES_PER_DAY[freq]
