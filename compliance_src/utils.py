"""Numeric helpers shared by the cycle tracker and the aggregation reducers."""

import math
from decimal import Decimal
from fractions import Fraction


def to_fraction(value) -> Fraction:
    """Convert an int, float, Decimal, str or Fraction to an exact Fraction.

    Floats go through their shortest repr so 0.1 stays 1/10.
    """
    if isinstance(value, Fraction):
        return value
    if isinstance(value, (int, Decimal)):
        return Fraction(value)
    return Fraction(str(value))


def round_half_up(value, digits: int = 0):
    """Round half away from zero, the way SQL ROUND and JS Math.round agree
    on non-negative numbers.

    Python's round() rounds half to even (round(0.5) == 0), which would
    disagree with the stored figures dashboards were built against.

    Returns an int when digits == 0, otherwise a float.
    """
    exact = to_fraction(value)
    scale = 10 ** digits
    scaled = exact * scale
    if scaled >= 0:
        rounded = math.floor(scaled + Fraction(1, 2))
    else:
        rounded = -math.floor(-scaled + Fraction(1, 2))
    if digits == 0:
        return int(rounded)
    return float(Fraction(rounded, scale))


def mean(values) -> float | None:
    """Arithmetic mean, or None for an empty sequence."""
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)
