"""Exact decimal helpers and institutional cost constants.

Every money, rate and occupancy value in the engine is a ``Decimal``. Floats are
only accepted on the way in (converted through ``str``) and never produced.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
Q2 = Decimal("0.01")

# Loaded cost of one month of salary: social charges on top of base pay, and
# 14 yearly payments spread over 11 working months.
SALARY_LOAD_FACTOR = Decimal("1.223")
ANNUAL_PAYMENT_FACTOR = Decimal(14) / Decimal(11)

# Applied to realized staff cost in the result/slack formulas. Not the
# project's own ``overhead`` field.
OVERHEAD_PENALTY_RATE = Decimal("-0.15")

# Maximum combined occupancy of one person in one month.
OCCUPANCY_CEILING = ONE

# Finest steps the store keeps for occupancy (Numeric(5, 4)) and financing rate (Numeric(7, 6)).
OCCUPANCY_STEP = Decimal("0.0001")
FINANCING_RATE_STEP = Decimal("0.000001")

# Real cost / submitted budget ratios used to classify portfolio health.
HEALTHY_COST_RATIO = Decimal("0.7")
AT_RISK_COST_RATIO = Decimal("0.9")


def to_decimal(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def q2(value: Decimal) -> Decimal:
    return value.quantize(Q2, rounding=ROUND_HALF_UP)


def fits_step(value: Decimal, step: Decimal) -> bool:
    """Whether ``value`` is stored without rounding at the given precision."""

    return value == value.quantize(step)


def safe_div(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator == ZERO:
        return ZERO
    return numerator / denominator


def percent_to_fraction(percent: Decimal | int | float | str | None) -> Decimal:
    """Convert a 0..100 percentage into the canonical 0..1 fraction."""

    return to_decimal(percent) / HUNDRED


def fraction_to_percent(fraction: Decimal | int | float | str | None) -> Decimal:
    return to_decimal(fraction) * HUNDRED


def percent_label(fraction: Decimal) -> str:
    whole = fraction_to_percent(fraction).quantize(ONE, rounding=ROUND_HALF_UP)
    return f"{whole}%"


def adjusted_salary(base_salary: Decimal) -> Decimal:
    """Fully loaded monthly cost of a person for a 1.0 occupancy."""

    return base_salary * SALARY_LOAD_FACTOR * ANNUAL_PAYMENT_FACTOR
