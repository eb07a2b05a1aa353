"""
dopaya.engine.points — Impact Points Rounding Rule
====================================================

The Points Ledger is the only place that turns a raw (possibly fractional)
points delta into the integer that lands on a balance.  Completion triggers
pass unrounded deltas; the CTA text calls the same function so the promise
shown to the donor matches what gets credited.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

from dopaya.constants import DEFAULT_POINTS_MULTIPLIER


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    # str() first so 0.1 stays 0.1 rather than its binary expansion
    return value if isinstance(value, Decimal) else Decimal(str(value))


def raw_points(
    amount: Decimal | float | int,
    multiplier: Decimal | float | int | None = None,
) -> Decimal:
    """Unrounded ``amount * multiplier`` (multiplier defaults to 10).

    A multiplier of ``None`` or ``0`` falls back to the default, matching how
    projects without a configured multiplier behave.
    """
    mult = multiplier if multiplier else DEFAULT_POINTS_MULTIPLIER
    return _to_decimal(amount) * _to_decimal(mult)


def round_points(delta: Decimal | float | int | str) -> int:
    """Floor *delta* toward negative infinity and return an ``int``.

    Debits stay whole as well: ``round_points(-12.5) == -13``.
    """
    return int(_to_decimal(delta).to_integral_value(rounding=ROUND_FLOOR))


def points_for_amount(
    amount: Decimal | float | int,
    multiplier: Decimal | float | int | None = None,
) -> int:
    """Whole Impact Points credited for a donation of *amount*."""
    return round_points(raw_points(amount, multiplier))
