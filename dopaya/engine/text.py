"""
dopaya.engine.text — Impact Text Renderer
===========================================

Formats an impact quantity for display and substitutes it into the
call-to-action and past-tense scaffolds.  Template authors only supply the
free-text tail; amount, impact, unit and points are always placed by this
module so they cannot be altered by a template.

Formatting rules (keyed on the singular unit name, case-insensitive):

* person-type units (``person``, ``people``, ``child``, ``children``) —
  ``floor(impact)`` when ``impact >= 1``; two decimals below one, so a small
  impact never reads as "0 people".
* ``kg`` / ``liter`` / ``l`` — one decimal.
* anything else — whole number when integral, else one decimal.
"""

from __future__ import annotations

import math
from enum import StrEnum

from dopaya.constants import (
    CTA_SCAFFOLDS,
    DECIMAL_SEPARATORS,
    DECIMAL_UNITS,
    DEFAULT_LANGUAGE,
    PAST_SCAFFOLD,
    PERSON_UNIT_KEYWORDS,
    SINGULAR_EPSILON,
)

__all__ = [
    "UnitKind",
    "classify_unit",
    "format_amount",
    "format_impact",
    "render_cta",
    "render_past",
    "select_unit",
]


class UnitKind(StrEnum):
    """Number-format family of an impact unit."""

    PERSON = "person"
    DECIMAL = "decimal"
    OTHER = "other"


def classify_unit(unit_singular: str) -> UnitKind:
    """Heuristic unit classification used to pick a number format."""
    name = (unit_singular or "").strip().lower()
    if any(keyword in name for keyword in PERSON_UNIT_KEYWORDS):
        return UnitKind.PERSON
    if name in DECIMAL_UNITS:
        return UnitKind.DECIMAL
    return UnitKind.OTHER


def _localize(number: str, language: str) -> str:
    sep = DECIMAL_SEPARATORS.get(language, ".")
    return number if sep == "." else number.replace(".", sep)


def format_impact(impact: float, unit_singular: str, language: str = DEFAULT_LANGUAGE) -> str:
    """Render *impact* as text according to the unit's kind."""
    kind = classify_unit(unit_singular)

    if kind == UnitKind.PERSON:
        text = str(math.floor(impact)) if impact >= 1 else f"{impact:.2f}"
    elif kind == UnitKind.DECIMAL:
        text = f"{impact:.1f}"
    elif float(impact).is_integer():
        text = str(int(impact))
    else:
        text = f"{impact:.1f}"

    return _localize(text, language)


def format_amount(amount: float, language: str = DEFAULT_LANGUAGE) -> str:
    """Donation amount: ``100`` stays ``100``, ``12.5`` becomes ``12.50``."""
    text = str(int(amount)) if float(amount).is_integer() else f"{amount:.2f}"
    return _localize(text, language)


def select_unit(impact: float, singular: str, plural: str) -> str:
    """Singular only when the impact is one (within a small tolerance)."""
    if math.isclose(impact, 1.0, rel_tol=0.0, abs_tol=SINGULAR_EPSILON):
        return singular
    return plural


def render_past(template: str, formatted_impact: str, unit: str) -> str:
    """``"{impact} {unit} {free text}"`` — e.g. "10 people provided with water"."""
    return PAST_SCAFFOLD.format(impact=formatted_impact, unit=unit, text=template)


def render_cta(
    template: str,
    project_title: str,
    amount: float,
    formatted_impact: str,
    unit: str,
    points: int,
    language: str = DEFAULT_LANGUAGE,
) -> str:
    """Call-to-action sentence in *language*.

    Raises
    ------
    ValueError
        If no scaffold exists for *language*.
    """
    scaffold = CTA_SCAFFOLDS.get(language)
    if scaffold is None:
        raise ValueError(f"No call-to-action scaffold for language {language!r}")
    return scaffold.format(
        title=project_title,
        amount=format_amount(amount, language),
        impact=formatted_impact,
        unit=unit,
        text=template,
        points=points,
    )
