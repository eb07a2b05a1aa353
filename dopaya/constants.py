"""
dopaya.constants — Shared Constants
=====================================

Single source of truth for languages, unit classification keywords, and the
text scaffolds that wrap author-supplied template tails.  Import from here
instead of duplicating in the engine, services, and API.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Languages
# ---------------------------------------------------------------------------
SUPPORTED_LANGUAGES: tuple[str, ...] = ("en", "de")
DEFAULT_LANGUAGE = "en"


# ---------------------------------------------------------------------------
# Impact Points economy
# ---------------------------------------------------------------------------
DEFAULT_POINTS_MULTIPLIER = 10.0
WELCOME_BONUS_POINTS = 50

# Donors at or above this balance are "changemakers", below it "aspirers"
CHANGEMAKER_THRESHOLD = 100


# ---------------------------------------------------------------------------
# Unit classification (Text Renderer)
# ---------------------------------------------------------------------------
PERSON_UNIT_KEYWORDS: tuple[str, ...] = ("person", "people", "child", "children")
DECIMAL_UNITS: frozenset[str] = frozenset({"kg", "liter", "l"})

# Tolerance for "impact is exactly one" when choosing singular vs plural
SINGULAR_EPSILON = 1e-9


# ---------------------------------------------------------------------------
# Text scaffolds — templates only ever supply the trailing free text
# ---------------------------------------------------------------------------
CTA_SCAFFOLDS: dict[str, str] = {
    "en": (
        "Support {title} with ${amount} and help {impact} {unit} {text}"
        " — earn {points} Impact Points"
    ),
    "de": (
        "Unterstütze {title} mit ${amount} und hilf {impact} {unit} {text}"
        " — verdiene {points} Impact Points"
    ),
}

PAST_SCAFFOLD = "{impact} {unit} {text}"

# Decimal separator per language
DECIMAL_SEPARATORS: dict[str, str] = {
    "en": ".",
    "de": ",",
}
