"""
dopaya.engine.impact — Impact Factor & Tier Resolution
========================================================

Pure calculation, no DB I/O.  Given a project's :class:`ImpactConfig` and a
donation amount, picks the conversion factor that applies and computes the
raw impact quantity.

Resolution order:
  1. Tiers present   → first tier with ``min_amount <= amount < max_amount``,
                       falling back to the *last* tier when none matches.
  2. Flat factor set → the factor, with project-level templates.
  3. Neither         → :class:`ImpactConfigError`.

No rounding happens here; that belongs to the text renderer.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from dopaya.constants import DEFAULT_POINTS_MULTIPLIER, SUPPORTED_LANGUAGES

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigUnusable",
    "ImpactConfig",
    "ImpactConfigError",
    "ImpactTier",
    "ResolvedImpact",
    "is_usable",
    "missing_fields",
    "resolve",
]


class ImpactConfigError(ValueError):
    """The project's impact configuration cannot produce an impact figure."""


class ConfigUnusable(ImpactConfigError):
    """No factor/tiers, or a unit/template is missing for some language."""


def _frozen(mapping: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(mapping or {}))


# ---------------------------------------------------------------------------
# Config types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ImpactTier:
    """An amount range ``[min_amount, max_amount)`` with its own factor."""

    min_amount: float
    max_amount: float
    impact_factor: float
    cta_template: Mapping[str, str] = field(default_factory=dict)
    past_template: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "cta_template", _frozen(self.cta_template))
        object.__setattr__(self, "past_template", _frozen(self.past_template))

    def contains(self, amount: float) -> bool:
        return self.min_amount <= amount < self.max_amount


@dataclass(frozen=True, slots=True)
class ImpactConfig:
    """Normalized impact attributes of one project.

    Built by :func:`dopaya.engine.mapper.normalize_project`; read-only to the
    engine.  Per-language fields are keyed by language code (``"en"``,
    ``"de"``).
    """

    project_id: int
    title: str
    flat_factor: float | None = None
    tiers: tuple[ImpactTier, ...] = ()
    unit_singular: Mapping[str, str] = field(default_factory=dict)
    unit_plural: Mapping[str, str] = field(default_factory=dict)
    cta_template: Mapping[str, str] = field(default_factory=dict)
    past_template: Mapping[str, str] = field(default_factory=dict)
    points_multiplier: float = DEFAULT_POINTS_MULTIPLIER

    def __post_init__(self) -> None:
        object.__setattr__(self, "tiers", tuple(self.tiers))
        for name in ("unit_singular", "unit_plural", "cta_template", "past_template"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    @property
    def is_tiered(self) -> bool:
        return len(self.tiers) > 0


@dataclass(frozen=True, slots=True)
class ResolvedImpact:
    """Output of :func:`resolve` — the factor applied and what to render with."""

    amount: float
    factor: float
    impact: float
    cta_template: Mapping[str, str]
    past_template: Mapping[str, str]
    unit_singular: Mapping[str, str]
    unit_plural: Mapping[str, str]
    tier: ImpactTier | None = None


# ---------------------------------------------------------------------------
# Usability check
# ---------------------------------------------------------------------------
def missing_fields(
    config: ImpactConfig,
    languages: tuple[str, ...] = SUPPORTED_LANGUAGES,
) -> list[str]:
    """List what keeps *config* from being usable (empty list = usable)."""
    missing: list[str] = []
    if not config.is_tiered and config.flat_factor is None:
        missing.append("impact_factor|impact_tiers")

    for lang in languages:
        if not config.unit_singular.get(lang):
            missing.append(f"impact_unit_singular_{lang}")
        if not config.unit_plural.get(lang):
            missing.append(f"impact_unit_plural_{lang}")

        if config.is_tiered:
            for idx, tier in enumerate(config.tiers):
                if not tier.cta_template.get(lang):
                    missing.append(f"impact_tiers[{idx}].cta_template_{lang}")
                if not tier.past_template.get(lang):
                    missing.append(f"impact_tiers[{idx}].past_template_{lang}")
        else:
            if not config.cta_template.get(lang):
                missing.append(f"cta_template_{lang}")
            if not config.past_template.get(lang):
                missing.append(f"past_template_{lang}")
    return missing


def is_usable(
    config: ImpactConfig,
    languages: tuple[str, ...] = SUPPORTED_LANGUAGES,
) -> bool:
    """True iff a factor (flat or tiered) and every unit/template exist."""
    return not missing_fields(config, languages)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------
def _select_tier(tiers: tuple[ImpactTier, ...], amount: float) -> ImpactTier:
    for tier in tiers:
        if tier.contains(amount):
            return tier
    # amount >= every max (or below the first min, which callers rule out)
    if amount < tiers[0].min_amount:
        logger.debug(
            "Amount %s is below the first tier minimum %s — using last tier",
            amount, tiers[0].min_amount,
        )
    return tiers[-1]


def resolve(config: ImpactConfig, amount: float) -> ResolvedImpact:
    """Pick the factor for *amount* and compute ``impact = amount * factor``.

    Raises
    ------
    ConfigUnusable
        If the project has neither tiers nor a flat factor.
    """
    if config.is_tiered:
        tier = _select_tier(config.tiers, amount)
        return ResolvedImpact(
            amount=amount,
            factor=tier.impact_factor,
            impact=amount * tier.impact_factor,
            cta_template=tier.cta_template,
            past_template=tier.past_template,
            unit_singular=config.unit_singular,
            unit_plural=config.unit_plural,
            tier=tier,
        )

    if config.flat_factor is not None:
        factor = float(config.flat_factor)
        return ResolvedImpact(
            amount=amount,
            factor=factor,
            impact=amount * factor,
            cta_template=config.cta_template,
            past_template=config.past_template,
            unit_singular=config.unit_singular,
            unit_plural=config.unit_plural,
        )

    raise ConfigUnusable(
        f"Project {config.project_id} ({config.title}) has no impact tracking "
        "data: neither impact_factor nor impact_tiers is set"
    )
