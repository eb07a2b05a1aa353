"""
dopaya.engine.snapshot — Impact Snapshot Builder
==================================================

Composes the resolver and the text renderer into the immutable record that
is stored with a donation.

    ImpactConfig + amount → resolve → format / select unit → render → ImpactSnapshot

Identical ``(config, amount, language)`` inputs always give an identical
snapshot; ``timestamp`` is metadata only and can be pinned with ``now=``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType

from dopaya.constants import SUPPORTED_LANGUAGES
from dopaya.engine.impact import (
    ConfigUnusable,
    ImpactConfig,
    ResolvedImpact,
    missing_fields,
    resolve,
)
from dopaya.engine.points import points_for_amount
from dopaya.engine.text import format_impact, render_cta, render_past, select_unit

logger = logging.getLogger(__name__)

__all__ = [
    "DonationImpact",
    "ImpactSnapshot",
    "build_donation_impact",
    "build_snapshot",
    "snapshot_fingerprint",
]


@dataclass(frozen=True, slots=True)
class ImpactSnapshot:
    """Point-in-time impact of one donation in one language."""

    calculated_impact: float
    impact_factor: float
    unit_singular: str
    unit_plural: str
    unit: str
    generated_text_cta: str
    generated_text_past: str
    timestamp: str

    def to_dict(self) -> dict:
        """Storage shape embedded in ``donations.impact_snapshot``."""
        return {
            "calculated_impact": self.calculated_impact,
            "impact_factor": self.impact_factor,
            "impact_unit_singular": self.unit_singular,
            "impact_unit_plural": self.unit_plural,
            "unit": self.unit,
            "generated_text_cta": self.generated_text_cta,
            "generated_text_past": self.generated_text_past,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class DonationImpact:
    """Snapshots for every supported language, ready to attach to a donation."""

    project_id: int
    amount: float
    calculated_impact: float
    snapshots: Mapping[str, ImpactSnapshot] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "snapshots", MappingProxyType(dict(self.snapshots)))

    def past_text(self, language: str) -> str | None:
        snap = self.snapshots.get(language)
        return snap.generated_text_past if snap else None

    def to_bundle(self) -> dict:
        bundle: dict = {lang: snap.to_dict() for lang, snap in self.snapshots.items()}
        bundle["amount"] = self.amount
        bundle["project_id"] = self.project_id
        return bundle


def _now_iso(now: datetime | None) -> str:
    return (now or datetime.now(UTC)).isoformat()


def _render(
    config: ImpactConfig,
    resolved: ResolvedImpact,
    language: str,
    timestamp: str,
) -> ImpactSnapshot:
    unit_singular = resolved.unit_singular[language]
    unit_plural = resolved.unit_plural[language]

    # Classify on the English unit so every language formats the same number
    unit_key = resolved.unit_singular.get("en") or unit_singular
    formatted = format_impact(resolved.impact, unit_key, language)
    unit = select_unit(resolved.impact, unit_singular, unit_plural)
    points = points_for_amount(resolved.amount, config.points_multiplier)

    return ImpactSnapshot(
        calculated_impact=resolved.impact,
        impact_factor=resolved.factor,
        unit_singular=unit_singular,
        unit_plural=unit_plural,
        unit=unit,
        generated_text_cta=render_cta(
            resolved.cta_template[language],
            config.title,
            resolved.amount,
            formatted,
            unit,
            points,
            language,
        ),
        generated_text_past=render_past(
            resolved.past_template[language], formatted, unit
        ),
        timestamp=timestamp,
    )


def _ensure_usable(config: ImpactConfig, languages: tuple[str, ...]) -> None:
    missing = missing_fields(config, languages)
    if missing:
        raise ConfigUnusable(
            f"Project {config.project_id} ({config.title}) does not have impact "
            f"tracking data. Missing: {', '.join(missing)}"
        )


def build_snapshot(
    config: ImpactConfig,
    amount: float,
    language: str,
    *,
    now: datetime | None = None,
) -> ImpactSnapshot:
    """Build the snapshot for one language.

    Raises
    ------
    ConfigUnusable
        If the config lacks a factor or any unit/template for *language*.
        English is always checked as well since it keys unit formatting.
    """
    languages = ("en",) if language == "en" else ("en", language)
    _ensure_usable(config, languages)
    return _render(config, resolve(config, amount), language, _now_iso(now))


def build_donation_impact(
    config: ImpactConfig,
    amount: float,
    *,
    languages: tuple[str, ...] = SUPPORTED_LANGUAGES,
    now: datetime | None = None,
) -> DonationImpact:
    """Build snapshots for every language in *languages* in one pass.

    All snapshots share a single resolution and timestamp.

    Raises
    ------
    ConfigUnusable
        If any language is missing a unit or template.
    """
    _ensure_usable(config, languages)
    resolved = resolve(config, amount)
    timestamp = _now_iso(now)
    snapshots = {lang: _render(config, resolved, lang, timestamp) for lang in languages}
    logger.debug(
        "Impact for project %s, amount %s: %s (factor %s)",
        config.project_id, amount, resolved.impact, resolved.factor,
    )
    return DonationImpact(
        project_id=config.project_id,
        amount=amount,
        calculated_impact=resolved.impact,
        snapshots=snapshots,
    )


def snapshot_fingerprint(snapshot: ImpactSnapshot) -> dict:
    """Snapshot content without the timestamp, for equality checks."""
    data = asdict(snapshot)
    data.pop("timestamp")
    return data
