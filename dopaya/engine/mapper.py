"""
dopaya.engine.mapper — Project Row Normalization
==================================================

Project rows reach the engine from more than one place: the ORM / SQL store
uses snake_case columns (``impact_factor``), while payloads relayed from the
frontend or older storage helpers use camelCase (``impactFactor``).  This
adapter folds both spellings onto one :class:`ImpactConfig`, preferring
camelCase when both are present.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from dopaya.constants import DEFAULT_POINTS_MULTIPLIER, SUPPORTED_LANGUAGES
from dopaya.engine.impact import ImpactConfig, ImpactConfigError, ImpactTier

logger = logging.getLogger(__name__)


def _camel(snake: str) -> str:
    head, *rest = snake.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _pick(row: Mapping[str, Any], snake: str, default: Any = None) -> Any:
    """Value for *snake* under either spelling; camelCase wins."""
    camel = _camel(snake)
    value = row.get(camel)
    if value is None:
        value = row.get(snake)
    return default if value is None else value


def _per_language(row: Mapping[str, Any], prefix: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for lang in SUPPORTED_LANGUAGES:
        value = _pick(row, f"{prefix}_{lang}")
        if value:
            result[lang] = str(value)
    return result


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ImpactConfigError(f"Invalid {name}: {value!r}") from exc


def _parse_tiers(raw: Any) -> tuple[ImpactTier, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ImpactConfigError("impact_tiers is not valid JSON") from exc
    if not isinstance(raw, list):
        raise ImpactConfigError(f"impact_tiers must be a list, got {type(raw).__name__}")

    tiers: list[ImpactTier] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ImpactConfigError(f"impact_tiers[{idx}] is not an object")
        tiers.append(ImpactTier(
            min_amount=_as_float(_pick(item, "min_amount"), f"impact_tiers[{idx}].min_amount"),
            max_amount=_as_float(_pick(item, "max_amount"), f"impact_tiers[{idx}].max_amount"),
            impact_factor=_as_float(
                _pick(item, "impact_factor"), f"impact_tiers[{idx}].impact_factor"
            ),
            cta_template=_per_language(item, "cta_template"),
            past_template=_per_language(item, "past_template"),
        ))
    return tuple(tiers)


def normalize_project(
    row: Mapping[str, Any],
    default_multiplier: float = DEFAULT_POINTS_MULTIPLIER,
) -> ImpactConfig:
    """Map a project row (either spelling) onto an :class:`ImpactConfig`.

    Raises
    ------
    ImpactConfigError
        If a numeric field or a tier cannot be parsed.
    """
    flat = _pick(row, "impact_factor")
    multiplier = _pick(row, "impact_points_multiplier")

    return ImpactConfig(
        project_id=int(row["id"]),
        title=str(row.get("title") or ""),
        flat_factor=None if flat is None else _as_float(flat, "impact_factor"),
        tiers=_parse_tiers(_pick(row, "impact_tiers")),
        unit_singular=_per_language(row, "impact_unit_singular"),
        unit_plural=_per_language(row, "impact_unit_plural"),
        cta_template=_per_language(row, "cta_template"),
        past_template=_per_language(row, "past_template"),
        # 0 or missing → platform default
        points_multiplier=(
            _as_float(multiplier, "impact_points_multiplier")
            if multiplier else default_multiplier
        ),
    )
