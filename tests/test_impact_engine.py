"""
tests/test_impact_engine.py — Unit Tests for Impact Resolution & Points
========================================================================

Tests the pure calculation pipeline (no I/O, no database).
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import TREE_PROJECT, WATER_PROJECT
from dopaya.engine.impact import (
    ConfigUnusable,
    ImpactConfig,
    ImpactConfigError,
    ImpactTier,
    is_usable,
    missing_fields,
    resolve,
)
from dopaya.engine.mapper import normalize_project
from dopaya.engine.points import points_for_amount, raw_points, round_points


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def flat_config() -> ImpactConfig:
    return normalize_project({"id": 1, **WATER_PROJECT})


@pytest.fixture
def tiered_config() -> ImpactConfig:
    return normalize_project({"id": 2, **TREE_PROJECT})


# ===========================================================================
# Resolver
# ===========================================================================
class TestFlatFactor:
    def test_amount_100_gives_impact_10(self, flat_config):
        resolved = resolve(flat_config, 100)
        assert resolved.factor == 0.1
        assert resolved.impact == pytest.approx(10)
        assert resolved.tier is None

    def test_amount_10_gives_impact_1(self, flat_config):
        assert resolve(flat_config, 10).impact == pytest.approx(1)

    def test_uses_project_templates(self, flat_config):
        resolved = resolve(flat_config, 50)
        assert resolved.cta_template["en"] == "with clean water"
        assert resolved.past_template["de"] == "mit sauberem Wasser versorgt"

    def test_impact_is_not_rounded(self, flat_config):
        assert resolve(flat_config, 12.34).impact == pytest.approx(1.234)


class TestTiers:
    def test_first_tier(self, tiered_config):
        resolved = resolve(tiered_config, 50)
        assert resolved.factor == 10
        assert resolved.impact == 500
        assert resolved.tier is tiered_config.tiers[0]

    def test_second_tier(self, tiered_config):
        resolved = resolve(tiered_config, 500)
        assert resolved.factor == 1
        assert resolved.impact == 500
        assert resolved.past_template["en"] == "planted in a forest"

    def test_lower_bound_is_inclusive(self, tiered_config):
        assert resolve(tiered_config, 100).tier is tiered_config.tiers[1]

    def test_amount_above_every_tier_falls_back_to_last(self, tiered_config):
        resolved = resolve(tiered_config, 1000)
        assert resolved.tier is tiered_config.tiers[-1]
        assert resolved.impact == 1000

    def test_amount_below_first_min_uses_last_tier(self):
        config = ImpactConfig(
            project_id=3,
            title="Odd",
            tiers=(
                ImpactTier(min_amount=10, max_amount=20, impact_factor=2),
                ImpactTier(min_amount=20, max_amount=30, impact_factor=3),
            ),
        )
        assert resolve(config, 5).factor == 3

    def test_tiers_win_over_flat_factor(self):
        config = ImpactConfig(
            project_id=4,
            title="Both",
            flat_factor=100.0,
            tiers=(ImpactTier(min_amount=0, max_amount=10, impact_factor=2),),
        )
        assert resolve(config, 5).factor == 2


class TestUnconfigured:
    @pytest.mark.parametrize("amount", [0.01, 1, 100, 10_000])
    def test_no_factor_no_tiers_is_unusable(self, amount):
        config = ImpactConfig(project_id=9, title="Bare")
        with pytest.raises(ConfigUnusable):
            resolve(config, amount)

    def test_unusable_is_an_impact_config_error(self):
        assert issubclass(ConfigUnusable, ImpactConfigError)


# ===========================================================================
# Usability
# ===========================================================================
class TestUsability:
    def test_complete_flat_config_is_usable(self, flat_config):
        assert is_usable(flat_config)
        assert missing_fields(flat_config) == []

    def test_complete_tiered_config_is_usable(self, tiered_config):
        assert is_usable(tiered_config)

    def test_missing_german_template(self):
        row = {"id": 1, **WATER_PROJECT, "past_template_de": None}
        config = normalize_project(row)
        assert not is_usable(config)
        assert missing_fields(config) == ["past_template_de"]
        # English alone is still fine
        assert is_usable(config, ("en",))

    def test_missing_tier_template(self):
        tiers = [dict(t) for t in TREE_PROJECT["impact_tiers"]]
        del tiers[1]["cta_template_de"]
        config = normalize_project({"id": 2, **TREE_PROJECT, "impact_tiers": tiers})
        assert missing_fields(config) == ["impact_tiers[1].cta_template_de"]

    def test_missing_factor_and_units(self):
        config = ImpactConfig(project_id=9, title="Bare")
        missing = missing_fields(config, ("en",))
        assert "impact_factor|impact_tiers" in missing
        assert "impact_unit_singular_en" in missing


# ===========================================================================
# Points rounding
# ===========================================================================
class TestPoints:
    def test_floor_positive(self):
        assert round_points(Decimal("12.9")) == 12

    def test_floor_negative_rounds_away_from_zero(self):
        assert round_points(-12.5) == -13

    def test_whole_numbers_unchanged(self):
        assert round_points(50) == 50

    def test_raw_points_is_exact_decimal(self):
        assert raw_points(12.34, 10) == Decimal("123.40")

    def test_binary_float_artifacts_do_not_lose_a_point(self):
        # 0.29 * 100 == 28.999999999999996 in binary floating point
        assert points_for_amount(0.29, 100) == 29

    @pytest.mark.parametrize("multiplier", [None, 0])
    def test_missing_multiplier_defaults_to_ten(self, multiplier):
        assert points_for_amount(25, multiplier) == 250

    def test_custom_multiplier(self):
        assert points_for_amount(12.5, 3) == 37
