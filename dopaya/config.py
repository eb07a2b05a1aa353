"""
dopaya.config — YAML Configuration Loader
===========================================

Reads ``config.yaml`` for platform settings that are safe to commit:
supported languages, the default Impact Points multiplier, welcome bonus
size, and reconciliation / retry tuning.  Secrets (``DATABASE_URL``,
``JWT_SECRET``, ``STRIPE_WEBHOOK_SECRET``) stay in ``.env``.

Usage::

    from dopaya.config import load_config

    cfg = load_config()                  # reads ./config.yaml by default
    print(cfg.default_points_multiplier) # 10.0
    print(cfg.supported_languages)       # ("en", "de")
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from dopaya.constants import (
    DEFAULT_POINTS_MULTIPLIER,
    SUPPORTED_LANGUAGES,
    WELCOME_BONUS_POINTS,
)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DopayaConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    platform_name: str

    # API
    api_port: int

    # Impact / points
    supported_languages: tuple[str, ...] = SUPPORTED_LANGUAGES
    default_points_multiplier: float = DEFAULT_POINTS_MULTIPLIER
    welcome_bonus_points: int = WELCOME_BONUS_POINTS

    # Ledger reconciliation
    reconcile_interval_seconds: int = 300
    intent_stale_after_seconds: int = 120

    # Store reads are retried; writes never are
    store_read_attempts: int = 3
    store_read_backoff_seconds: float = 0.2


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> DopayaConfig:
    """Read *path* and return a :class:`DopayaConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``supported_languages`` drops English, which every template
        falls back on.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    languages = tuple(raw.get("supported_languages") or SUPPORTED_LANGUAGES)
    if "en" not in languages:
        raise ValueError("supported_languages must include 'en'")

    return DopayaConfig(
        platform_name=raw["platform_name"],
        api_port=int(raw["api_port"]),
        supported_languages=languages,
        default_points_multiplier=float(
            raw.get("default_points_multiplier", DEFAULT_POINTS_MULTIPLIER)
        ),
        welcome_bonus_points=int(raw.get("welcome_bonus_points", WELCOME_BONUS_POINTS)),
        reconcile_interval_seconds=int(raw.get("reconcile_interval_seconds", 300)),
        intent_stale_after_seconds=int(raw.get("intent_stale_after_seconds", 120)),
        store_read_attempts=max(1, int(raw.get("store_read_attempts", 3))),
        store_read_backoff_seconds=float(raw.get("store_read_backoff_seconds", 0.2)),
    )
