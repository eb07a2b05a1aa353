"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of dopaya.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from dopaya.config import DopayaConfig  # noqa: E402
from dopaya.database.models import Base, Project, Reward, User  # noqa: E402
from dopaya.services.store import PointsStore  # noqa: E402

# ---------------------------------------------------------------------------
# Project rows
# ---------------------------------------------------------------------------
WATER_PROJECT = {
    "slug": "clean-water",
    "title": "Clean Water",
    "impact_factor": 0.1,
    "impact_unit_singular_en": "person",
    "impact_unit_plural_en": "people",
    "impact_unit_singular_de": "Person",
    "impact_unit_plural_de": "Personen",
    "cta_template_en": "with clean water",
    "cta_template_de": "mit sauberem Wasser",
    "past_template_en": "provided with clean water",
    "past_template_de": "mit sauberem Wasser versorgt",
    "impact_points_multiplier": 10,
}

TREE_TIERS = [
    {
        "min_amount": 0, "max_amount": 100, "impact_factor": 10,
        "cta_template_en": "planted", "cta_template_de": "pflanzen",
        "past_template_en": "planted", "past_template_de": "gepflanzt",
    },
    {
        "min_amount": 100, "max_amount": 1000, "impact_factor": 1,
        "cta_template_en": "planted in a forest", "cta_template_de": "im Wald pflanzen",
        "past_template_en": "planted in a forest", "past_template_de": "im Wald gepflanzt",
    },
]

TREE_PROJECT = {
    "slug": "trees",
    "title": "Trees",
    "impact_tiers": TREE_TIERS,
    "impact_unit_singular_en": "tree",
    "impact_unit_plural_en": "trees",
    "impact_unit_singular_de": "Baum",
    "impact_unit_plural_de": "Bäume",
}


# ---------------------------------------------------------------------------
# Engines & store
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Dopaya tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` and the TestClient thread pool).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine with a real connection pool, for thread tests."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dopaya.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def store(db_engine: Engine) -> PointsStore:
    return PointsStore(db_engine, read_attempts=3, read_backoff=0)


@pytest.fixture
def test_config() -> DopayaConfig:
    return DopayaConfig(
        platform_name="Dopaya Test",
        api_port=8000,
        store_read_backoff_seconds=0,
    )


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------
def make_user(
    engine: Engine,
    points: int = 0,
    username: str = "donor",
    auth_user_id: str | None = None,
) -> int:
    with Session(engine) as session:
        user = User(username=username, impact_points=points, auth_user_id=auth_user_id)
        session.add(user)
        session.commit()
        return user.id


def make_project(engine: Engine, **overrides) -> int:
    fields = {**WATER_PROJECT, **overrides}
    with Session(engine) as session:
        project = Project(**fields)
        session.add(project)
        session.commit()
        return project.id


def make_reward(engine: Engine, points_cost: int = 100, active: bool = True) -> int:
    with Session(engine) as session:
        reward = Reward(title="Coffee voucher", company_name="Bean Co", points_cost=points_cost,
                        active=active)
        session.add(reward)
        session.commit()
        return reward.id


def get_user(engine: Engine, user_id: int) -> User:
    with Session(engine) as session:
        return session.get(User, user_id)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def make_user_token(user_id: int) -> str:
    import jwt

    from dopaya.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": str(user_id)}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from dopaya.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


@pytest.fixture
def client(db_engine: Engine, test_config: DopayaConfig):
    """FastAPI TestClient wired to the in-memory engine.

    Built without a ``with`` block so the lifespan (and its background
    reconciler) does not run.
    """
    from fastapi.testclient import TestClient

    from dopaya.api.deps import get_config, get_engine
    from dopaya.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: test_config
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
