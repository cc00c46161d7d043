"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of progression.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite renders JSONB as TEXT; SQLAlchemy's JSON processors still apply.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from progression.database.models import Base  # noqa: E402
from progression.database.seed import seed_default_settings  # noqa: E402
from progression.engine.catalog import RewardSettings  # noqa: E402
from progression.services import reward_service  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def at(year: int, month: int, day: int, hour: int = 3, minute: int = 0) -> datetime:
    """A UTC instant; 03:00 UTC is midday in Seoul on the same civil date."""
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all progression tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` in the API's DB bridge).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_default_settings(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine: one connection per thread, real locking."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'progression.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def settings() -> RewardSettings:
    """The default reward catalog."""
    return RewardSettings()


@pytest.fixture
def make_user(db_engine: Engine):
    """Factory: register a user with an optional school / district."""

    def _make(user_id: str = "user-1", user_name: str | None = None, **profile):
        return reward_service.upsert_user(
            db_engine, user_id, user_name=user_name or user_id, **profile,
        )

    return _make


def make_token(sub: str = "user-1", *, is_admin: bool = False) -> str:
    """Create a bearer JWT as the external auth provider would."""
    import jwt

    from progression.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token():
    return make_token("admin-1", is_admin=True)


@pytest.fixture
def client(db_engine: Engine):
    """A TestClient wired to the in-memory engine and a real settings cache."""
    from fastapi.testclient import TestClient

    from progression.api.deps import get_cache, get_config, get_engine
    from progression.api.main import app
    from progression.config import ProgressionConfig
    from progression.engine.cache import ConfigCache

    cache = ConfigCache(db_engine)
    cache.load_all()

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_config] = lambda: ProgressionConfig(community_name="Test")
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
