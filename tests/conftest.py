"""
tests/conftest.py — Shared Test Fixtures
========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# A valid JWT_SECRET must exist before keystone.api.deps is imported; the
# module validates it at load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# SQLite has no JSONB; render it as TEXT so the PostgreSQL models create.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.ext.compiler import compiles  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from keystone.database.models import Base  # noqa: E402
from keystone.database.seed import seed_default_settings  # noqa: E402
from keystone.engine.cache import ConfigCache  # noqa: E402
from keystone.services.notifications import MilestoneBus  # noqa: E402


@compiles(PG_JSONB, "sqlite")
def _compile_jsonb_as_text(type_, compiler, **kw):
    return "TEXT"


T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
"""Fixed reference instant shared by the tests."""


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite with every Keystone table and the default settings.

    StaticPool shares the one in-memory database across threads, which the
    async routes need (``run_db`` hops to a worker thread).
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
    """File-backed SQLite so concurrent threads get real separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'keystone.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    seed_default_settings(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def cache(db_engine: Engine) -> ConfigCache:
    c = ConfigCache(db_engine)
    c.load_all()
    return c


@pytest.fixture
def bus() -> MilestoneBus:
    return MilestoneBus()


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------
def make_token(sub: str = "user-1", **claims) -> str:
    """Sign a JWT the way the identity layer does."""
    import jwt

    from keystone.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": sub, **claims}, JWT_SECRET, algorithm=JWT_ALGORITHM)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(db_engine: Engine, cache: ConfigCache, bus: MilestoneBus):
    """TestClient wired to the in-memory database, cache and a private bus."""
    from fastapi.testclient import TestClient

    from keystone.api.deps import get_bus, get_cache, get_engine
    from keystone.api.main import app
    from keystone.services import access_service, subscription_service

    subscription_service.install_milestone_hooks(db_engine, cache, bus)
    access_service.install_milestone_hooks(db_engine, cache, bus)

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_bus] = lambda: bus
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
