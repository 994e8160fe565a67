"""
tests/conftest.py -- Shared test fixtures for Keyturn.

This module provides:
  - auth_config:   AuthConfig with fixed test secrets and bcrypt cost 4
  - user_store:    UserStore on a private in-memory SQLite DB
  - clock:         FakeClock, a controllable stand-in for utc_now
  - service:       AuthService wired from the three fixtures above
  - api_client:    TestClient over the real FastAPI app with a patched lifespan

Design: the TestClient runs route handlers on a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread, so api_client uses a named shared-memory URI
(file:name?mode=memory&cache=shared&uri=true) instead.

Environment variables must be set before any api/ import: api.main resolves
Settings at import time and refuses to start without both JWT secrets.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef012345678")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from auth.service import AuthService, build_auth_service
from auth.store import UserStore
from core.config import AuthConfig, SigningConfig, get_settings

ACCESS_SECRET = "unit-access-secret-abcdefghijklmnopqrstuvwxyz012345"
REFRESH_SECRET = "unit-refresh-secret-abcdefghijklmnopqrstuvwxyz01234"


class FakeClock:
    """Callable clock that starts at real UTC now and only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(
        access=SigningConfig(secret=ACCESS_SECRET, expires_in=timedelta(hours=24)),
        refresh=SigningConfig(secret=REFRESH_SECRET, expires_in=timedelta(days=7)),
        bcrypt_rounds=4,
        hash_soft_timeout_ms=300,
    )


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(auth_config: AuthConfig, user_store: UserStore, clock: FakeClock) -> AuthService:
    return build_auth_service(auth_config, user_store, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore):
    """Return a lifespan that wires a test store instead of the configured database."""

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.auth_service = build_auth_service(AuthConfig.from_settings(settings), user_store)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with an isolated shared-memory store.

    Function-scoped: each test gets a fresh database, so registrations in one
    test never collide with another.
    """
    from api.main import app

    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url)
    original = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(user_store)
    try:
        with TestClient(app, raise_server_exceptions=True) as client:
            yield client
    finally:
        app.router.lifespan_context = original
        user_store.close()
