"""
tests/conftest.py -- Shared test fixtures for SessionGate tests.

This module provides:
  - engine / user_store / session_store: isolated in-memory DB per test
  - seeded_user: a@x.com / "secret" credential user
  - wired_app: the real FastAPI app with test stores on app.state
  - client: TestClient (follow_redirects=False) through a patched lifespan
  - secure_client: the same over https with SECURE_COOKIES on

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Each test gets a uuid-suffixed name so no state leaks between tests.

DEBUG and ALLOWED_HOSTS must be set before any core/auth/api import so
get_settings() auto-generates SECRET_KEY and TrustedHostMiddleware accepts
the TestClient's "testserver" host.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.models import User
from auth.providers import build_providers
from auth.store import SessionStore, UserStore, create_auth_engine
from auth.tokens import hash_password
from core.config import get_settings

TEST_EMAIL = "a@x.com"
TEST_PASSWORD = "secret"
TEST_NAME = "Ada"

# bcrypt is deliberately slow; hash the shared test password once per session.
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """A fresh named shared-memory SQLite engine with the auth schema."""
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    eng = create_auth_engine(db_url)
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def session_store(engine: Engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def seeded_user(user_store: UserStore) -> User:
    """The credential user most tests sign in as."""
    user_id = user_store.create_user(User(email=TEST_EMAIL, name=TEST_NAME, hashed_password=TEST_PASSWORD_HASH))
    return user_store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def wired_app(user_store: UserStore, session_store: SessionStore, seeded_user: User) -> FastAPI:
    """The real app with this test's stores on app.state.

    Enough for httpx.ASGITransport, which does not run the lifespan.
    """
    app.state.user_store = user_store
    app.state.session_store = session_store
    app.state.providers = build_providers(user_store)
    return app


def _patch_lifespan():
    """Return a lifespan that leaves the fixture-wired app.state alone.

    The real lifespan would open the production database and start the purge
    task; tests need neither.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        yield

    return test_lifespan


@pytest.fixture
def client(wired_app: FastAPI) -> Generator[TestClient, None, None]:
    """TestClient through the full ASGI stack.

    follow_redirects=False is essential: tests assert on 302 Location headers,
    which are invisible once the client follows the redirect.
    """
    wired_app.router.lifespan_context = _patch_lifespan()
    with TestClient(wired_app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def secure_client(wired_app: FastAPI, monkeypatch) -> Generator[TestClient, None, None]:
    """TestClient over https with SECURE_COOKIES switched on.

    Cookies then carry the Secure flag and prefixed names, and the client
    only sends them back over https.
    """
    monkeypatch.setattr("auth.tokens._settings", get_settings().model_copy(update={"secure_cookies": True}))
    wired_app.router.lifespan_context = _patch_lifespan()
    with TestClient(wired_app, base_url="https://testserver", follow_redirects=False) as c:
        yield c
