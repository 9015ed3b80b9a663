"""
tests/conftest.py -- Shared test fixtures for the admin service tests.

This module provides:
  - make_settings(): validated Settings pointing at an isolated in-memory DB
  - app_client: factory that builds the full ASGI app (API + web UI) and
    returns a started TestClient with follow_redirects=False
  - client: one started TestClient with Google sign-in configured
  - mock_google(): replaces app.state.oauth with a MagicMock provider client
  - session_cookie(): signs a JWT for a stored user

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Each app gets a uuid-suffixed name so tests never share rows.

The DEBUG env var must be set before asgi is imported: asgi.py builds a
module-level app from the environment, and production mode refuses to start
without SECRET_KEY.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set DEBUG before any asgi import so load_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient

from asgi import build_app
from auth.models import User
from auth.tokens import AUTH_COOKIE, create_access_token
from core.config import Settings, load_settings

TEST_SECRET_KEY = "test-signing-key-0123456789abcdef0123456789"
TEST_GOOGLE_SECRET = "GOCSPX-test-google-client-secret"
TEST_GOOGLE_CLIENT_ID = "1234567890-test.apps.googleusercontent.com"


def memory_db_url() -> str:
    return f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    """Settings for tests: Google configured, rate limiting off, fresh DB."""
    values = dict(
        debug=True,
        secret_key=TEST_SECRET_KEY,
        database_url=memory_db_url(),
        allowed_hosts=["testserver", "localhost"],
        google_client_id=TEST_GOOGLE_CLIENT_ID,
        google_client_secret=TEST_GOOGLE_SECRET,
        rate_limit_enabled=False,
    )
    values.update(overrides)
    return load_settings(**values)


def google_token(
    email: str,
    name: str = "Test Person",
    sub: str | None = None,
    email_verified: bool = True,
) -> dict:
    """A token response shaped like authlib's after Google's code exchange."""
    return {
        "access_token": "ya29.test-access-token",
        "token_type": "Bearer",
        "userinfo": {
            "iss": "https://accounts.google.com",
            "sub": sub or f"sub-{email}",
            "email": email,
            "email_verified": email_verified,
            "name": name,
        },
    }


def mock_google(client: TestClient, token: dict | None = None, exc: Exception | None = None) -> MagicMock:
    """Swap the app's OAuth registry for a mock Google client.

    authorize_access_token returns token, or raises exc when given.
    authorize_redirect returns a 302 to a fake consent URL.
    """
    provider = MagicMock()
    if exc is not None:
        provider.authorize_access_token = AsyncMock(side_effect=exc)
    else:
        provider.authorize_access_token = AsyncMock(return_value=token)
    provider.authorize_redirect = AsyncMock(
        return_value=RedirectResponse("https://accounts.google.com/o/oauth2/v2/auth?state=test", status_code=302)
    )
    registry = MagicMock()
    registry.create_client.return_value = provider
    client.app.state.oauth = registry
    return provider


def session_cookie(client: TestClient, user: User) -> dict[str, str]:
    token = create_access_token(client.app.state.settings, user.id, user.email, user.role)
    return {AUTH_COOKIE: token}


def add_user(client: TestClient, email: str, role: str, name: str = "Someone", **fields) -> User:
    store = client.app.state.user_store
    user_id = store.create_user(User(email=email, name=name, role=role, **fields))
    return store.get_by_id(user_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app_client() -> Generator[Callable[..., TestClient], None, None]:
    """Yield a factory: app_client(**settings_overrides) -> started TestClient.

    follow_redirects=False is essential: tests assert on redirect Location
    headers, which are invisible once the client follows them.
    """
    started: list[TestClient] = []

    def _make(**overrides) -> TestClient:
        app = build_app(make_settings(**overrides))
        client = TestClient(app, follow_redirects=False, raise_server_exceptions=True)
        client.__enter__()
        started.append(client)
        return client

    yield _make

    for client in started:
        client.__exit__(None, None, None)


@pytest.fixture
def client(app_client) -> TestClient:
    return app_client()
