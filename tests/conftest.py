"""
tests/conftest.py -- Shared test fixtures for Gatehouse unit and integration tests.

This module provides:
  - memory_url(): a fresh named shared-memory SQLite URL
  - store: an empty IdentityStore whose tables exist but hold no rows
  - seeded: (store, BootstrapResult) after a full bootstrap with admin seeded
  - api_client: (client, token, credentials) -- TestClient on a real app,
    logged in as the seeded admin user through the token endpoint

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, the secrets and LOGIN_RATE_LIMIT must be set before any api/auth/core
import: get_settings() is cached on first call, and the slowapi limiter is
one process-wide instance shared by every app the tests build.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("CRYPTO_SECRET", "test-crypto-secret-0123456789")
os.environ["LOGIN_RATE_LIMIT"] = "1000/minute"

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from auth.bootstrap import AdminCredentials, BootstrapResult, SchemaBootstrap
from auth.store import IdentityStore
from core.config import Settings

SECRET_KEY = os.environ["SECRET_KEY"]
CRYPTO_SECRET = os.environ["CRYPTO_SECRET"]
CLIENT_ID_SUFFIX = "::client.app"


def memory_url(prefix: str = "gatehouse") -> str:
    """A unique named shared-memory database, so tests never see each other's rows."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_bootstrap(store: IdentityStore, credentials_path, **kwargs) -> SchemaBootstrap:
    return SchemaBootstrap(
        store.engine,
        crypto_secret=CRYPTO_SECRET,
        client_id_suffix=CLIENT_ID_SUFFIX,
        credentials_path=credentials_path,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Store fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    """IdentityStore with every table created and no rows."""
    s = IdentityStore(memory_url("store"))
    bootstrap = SchemaBootstrap(s.engine, crypto_secret=CRYPTO_SECRET)
    bootstrap.create_tables()
    yield s
    s.close()


@pytest.fixture
def seeded(tmp_path) -> Generator[tuple[IdentityStore, BootstrapResult], None, None]:
    """IdentityStore after a first-run bootstrap: system resources, admin role, admin user and client."""
    s = IdentityStore(memory_url("seeded"))
    result = make_bootstrap(s, tmp_path / "credentials.txt").run()
    yield s, result
    s.close()


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def login(client: TestClient, username: str, password: str) -> str:
    resp = client.post("/api/v1/auth/token", json={"grant_type": "password", "username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["content"]["access_token"]


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, AdminCredentials], None, None]:
    """Yield (client, admin token, admin credentials) for API integration tests.

    The app runs its real lifespan: bootstrap rebuilds the empty database,
    seeds the admin and writes credentials to a temporary file. The admin then
    logs in through the token endpoint like any other user.
    """
    settings = Settings(
        debug=True,
        secret_key=SECRET_KEY,
        crypto_secret=CRYPTO_SECRET,
        database_url=memory_url("api"),
        credentials_file=str(tmp_path_factory.mktemp("creds") / "credentials.txt"),
        extra_resources=["billing"],
    )
    app = create_app(settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        credentials = app.state.bootstrap_result.credentials
        token = login(client, credentials.username, credentials.password)
        yield client, token, credentials
