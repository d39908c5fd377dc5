"""
tests/conftest.py -- Shared test fixtures for TechPacker tests.

This module provides:
  - engine / identity_store / document_store / audit_store: fresh stores on a
    temp-file SQLite database, one per test
  - make_identity: factory fixture that persists an Identity and returns it
  - FakeDispatcher (dispatcher fixture): captures two-factor codes instead of
    emailing them
  - FailingCache (failing_cache fixture): a cache whose every operation
    raises, like an unreachable Redis
  - api_client: ApiHarness around a TestClient with an admin JWT

Design: a temp *file* rather than :memory: because the async engine runs on
NullPool and every checkout opens a new connection; an in-memory database
would present a blank schema to each one.

TrustedHostMiddleware rejects TestClient's default "testserver" host, so
every client is created with base_url="http://localhost".

DEBUG, RATE_LIMIT_ENABLED and BCRYPT_ROUNDS must be set before any auth/core
import: get_settings() is cached on first use and auth.tokens hashes its
timing-equalization dummy at import time.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Generator
from contextlib import asynccontextmanager
from typing import Optional

# CRITICAL: set before any auth/core import (see module docstring).
os.environ.setdefault("DEBUG", "true")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CACHE_BACKEND"] = "none"
os.environ["BCRYPT_ROUNDS"] = "4"

import pytest
from fastapi.testclient import TestClient

from api.main import app, close_app_state, wire_app_state
from audit.store import AuditStore
from auth.models import Identity, SystemRole
from auth.store import IdentityStore
from auth.tokens import hash_password, issue_access_token
from cache.store import Cache
from core.config import get_settings
from core.database import create_engine
from documents.store import DocumentStore

DEFAULT_PASSWORD = "password123"
ADMIN_EMAIL = "admin@techpacker.test"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeDispatcher:
    """CodeDispatcher that records (address, code) pairs.

    Set fail=True to simulate a delivery failure, or raises=True to simulate
    a dispatcher that blows up.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail = False
        self.raises = False

    async def send_code(self, address: str, code: str, display_name: str) -> bool:
        if self.raises:
            raise ConnectionError("mail relay unreachable")
        if self.fail:
            return False
        self.sent.append((address, code))
        return True

    def last_code(self, address: str) -> str:
        for sent_to, code in reversed(self.sent):
            if sent_to == address:
                return code
        raise AssertionError(f"no code dispatched to {address}")


class FailingCache:
    """Cache double whose every operation raises, like an unreachable Redis."""

    def __init__(self) -> None:
        self.calls = 0

    async def get(self, key: str) -> Optional[dict]:
        self.calls += 1
        raise ConnectionError("cache down")

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        self.calls += 1
        raise ConnectionError("cache down")

    async def delete(self, key: str) -> None:
        self.calls += 1
        raise ConnectionError("cache down")

    async def delete_pattern(self, pattern: str) -> int:
        self.calls += 1
        raise ConnectionError("cache down")

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Store fixtures (function-scoped, async)
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'techpacker.db'}")
    yield eng
    await eng.dispose()


@pytest.fixture
async def identity_store(engine) -> IdentityStore:
    store = IdentityStore(engine, max_retries=10)
    await store.init()
    return store


@pytest.fixture
async def document_store(engine) -> DocumentStore:
    store = DocumentStore(engine)
    await store.init()
    return store


@pytest.fixture
async def audit_store(engine) -> AuditStore:
    store = AuditStore(engine)
    await store.init()
    return store


@pytest.fixture
def make_identity(identity_store):
    """Return an async factory: await make_identity("a@b.c", SystemRole.viewer)."""

    async def _make(
        email: str,
        role: SystemRole = SystemRole.designer,
        password: str = DEFAULT_PASSWORD,
        **fields,
    ) -> Identity:
        identity_id = await identity_store.create(
            Identity(email=email, role=role, hashed_password=hash_password(password), **fields)
        )
        return await identity_store.get_by_id(identity_id)

    return _make


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def failing_cache() -> FailingCache:
    return FailingCache()


# ---------------------------------------------------------------------------
# API harness
# ---------------------------------------------------------------------------


class ApiHarness:
    """TestClient plus the handful of calls nearly every API test needs."""

    def __init__(self, client: TestClient, dispatcher: FakeDispatcher, admin_id: int, admin_token: str) -> None:
        self.client = client
        self.dispatcher = dispatcher
        self.admin_id = admin_id
        self.admin_token = admin_token

    def headers(self, token: str | None = None) -> dict:
        return {"Authorization": f"Bearer {token or self.admin_token}"}

    def create_user(self, email: str, role: str = "designer", password: str = DEFAULT_PASSWORD) -> dict:
        resp = self.client.post(
            "/api/v1/admin/users",
            json={"email": email, "password": password, "first_name": "Test", "last_name": role.title(), "role": role},
            headers=self.headers(),
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["user"]

    def login(self, email: str, password: str = DEFAULT_PASSWORD) -> dict:
        resp = self.client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()["data"]

    def token_for(self, email: str, password: str = DEFAULT_PASSWORD) -> str:
        return self.login(email, password)["access_token"]

    def flush_audit(self) -> None:
        """Block until the audit writer has persisted everything queued so far."""
        self.client.portal.call(app.state.audit_trail.flush)


def _patch_lifespan(db_path, dispatcher: FakeDispatcher, cache: Optional[Cache], admin: dict):
    """Return an async context manager that replaces the real lifespan.

    Runs the real wiring against a temp-file database, the given cache and a
    FakeDispatcher, and seeds one admin whose ID is written into admin["id"].
    """

    @asynccontextmanager
    async def test_lifespan(app) -> AsyncIterator[None]:
        engine = create_engine(f"sqlite+aiosqlite:///{db_path}")
        await wire_app_state(app, get_settings(), engine, cache, dispatcher)
        admin["id"] = await app.state.identity_store.create(
            Identity(
                email=ADMIN_EMAIL,
                first_name="Test",
                last_name="Admin",
                role=SystemRole.admin,
                hashed_password=hash_password(DEFAULT_PASSWORD),
            )
        )
        yield
        await close_app_state(app)

    return test_lifespan


def _harness(tmp_path_factory, name: str, cache: Optional[Cache]) -> Generator[ApiHarness, None, None]:
    db_path = tmp_path_factory.mktemp(name) / "techpacker.db"
    dispatcher = FakeDispatcher()
    admin: dict = {}
    app.router.lifespan_context = _patch_lifespan(db_path, dispatcher, cache, admin)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        token = issue_access_token(Identity(id=admin["id"], email=ADMIN_EMAIL, role=SystemRole.admin))
        yield ApiHarness(client, dispatcher, admin["id"], token)


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with caching disabled.

    Tests hit the real route handlers and services; only the database path
    and the code dispatcher are swapped out.
    """
    yield from _harness(tmp_path_factory, "api", None)


@pytest.fixture(scope="module")
def degraded_api_client(tmp_path_factory) -> Generator[ApiHarness, None, None]:
    """Like api_client, but every cache operation fails.

    Never request this together with api_client in one module: both drive
    the same app.state.
    """
    yield from _harness(tmp_path_factory, "degraded", FailingCache())
