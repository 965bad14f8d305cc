"""
tests/conftest.py -- Shared test fixtures for TokenKeeper unit and integration tests.

This module provides:
  - user_store / token_store / owners / service: isolated in-memory stores
    and a TokenService for unit tests (function scope)
  - make_service: TokenService factory over the same stores (clock, ttl, prefix)
  - alice / bob: persisted users as OwnerRefs
  - api_client: TestClient over the real app with a patched lifespan
  - api_owner / make_api_owner: a fresh user plus a bearer credential per test

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests stay on one thread, so plain :memory: is fine there.

Environment must be set before any auth/core import:
  DEBUG=true                  -- get_settings() auto-generates SECRET_KEY
  ALLOWED_HOSTS               -- TrustedHostMiddleware must accept "testserver"
  TOKEN_CREATE_RATE_LIMIT     -- high enough that tests never hit 429
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set env before any auth/core import (settings are read at import).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("TOKEN_CREATE_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from auth.models import OwnerRef, User
from auth.owners import USER_KIND, OwnerRegistry, user_ref
from auth.service import TokenService
from auth.store import TokenStore, UserStore
from core.config import get_settings

TEST_SECRET_KEY = "test-secret-key-that-is-at-least-32-chars"


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def token_store() -> Generator[TokenStore, None, None]:
    s = TokenStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def owners(user_store: UserStore) -> OwnerRegistry:
    registry = OwnerRegistry()
    registry.register(USER_KIND, user_store.resolve_owner)
    return registry


@pytest.fixture
def service(token_store: TokenStore, owners: OwnerRegistry) -> TokenService:
    return TokenService(token_store, owners, secret_key=TEST_SECRET_KEY)


@pytest.fixture
def make_service(token_store: TokenStore, owners: OwnerRegistry):
    """Factory for services sharing the test stores but with their own options (clock, ttl, prefix)."""

    def _make(**kwargs) -> TokenService:
        kwargs.setdefault("secret_key", TEST_SECRET_KEY)
        return TokenService(token_store, owners, **kwargs)

    return _make


def _create_owner(user_store: UserStore, username: str) -> OwnerRef:
    uid = user_store.create_user(User(username=username))
    return user_ref(user_store.get_by_id(uid))


@pytest.fixture
def alice(user_store: UserStore) -> OwnerRef:
    return _create_owner(user_store, "alice")


@pytest.fixture
def bob(user_store: UserStore) -> OwnerRef:
    return _create_owner(user_store, "bob")


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, TokenStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    users_url = f"sqlite:///file:test_users_{db_suffix}?mode=memory&cache=shared&uri=true"
    tokens_url = f"sqlite:///file:test_tokens_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(users_url), TokenStore(tokens_url)


def _patch_lifespan(user_store: UserStore, token_store: TokenStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test stores into app.state via the same
    attach_services() the real lifespan uses. The prune_task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, user_store, token_store, get_settings())
        app.state.prune_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.prune_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with isolated in-memory stores."""
    user_store, token_store = _make_test_stores(request.module.__name__.replace(".", "_"))
    app.router.lifespan_context = _patch_lifespan(user_store, token_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    token_store.close()
    user_store.close()


@dataclass
class ApiOwner:
    """A freshly created user with one wildcard token, ready to call the API."""

    owner: OwnerRef
    token_id: int
    plaintext: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.plaintext}"}


@pytest.fixture
def api_owner(make_api_owner) -> ApiOwner:
    """Create a new user per test so revocation tests cannot affect each other."""
    return make_api_owner()


@pytest.fixture
def make_api_owner(api_client: TestClient):
    """Factory for extra users on the API stores, each with one credential."""
    state = api_client.app.state

    def _make(abilities: list[str] | None = None) -> ApiOwner:
        owner = _create_owner(state.user_store, f"user-{uuid.uuid4().hex[:12]}")
        new = state.token_service.mint(owner, "test session", abilities=abilities)
        return ApiOwner(owner=owner, token_id=new.token.id, plaintext=new.plaintext)

    return _make
