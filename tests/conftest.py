"""
tests/conftest.py -- Shared test fixtures for CredKeep.

This module provides:
  - FakeClock: a controllable clock shared by the token issuer and stores
  - engine / user_store / session_store: isolated in-memory databases
  - hasher / issuer / orchestrator: the core wired the way build_orchestrator does
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Each fixture gets its own uuid-suffixed name so tests never share
state.

DEBUG must be set before any core/auth import so get_settings() can generate
secrets instead of refusing to start. BCRYPT_ROUNDS=4 keeps hashing fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set env before any core/auth import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from auth.orchestrator import AuthOrchestrator
from auth.passwords import PasswordHasher
from auth.store import SqlSessionStore, SqlUserStore, create_store_engine
from auth.tokens import TokenIssuer

ACCESS_SECRET = "a" * 16 + "access-secret-for-tests-only"
REFRESH_SECRET = "r" * 16 + "refresh-secret-for-tests-only"
TEST_ROUNDS = 4


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def memory_db_url(prefix: str = "credkeep") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_store_engine(memory_db_url())
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine: Engine, clock: FakeClock) -> SqlUserStore:
    return SqlUserStore(engine, clock=clock)


@pytest.fixture
def session_store(engine: Engine, clock: FakeClock) -> SqlSessionStore:
    return SqlSessionStore(engine, clock=clock)


@pytest.fixture(scope="session")
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=TEST_ROUNDS)


@pytest.fixture
def issuer(clock: FakeClock) -> TokenIssuer:
    return TokenIssuer(ACCESS_SECRET, REFRESH_SECRET, clock=clock)


@pytest.fixture
def orchestrator(
    user_store: SqlUserStore,
    session_store: SqlSessionStore,
    hasher: PasswordHasher,
    issuer: TokenIssuer,
) -> AuthOrchestrator:
    return AuthOrchestrator(user_store, session_store, hasher, issuer)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, orchestrator: AuthOrchestrator, oauth=None):
    """Return a lifespan that wires pre-built test collaborators into app.state.

    The OAuth registry is a MagicMock by default so no test ever reaches a
    real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.user_store = orchestrator.users
        app.state.session_store = orchestrator.sessions
        app.state.orchestrator = orchestrator
        app.state.oauth = oauth if oauth is not None else MagicMock()
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, AuthOrchestrator], None, None]:
    """Yield (client, orchestrator) over the real app with isolated stores.

    Uses the real clock: HTTP tests exercise the wire contract, and expiry
    behaviour is covered against FakeClock in the unit tests.
    """
    from api.main import app

    eng = create_store_engine(memory_db_url("api"))
    orch = AuthOrchestrator(
        SqlUserStore(eng),
        SqlSessionStore(eng),
        PasswordHasher(rounds=TEST_ROUNDS),
        TokenIssuer(ACCESS_SECRET, REFRESH_SECRET),
    )
    app.router.lifespan_context = _patch_lifespan(eng, orch)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, orch

    eng.dispose()
