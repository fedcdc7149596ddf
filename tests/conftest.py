"""
tests/conftest.py -- Shared test fixtures for CrowdControl tests.

This module provides:
  - RecordingNotifier: captures notifications instead of logging them
  - store: a fresh in-memory TrustStore per test (unit tests)
  - _make_test_store(): isolated shared-memory DB for API tests
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - api_client: TestClient plus an active ADMIN account and its bearer token
  - bare_client: TestClient over an empty database (no ADMIN yet)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import threading
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Route tests sign in far more often than a real client would.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, configure_state
from auth.accounts import new_account
from auth.roles import RoleCapacityEnforcer
from auth.store import TrustStore
from auth.tokens import get_token_service
from core.config import get_settings

ADMIN_EMAIL = "admin@crowdcontrol.test"
ADMIN_PASSWORD = "adminpass123"


class RecordingNotifier:
    """Notifier that keeps every message so tests can pull codes out of links."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def send(self, recipient: str, template_id: str, payload: dict) -> None:
        with self._lock:
            self.sent.append((recipient, template_id, payload))

    def last_code(self, recipient: str, template_id: str) -> str:
        """Return the ?code= value of the newest matching notification."""
        with self._lock:
            matches = [p for r, t, p in self.sent if r == recipient and t == template_id]
        assert matches, f"No {template_id} notification for {recipient}"
        return parse_qs(urlparse(matches[-1]["link"]).query)["code"][0]


# ---------------------------------------------------------------------------
# Unit-test store
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[TrustStore, None, None]:
    """Fresh in-memory TrustStore, discarded after the test."""
    s = TrustStore("sqlite:///:memory:")
    yield s
    s.close()


# ---------------------------------------------------------------------------
# API helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> TrustStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'bare').
    """
    return TrustStore(db_url=f"sqlite:///file:test_trust_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: TrustStore, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store and a RecordingNotifier into app.state
    so TestClient routes see an isolated database and tests can read the
    links that would have been e-mailed.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_state(app, store, notifier, get_settings())
        app.state.notifier = notifier
        yield
        app.state.dispatcher.close()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The ADMIN account is bootstrapped and enabled before the client starts,
    and a bearer token is issued for it. The notifier is reachable as
    client.app.state.notifier.
    """
    store = _make_test_store(f"api_{uuid.uuid4().hex}")
    notifier = RecordingNotifier()

    admin_id = RoleCapacityEnforcer(store).bootstrap_admin(new_account(ADMIN_EMAIL, ADMIN_PASSWORD, "Ada", "Admin"))
    store.update_account(admin_id, is_enabled=True)
    token = get_token_service().issue(ADMIN_EMAIL, admin_id)

    app.router.lifespan_context = _patch_lifespan(store, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin_id

    store.close()


@pytest.fixture(scope="module")
def bare_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over an empty database, for the bootstrap flow."""
    store = _make_test_store(f"bare_{uuid.uuid4().hex}")
    notifier = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(store, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    store.close()
