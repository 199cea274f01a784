"""
tests/conftest.py -- Shared test fixtures for MedPortal unit and integration tests.

This module provides:
  - FakeClock: injectable clock so TTL and lockout boundaries are exact
  - make_settings(): Settings with fast Argon2 costs and explicit overrides
  - make_core: factory fixture building the whole auth core over in-memory DBs
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus an admin bearer token for API integration tests
  - make_user: factory fixture that creates and logs in a user of any role

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API tests because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Unit tests run on one thread, so plain :memory: is enough there.

Environment must be set before any api/auth/core import: DEBUG so
get_settings() auto-generates SECRET_KEY, cheap Argon2 parameters so the
suite stays fast, and a generous login rate limit so integration tests that
log in many users are not throttled.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.audit import AuditLog
from auth.mediator import RequestMediator
from auth.models import Role
from auth.notifications import NotificationOutbox
from auth.policy import PolicyEngine
from auth.service import CredentialService
from auth.store import AuthStore
from clinic.store import ClinicStore
from core.config import Settings, get_settings

ADMIN_EMAIL = "root-admin@medportal.test"
ADMIN_PASSWORD = "Admin!pass1"
STRONG_PASSWORD = "Hunter!2a"

# ---------------------------------------------------------------------------
# Clock and settings
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock returning a controllable aware UTC datetime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "k" * 64,
        "argon2_time_cost": 1,
        "argon2_memory_cost": 1024,
        "argon2_parallelism": 1,
        "storage_retry_base_delay": 0.0,
        "storage_retry_max_delay": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Auth core over in-memory stores (unit tests)
# ---------------------------------------------------------------------------


@dataclass
class Core:
    settings: Settings
    clock: FakeClock
    store: AuthStore
    clinic: ClinicStore
    audit: AuditLog
    service: CredentialService
    policy: PolicyEngine
    notifier: NotificationOutbox
    mediator: RequestMediator

    def actions(self) -> list[str]:
        entries, _ = self.audit.query(descending=False, limit=10_000)
        return [e.action for e in entries]


@pytest.fixture
def make_core() -> Generator:
    """Return a factory: make_core(**settings_overrides) -> Core on fresh in-memory DBs."""
    built: list[Core] = []

    def _make(**overrides) -> Core:
        settings = make_settings(**overrides)
        clock = FakeClock()
        store = AuthStore("sqlite:///:memory:")
        clinic = ClinicStore("sqlite:///:memory:")
        audit = AuditLog(store, settings.audit_sink, clock=clock)
        service = CredentialService(settings, store, audit, clock=clock)
        policy = PolicyEngine(consent_hook=clinic.has_share)
        notifier = NotificationOutbox(store, clock=clock)
        mediator = RequestMediator(service, policy, notifier, settings)
        core = Core(settings, clock, store, clinic, audit, service, policy, notifier, mediator)
        built.append(core)
        return core

    yield _make

    for core in built:
        core.clinic.close()
        core.store.close()


@pytest.fixture
def core(make_core) -> Core:
    """Auth core with default settings."""
    return make_core()


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[AuthStore, ClinicStore]:
    """Create isolated named shared-memory SQLite stores for one test module.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'users', 'admin').
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    clinic_url = f"sqlite:///file:test_clinic_{db_suffix}?mode=memory&cache=shared&uri=true"
    return AuthStore(db_url=auth_url), ClinicStore(db_url=clinic_url)


def _patch_lifespan(auth_store: AuthStore, clinic_store: ClinicStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state with the same wire_services()
    the production lifespan uses, so routes see the real object graph.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, get_settings(), auth_store, clinic_store)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    Each test module gets its own databases, named after the module.
    The admin is created through the credential service (admins cannot
    self-register) and logs in over HTTP like any other user.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    auth_store, clinic_store = _make_test_stores(suffix)
    app.router.lifespan_context = _patch_lifespan(auth_store, clinic_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        admin = client.app.state.credentials.register(
            ADMIN_EMAIL, "Root Admin", ADMIN_PASSWORD, Role.admin, allowed_roles=Role
        )
        resp = client.post("/api/v1/users/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        assert resp.status_code == 200, resp.text
        token = resp.json()["data"]["accessToken"]
        yield client, token, admin.id

    clinic_store.close()
    auth_store.close()


@dataclass
class User:
    id: str
    email: str
    password: str
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@pytest.fixture(scope="module")
def make_user(api_client):
    """Return a factory: make_user(role="patient") -> logged-in User.

    Patients register publicly; every other role is created by the admin via
    POST /admin/users, mirroring how the portal provisions staff accounts.
    """
    client, admin_token, _ = api_client

    def _make(role: str = "patient", password: str = STRONG_PASSWORD) -> User:
        email = f"{role}-{uuid.uuid4().hex[:10]}@medportal.test"
        body = {"name": f"Test {role.title()}", "email": email, "password": password}
        if role == "patient":
            resp = client.post("/api/v1/users/register", json=body)
        else:
            resp = client.post(
                "/api/v1/admin/users",
                json={**body, "role": role},
                headers={"Authorization": f"Bearer {admin_token}"},
            )
        assert resp.status_code == 201, resp.text
        user_id = resp.json()["data"]["user"]["id"]
        login = client.post("/api/v1/users/login", json={"email": email, "password": password})
        assert login.status_code == 200, login.text
        return User(id=user_id, email=email, password=password, token=login.json()["data"]["accessToken"])

    return _make
