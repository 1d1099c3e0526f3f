from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("OTP_ALLOWED_EMAILS", "admin@example.com,editor@example.com")
os.environ.setdefault("ADMIN_EMAILS", "admin@example.com")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("SMTP_HOST", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import app.models  # noqa: F401  register SQLModel tables
from app.config import Settings
from app.main import app as fastapi_app
from app.services.otp import OtpService
from app.services.sessions import SessionStore

ADMIN = "admin@example.com"
EDITOR = "editor@example.com"  # may sign in, not authorized for the admin area
STRANGER = "stranger@example.com"


class FakeClock:
    """Controllable UTC clock for the stores."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Service fixtures ──────────────────────────────────────────────────


def make_settings(**overrides) -> Settings:
    defaults = {
        "db_url": "sqlite://",
        "otp_allowed_emails": f"{ADMIN},{EDITOR}",
        "admin_emails": ADMIN,
        "cookie_secure": False,
        "smtp_host": "",
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return make_settings()


@pytest.fixture(name="session_store")
def session_store_fixture(settings, engine, clock) -> SessionStore:
    return SessionStore(settings, engine=engine, clock=clock)


@pytest.fixture(name="mail_worker")
def mail_worker_fixture() -> MagicMock:
    """Stands in for the background worker; collects submitted jobs."""
    return MagicMock()


@pytest.fixture(name="otp_service")
def otp_service_fixture(settings, session_store, mail_worker, engine, clock) -> OtpService:
    return OtpService(settings, session_store, worker=mail_worker, engine=engine, clock=clock)


def last_code(worker: MagicMock) -> str:
    """The code carried by the most recent mail job."""
    job = worker.submit_job.call_args.args[0]
    return job.payload["code"]


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="app_worker")
def app_worker_fixture() -> MagicMock:
    worker = MagicMock()
    worker.get_job_stats.return_value = {
        "queue_depth": 0,
        "succeeded": 0,
        "failed": 0,
        "pending": 0,
    }
    return worker


@pytest.fixture(name="client")
def client_fixture(engine, app_worker):
    """TestClient against the real app, on the test engine, with no worker thread."""
    with patch("app.db.engine", engine), patch(
        "app.main.BackgroundWorker", return_value=app_worker
    ):
        with TestClient(fastapi_app) as client:
            yield client


def login(client: TestClient, worker: MagicMock, identity: str = ADMIN):
    """Run the full code flow and return the verify response."""
    resp = client.post("/api/auth/code", json={"identity": identity})
    assert resp.status_code == 200
    code = last_code(worker)
    return client.post("/api/auth/verify", json={"identity": identity, "code": code})
