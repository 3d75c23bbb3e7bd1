"""
Pytest fixtures for ChurnOpp tests.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from churnopp import api
from churnopp.config import Settings
from churnopp.database import ChurnOppDatabase
from churnopp.errors import TransportError
from churnopp.models import Account, PersistedEvent, SubscriptionTier


NOW = datetime(2026, 3, 15, 12, 0, 0)


class FakeClock:
    """Manually advanced clock. Reads milliseconds or seconds."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, amount: float):
        self.now += amount


class RecordingSink:
    """Stands in for the delivery queue and keeps submitted events."""

    def __init__(self):
        self.events = []

    def submit(self, event):
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.event_type.value == event_type]


class ScriptedTransport:
    """Transport that fails a scripted number of times, then succeeds."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = []
        self.delivered = []

    async def send(self, event):
        self.attempts.append(event)
        if self.failures > 0:
            self.failures -= 1
            raise TransportError("connection refused")
        self.delivered.append(event)


class RecordingSender:
    """Alert sender that records instead of emailing."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, alert):
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append(alert)


@pytest.fixture
def clock():
    return FakeClock(start=1_000_000.0)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def db(tmp_path):
    """Empty database with one account per tier."""
    database = ChurnOppDatabase(str(tmp_path / "churnopp.db"))
    for tier in SubscriptionTier:
        database.save_account(Account(
            account_id=f"acct_{tier.value}",
            email=f"owner+{tier.value}@example.com",
            tier=tier,
        ))
    return database


@pytest.fixture
def make_event():
    """Build a persisted event for a user of the enterprise account."""
    def _make(event_type, payload=None, days_ago=0.0, user_id="session-abc", account_id="acct_enterprise"):
        return PersistedEvent(
            account_id=account_id,
            user_id=user_id,
            event_type=event_type,
            payload=payload or {},
            timestamp=NOW - timedelta(days=days_ago),
        )
    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "api.db"),
        log_dir=str(tmp_path / "logs"),
        jwt_secret="test-secret",
    )


@pytest.fixture
def alert_sender():
    return RecordingSender()


@pytest.fixture
def services(settings, alert_sender, monkeypatch):
    """API services backed by a temporary database."""
    svc = api.build_services(settings)
    svc.scorer.dispatcher.sender = alert_sender
    for tier in SubscriptionTier:
        svc.db.save_account(Account(
            account_id=f"acct_{tier.value}",
            email=f"owner+{tier.value}@example.com",
            tier=tier,
        ))
    monkeypatch.setattr(api, "_services", svc)
    yield svc
    svc.scorer.dispatcher.shutdown()


@pytest.fixture
def client(services):
    return TestClient(api.app)


@pytest.fixture
def auth_headers(settings):
    """Authorization headers for an account."""
    def _headers(account_id="acct_enterprise"):
        token = jwt.encode({"accountId": account_id}, settings.jwt_secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}
    return _headers
