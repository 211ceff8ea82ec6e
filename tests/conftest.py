"""Shared fixtures: a fresh file-backed SQLite database per test."""

import threading
from datetime import datetime, timedelta

import pytest

from feedback_rewards.auth.models import UserAccount
from feedback_rewards.gamification.service import GamificationService
from feedback_rewards.storage.db import Database

BUSINESS_ID = 1
OTHER_BUSINESS_ID = 2


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, 0)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self.current

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.current += timedelta(**kwargs)
            return self.current


@pytest.fixture
def database(tmp_path):
    # File-backed so threads share one database through separate connections
    database = Database(f"sqlite:///{tmp_path / 'rewards.db'}", timeout_seconds=30)
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def users(database) -> dict[str, int]:
    """Seed referring users. Referred users need no account."""
    accounts = {
        "alice": UserAccount(id=1, email="alice@example.com", name="Alice"),
        "bob": UserAccount(id=2, email="Bob@Example.com", name="Bob"),
        "carol": UserAccount(id=3, email="carol@example.com", name="Carol"),
        "dave": UserAccount(id=4, email="dave@example.com", name="Dave", is_active=False),
    }
    with database.session() as session:
        session.add_all(accounts.values())
    return {name: account.id for name, account in accounts.items()}


@pytest.fixture
def service(database, clock, users) -> GamificationService:
    service = GamificationService(database=database, clock=clock)
    service.provision_business(BUSINESS_ID)
    return service
