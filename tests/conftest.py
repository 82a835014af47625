"""Pytest configuration and fixtures."""

import os
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.api.dependencies import get_event_publisher, get_stats_repository
from src.config import Settings
from src.database import Base, get_db
from src.main import app
from src.models.reminder import Reminder
from src.services.auth import create_access_token
from src.services.events import ReminderEventPublisher
from src.services.health import SchedulerStatsRepository
from src.services.notifier import NotificationResult, Notifier
from src.services.store import ReminderStore


class AuthHeaders(dict):
    """Dict subclass that also stores the actor ID."""

    def __init__(self, *args, actor_id: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.actor_id = actor_id


class FakeClock:
    """Controllable clock; call it to get the current instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeNotifier(Notifier):
    """Records sends and replays scripted results."""

    def __init__(self, results: list[NotificationResult] | None = None):
        self.results = list(results or [])
        self.sent: list[int] = []
        self.escalations: list[tuple[int, list[str], int]] = []
        self.escalation_results: dict[str, NotificationResult] = {}

    async def send(self, reminder):
        self.sent.append(reminder.id)
        if self.results:
            return self.results.pop(0)
        return NotificationResult.ok(message_ref=f"msg-{len(self.sent)}")

    async def send_escalation(
        self, reminder, recipients, level, message=None, original_delivery_id=None
    ):
        self.escalations.append((reminder.id, list(recipients), level))
        return {
            r: self.escalation_results.get(r, NotificationResult.ok(message_ref=f"esc-{r}"))
            for r in recipients
        }


# Use test database - PostgreSQL in Docker, SQLite locally
if os.getenv("DATABASE_URL"):
    # Running in Docker - use PostgreSQL test database
    SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL").replace("/reminders", "/reminders_test")
else:
    # Running locally - use SQLite
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

connect_args = {"check_same_thread": False} if "sqlite" in SQLALCHEMY_DATABASE_URL else {}
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database schema once at the start of the test session."""
    if "postgresql" in SQLALCHEMY_DATABASE_URL:
        # For PostgreSQL, create the test database
        from sqlalchemy_utils import create_database, database_exists

        # Create test database if it doesn't exist
        if not database_exists(SQLALCHEMY_DATABASE_URL):
            create_database(SQLALCHEMY_DATABASE_URL)

    Base.metadata.create_all(bind=engine)
    yield
    # Don't drop database - just leave it for next run (each test cleans up after itself)


@pytest.fixture(scope="function", autouse=True)
def db():
    """Create a fresh database session for each test with cleanup."""
    session = TestingSessionLocal()

    yield session

    # Clean up all data after test
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture
def store(db):
    """Reminder store on the test session."""
    return ReminderStore(db)


@pytest.fixture
def settings():
    """Settings with retry delays turned off."""
    return Settings(
        scheduler_retry_delay_seconds=0,
        scheduler_max_retries=2,
        max_consecutive_failures=3,
        default_timezone="UTC",
    )


@pytest.fixture
def clock():
    """Clock frozen at Monday 2024-01-15 08:00 UTC."""
    return FakeClock(datetime(2024, 1, 15, 8, 0, tzinfo=UTC))


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def events():
    """Event publisher that records calls instead of talking to Redis."""
    return MagicMock(spec=ReminderEventPublisher)


@pytest.fixture
def make_reminder(store):
    """Factory that stores a reminder with sensible defaults."""

    def _make(**overrides) -> Reminder:
        fields = {
            "owner_id": "U1",
            "recipient_id": "U1",
            "title": "Standup",
            "content": "Post your standup update",
            "schedule": {"type": "daily", "time_of_day": "09:00:00"},
            "timezone": "UTC",
            "escalation": {"enabled": False, "levels": []},
            "next_due_at": datetime(2024, 1, 15, 8, 0, tzinfo=UTC),
        }
        fields.update(overrides)
        return store.create_reminder(Reminder(**fields))

    return _make


@pytest.fixture
def stats_redis():
    """In-memory stand-in for the Redis client used by the stats repository."""
    data: dict[str, str] = {}
    client = MagicMock()
    client.get.side_effect = data.get
    client.set.side_effect = lambda key, value: data.__setitem__(key, value)

    def incr(key):
        data[key] = str(int(data.get(key, 0)) + 1)
        return int(data[key])

    client.incr.side_effect = incr
    return client


@pytest.fixture(scope="function")
def client(db, events, stats_redis):
    """Create a test client with database, event and stats overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_publisher] = lambda: events
    app.dependency_overrides[get_stats_repository] = lambda: SchedulerStatsRepository(stats_redis)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_auth_headers(actor_id: str) -> AuthHeaders:
    token = create_access_token(actor_id)
    return AuthHeaders({"Authorization": f"Bearer {token}"}, actor_id=actor_id)


@pytest.fixture
def auth_headers():
    """Auth headers for user U1."""
    return make_auth_headers("U1")


@pytest.fixture
def other_auth_headers():
    """Auth headers for user U2."""
    return make_auth_headers("U2")
