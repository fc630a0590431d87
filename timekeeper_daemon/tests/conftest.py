"""
Configuration and fixtures for timekeeper_daemon tests.
"""

import datetime
import os
from zoneinfo import ZoneInfo

import pytest
import yaml

from timekeeper_daemon import storage as storage_module
from timekeeper_daemon.clock import Clock
from timekeeper_daemon.config import Config
from timekeeper_daemon.models import Timer
from timekeeper_daemon.notifier import Notifier
from timekeeper_daemon.service import TimerService
from timekeeper_daemon.storage import Storage

MELBOURNE = ZoneInfo("Australia/Melbourne")

# Wednesday 14 October 2026, 10:00 in Melbourne
WEDNESDAY_10AM = datetime.datetime(2026, 10, 14, 10, 0, tzinfo=MELBOURNE)
# Saturday 17 October 2026, 10:00 in Melbourne
SATURDAY_10AM = datetime.datetime(2026, 10, 17, 10, 0, tzinfo=MELBOURNE)


class FakeClock(Clock):
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime.datetime = WEDNESDAY_10AM, timezone="Australia/Melbourne"):
        super().__init__(timezone)
        self.current = start.timestamp()

    def timestamp(self) -> float:
        return self.current

    def advance(self, seconds: float):
        self.current += seconds

    def set(self, moment: datetime.datetime):
        self.current = moment.timestamp()


class RecordingNotifier(Notifier):
    """
    Records every notification. Set accept to False to simulate a channel
    that refuses messages, or fail_users to refuse only some recipients.
    """

    def __init__(self):
        self.sent = []
        self.attempts = 0
        self.accept = True
        self.fail_users = set()

    async def notify(self, user_id, message, subject):
        self.attempts += 1
        if not self.accept or user_id in self.fail_users:
            return False
        self.sent.append((user_id, subject, message))
        return True

    def subjects(self, prefix=""):
        return [subject for _, subject, _ in self.sent if subject.startswith(prefix)]


@pytest.fixture
def test_config(tmp_path):
    """
    Provides a test configuration with temporary paths and test users.
    """
    config = {
        "db_path": str(tmp_path / "timekeeper.sqlite"),
        "ipc_socket": str(tmp_path / "timekeeper.sock"),
        "timezone": "Australia/Melbourne",
        "sweep_interval_seconds": 60,
        "storage": {"db_timeout": 5, "write_retries": 5},
        "notifications": {"backend": "log", "warning_seconds": 600},
        "logging": {"level": "DEBUG", "format": "plain"},
        "users": {
            "alice": {"email": "alice@example.com", "is_admin": True},
            "bob": {"email": "bob@example.com"},
            "carol": {"email": "carol@example.com"},
        },
    }
    config_path = tmp_path / "config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config, f)
    yield config, str(config_path)


@pytest.fixture
def config(test_config):
    _, config_path = test_config
    return Config(config_path)


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    monkeypatch.setattr(storage_module, "RETRY_BACKOFF", 0)


@pytest.fixture
def storage(tmp_path):
    """Fixture to provide a storage instance with test database."""
    store = Storage(os.path.join(str(tmp_path), "timekeeper.sqlite"), db_timeout=5)
    yield store
    store.close()


@pytest.fixture
def users(storage):
    """alice is an administrator, bob and carol are kids."""
    return {
        "alice": storage.add_user("alice", "alice@example.com", is_admin=True),
        "bob": storage.add_user("bob", "bob@example.com"),
        "carol": storage.add_user("carol", "carol@example.com"),
    }


def _insert_timer(storage, user_id, name="Laptop", category="Computer", weekday=60, weekend=120, active=True):
    """Inserts a timer directly, bypassing the admin checks."""
    with storage.SessionLocal() as db:
        with db.begin():
            timer = Timer(
                user_id=user_id,
                name=name,
                category=category,
                weekday_minutes=weekday,
                weekend_minutes=weekend,
                is_active=active,
            )
            db.add(timer)
            db.flush()
            return timer.id


@pytest.fixture
def make_timer(storage):
    """Factory inserting timers for the test's storage."""

    def _make(user_id, **kwargs):
        return _insert_timer(storage, user_id, **kwargs)

    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(storage, clock, notifier):
    return TimerService(storage, clock, notifier, warning_seconds=600)


@pytest.fixture
def laptop(storage, users):
    """bob's laptop: 60 minutes on weekdays, 120 on weekends."""
    return _insert_timer(storage, users["bob"])
