"""Shared test fixtures."""

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
import pytest
from starlette.testclient import TestClient

from case_portal.config import PortalSettings, StaffAccount
from case_portal.notifier import MemoryNotifier, NotificationDispatcher
from case_portal.server import Portal
from case_portal.store import JsonFileBackend, RecordStore

TEST_SECRET = "test-signing-secret-0123456789abcdef0123"
STAFF_EMAIL = "admin@example.com"
STAFF_PASSWORD = "correct horse battery staple"
STAFF_HASH = bcrypt.hashpw(STAFF_PASSWORD.encode(), bcrypt.gensalt(4)).decode()


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Controllable monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def restore_package_logger():
    """Undo setup_logging so caplog keeps working across tests."""
    yield
    pkg_logger = logging.getLogger("case_portal")
    pkg_logger.handlers.clear()
    pkg_logger.setLevel(logging.NOTSET)
    pkg_logger.propagate = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def store(tmp_path):
    s = RecordStore(JsonFileBackend(tmp_path / "data"))
    yield s
    s.close()


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def dispatcher(notifier):
    """Inline dispatcher so notifications are visible immediately."""
    return NotificationDispatcher(notifier, background=False)


@pytest.fixture
def settings(tmp_path):
    return PortalSettings(
        data_dir=tmp_path / "data",
        uploads_dir=tmp_path / "uploads",
        jwt_secret=TEST_SECRET,
        otp_hash_rounds=4,
        staff={STAFF_EMAIL: StaffAccount(STAFF_EMAIL, STAFF_HASH, "admin")},
        mail={"backend": "memory", "staff_address": "staff@example.com"},
    )


@pytest.fixture
def portal(settings, notifier, clock, monotonic):
    p = Portal(
        settings,
        notifier=notifier,
        background_notify=False,
        clock=clock,
        monotonic=monotonic,
    )
    yield p
    p.close()


@pytest.fixture
def client(portal):
    return TestClient(portal.create_app(), raise_server_exceptions=False)


@pytest.fixture
def staff_headers(client):
    resp = client.post(
        "/api/admin/login", json={"email": STAFF_EMAIL, "password": STAFF_PASSWORD}
    )
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def make_contact(**overrides) -> dict:
    contact = {
        "name": "Jane Doe",
        "email": "jane@x.com",
        "phone": "555-123-4567",
        "service": "consulting",
        "message": "Please help with my matter.",
    }
    contact.update(overrides)
    return contact
