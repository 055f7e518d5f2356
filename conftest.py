from datetime import datetime, timedelta, timezone

import pytest

import database_manager
from access import Identity
from app import create_app
from database_manager import DatabaseManager
from models import UserRole

ADMIN_EMAIL = "admin@example.com"
PASSWORD = "password123"


class Clock:
    """Controllable replacement for the store's notion of "now"."""

    def __init__(self, start: datetime):
        self.current = start

    def advance(self, **delta):
        self.current += timedelta(**delta)
        return self.current

    def __call__(self, now=None):
        return now or self.current


@pytest.fixture
def clock(monkeypatch):
    clock = Clock(datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(database_manager, "_now", clock)
    return clock


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'seatdesk-test.db'}")
    yield manager
    manager.dispose()


@pytest.fixture
def venue(db):
    return db.create_venue(name="TechHub", location="Downtown", capacity=4,
                           openTime="08:00", closeTime="22:00")


@pytest.fixture
def seats(db, venue):
    return [db.create_seat(venue.id, row="A", col=str(col)) for col in range(1, 5)]


@pytest.fixture
def alice(db):
    user = db.create_user("alice@example.com", PASSWORD, name="Alice")
    return Identity(user.id, user.role)


@pytest.fixture
def bob(db):
    user = db.create_user("bob@example.com", PASSWORD, name="Bob")
    return Identity(user.id, user.role)


@pytest.fixture
def admin(db):
    user = db.create_user("root@example.com", PASSWORD, name="Root", role=UserRole.ADMIN)
    return Identity(user.id, user.role)


@pytest.fixture
def app(db, tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
            "ENABLE_SWEEPER": False,
            "SEED_DEMO_VENUE": False,
            "ADMIN_EMAILS": {ADMIN_EMAIL},
        },
        db=db,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def register(client, email, password=PASSWORD, name="Test User"):
    resp = client.post("/api/auth/register", json={"email": email, "password": password, "name": name})
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


@pytest.fixture
def user_client(app):
    client = app.test_client()
    register(client, "user@example.com")
    return client


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    user = register(client, ADMIN_EMAIL, name="Admin")
    assert user["role"] == "admin"
    return client
