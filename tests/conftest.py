"""
Pytest fixtures for the account security tests.

The app runs on a temporary SQLite file rather than :memory: so the audit and
notification worker threads see the same database as the request thread.
"""
import os
import sys
import threading
from concurrent.futures import Future
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import security.password
from app import create_app
from models import db, User, Role
from security.password import hash_password
from security.recovery import current_recovery

PASSWORD = "OldPassw0rd"
NEW_PASSWORD = "NewPassw0rd"


class FrozenClock:
    """Naive UTC clock that only moves when told to."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.changed = []
        self.fail = False
        self.delivered = threading.Event()
        self.changed_delivered = threading.Event()

    def send_recovery_email(self, to_address, reset_url, expires_at):
        if self.fail:
            raise OSError("smtp down")
        self.sent.append({"to": to_address, "url": reset_url, "expires_at": expires_at})
        self.delivered.set()
        return True, None

    def send_password_changed_email(self, to_address, changed_at):
        if self.fail:
            raise OSError("smtp down")
        self.changed.append({"to": to_address, "changed_at": changed_at})
        self.changed_delivered.set()
        return True, None

    def wait(self, timeout=5):
        return self.delivered.wait(timeout)


class DeferredExecutor:
    """Holds submitted jobs until run_all(), so tests can look in between."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for future, fn, args, kwargs in jobs:
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)

    def shutdown(self, wait=True):
        self.run_all()


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    monkeypatch.setattr(security.password, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(tmp_path, clock, notifier):
    """Create application for testing."""
    app = create_app(
        config_overrides={
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
            "SQLALCHEMY_DATABASE_URI": "sqlite:///" + str(tmp_path / "test.db"),
            "AUTO_CREATE_TABLES": True,
            "RATE_LIMIT_STORAGE": "database",
            "AUDIT_WRITE_TIMEOUT_SECONDS": 2,
            "PASSWORD_RESET_URL": "https://example.test/reset",
        },
        clock=clock,
        notifier=notifier,
    )

    with app.app_context():
        yield app
        manager = current_recovery()
        manager.notify_executor.shutdown(wait=True)
        manager.audit.executor.shutdown(wait=True)
        db.session.remove()
        db.drop_all()


@pytest.fixture
def session(app):
    """Database session for the test thread."""
    return db.session


@pytest.fixture
def recovery(app):
    return current_recovery()


@pytest.fixture
def client(app):
    return app.test_client()


def _make_user(session, email, password=PASSWORD, roles=()):
    user = User(email=email, password_hash=hash_password(password))
    for name in roles:
        user.roles.append(Role.query.filter_by(name=name).one())
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def user(session):
    """A regular active account."""
    return _make_user(session, "alice@example.com")


@pytest.fixture
def other_user(session):
    return _make_user(session, "bob@example.com")


@pytest.fixture
def admin_user(session):
    return _make_user(session, "admin@example.com", roles=("ADMIN",))


@pytest.fixture
def admin_client(client, admin_user):
    """Test client logged in as an admin."""
    resp = client.post("/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    return client
