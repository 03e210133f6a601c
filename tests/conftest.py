"""
Shared pytest fixtures for the Whistle Core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - cipher / store: the app's field cipher and SQL report store
    - channels / router: recording fake channels behind a real NotificationRouter
    - monitor: EscalationMonitor wired to ``store`` and ``router``
"""

import os
import threading

import pytest

# Key material is read from the environment at app creation; set test values
# before create_app() runs.
os.environ.setdefault("WHISTLE_MASTER_KEY", "test-master-key-0123456789abcdef")
os.environ.setdefault("WHISTLE_KDF_SALT", "test-kdf-salt-0001")

from whistle import create_app  # noqa: E402
from whistle.models import db as _db  # noqa: E402
from whistle.services.escalation import EscalationMonitor, EscalationThresholds  # noqa: E402
from whistle.services.notification import NotificationChannel, NotificationRouter  # noqa: E402


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Pipeline fixtures ────────────────────────────────────────────────────


class RecordingChannel(NotificationChannel):
    """Fake channel: remembers every event, answers with a fixed outcome.

    ``outcome`` may be True, False or an exception instance to raise.
    ``gate`` (a threading.Event) makes ``send`` block until it is set.
    """

    def __init__(self, name, outcome=True, gate=None):
        self.name = name
        self.outcome = outcome
        self.gate = gate
        self.events = []
        self._lock = threading.Lock()

    def send(self, event):
        with self._lock:
            self.events.append(event)
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    @property
    def calls(self):
        with self._lock:
            return len(self.events)


@pytest.fixture()
def cipher(app):
    return app.extensions["field_cipher"]


@pytest.fixture()
def store(app):
    return app.extensions["report_store"]


@pytest.fixture()
def media(app):
    return app.extensions["media_service"]


@pytest.fixture()
def channels():
    return {
        "dashboard": RecordingChannel("dashboard"),
        "email": RecordingChannel("email"),
        "sms": RecordingChannel("sms"),
    }


@pytest.fixture()
def router(channels):
    r = NotificationRouter(channels, send_timeout=1, shutdown_grace_seconds=0.5)
    yield r
    r.shutdown(0)


@pytest.fixture()
def monitor(store, router):
    return EscalationMonitor(store, router, EscalationThresholds())


@pytest.fixture()
def make_channel():
    """Factory for extra RecordingChannel instances."""
    return RecordingChannel
