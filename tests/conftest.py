"""
Shared pytest fixtures for the client portal workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - events: Records every workflow event published during a test
    - project: A freshly created project sitting in Onboarding
"""

from datetime import datetime, timezone

import pytest

from portal import create_app
from portal.models import db as _db
from portal.workflow.events import WORKFLOW_EVENT_TYPES, get_event_bus

# Fixed reference time so dwell / stuck arithmetic is deterministic.
T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

ADMIN = {"X-Portal-Role": "admin", "X-Portal-User": "admin-1"}
CLIENT = {"X-Portal-Role": "client", "X-Portal-User": "client-1"}
SYSTEM = {"X-Portal-Role": "system"}


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


# ── Event capture ────────────────────────────────────────────────────────


class EventRecorder:
    """Collects published workflow events in order."""

    def __init__(self):
        self.items = []

    def __call__(self, event):
        self.items.append(event)

    def of(self, event_type):
        return [e for e in self.items if isinstance(e, event_type)]

    def clear(self):
        self.items.clear()


@pytest.fixture()
def events(app):
    """Subscribe a recorder to every workflow event type for one test."""
    recorder = EventRecorder()
    bus = get_event_bus()
    for event_type in WORKFLOW_EVENT_TYPES:
        bus.subscribe(event_type, recorder)
    yield recorder
    for event_type in WORKFLOW_EVENT_TYPES:
        bus.unsubscribe(event_type, recorder)


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def project():
    """Create a project at Onboarding, entered at ``T0``, and return its id."""
    from portal.services.workflow_inbound import handle_project_created

    entry, created = handle_project_created("proj-1", now=T0)
    assert created
    return entry.project_id
