"""
Pytest configuration and shared fixtures.
"""
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta

import pytest

from tenantcore.config import Settings
from tenantcore.db.database import init_db, make_engine, make_session_factory
from tenantcore.main import build_services
from tenantcore.notifications.base import Notifier


class FakeClock:
    def __init__(self, now=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InlineExecutor(Executor):
    """Runs submitted work immediately so notifications are observable in tests."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


class RecordingNotifier(Notifier):
    def __init__(self):
        self.invitations = []
        self.role_changes = []

    def send_invitation(self, email, token, expires_at):
        self.invitations.append((email, token, expires_at))

    def send_role_changed(self, user_id, team_id, role):
        self.role_changes.append((user_id, team_id, role))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        audit_secret="test-audit-secret",
        billing_webhook_secret="whsec_test",
    )


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(settings, session_factory, notifier, clock):
    services = build_services(settings, session_factory, notifier=notifier, clock=clock,
                              executor=InlineExecutor())
    yield services
    services.notifications.shutdown(wait=True)


@pytest.fixture
def acme(services):
    """Organization "Acme" owned by u1, with its default team."""
    org = services.organizations.create_organization("u1", "Acme")
    team = services.organizations.teams_of(org.id)[0]
    return org, team


@pytest.fixture
def file_engine(tmp_path):
    """File-backed database: every session checks out its own connection."""
    engine = make_engine(f"sqlite:///{tmp_path / 'tenantcore.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_services(settings, file_engine, notifier, clock):
    services = build_services(settings, make_session_factory(file_engine), notifier=notifier,
                              clock=clock, executor=InlineExecutor())
    yield services
    services.notifications.shutdown(wait=True)
