from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import access_manager.models  # noqa: F401
from access_manager.core.config import settings
from access_manager.core.rate_limiter import limiter
from access_manager.core.security import create_admin_token, hash_password
from access_manager.db.base import Base
from access_manager.main import create_app
from access_manager.models.access_request import AccessRequest, AccessStatus
from access_manager.services.events import EventQueue
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy

from tests.mocks.fakes import FakeClock, FakeNotifier

WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_PASSWORD = "correct horse battery staple"


# ---- database ----

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db, clock):
    return RequestStore(db, clock=clock)


@pytest.fixture
def policy():
    return AccessPolicy(max_slots=3, access_duration_days=7, expiry_warning_hours=24, max_automation_attempts=3)


@pytest.fixture
def events():
    return EventQueue()


@pytest.fixture
def notifier():
    return FakeNotifier()


# ---- seeding helpers ----

class Seeder:
    """Puts requests into a given state without going through the engines."""

    def __init__(self, store: RequestStore, clock: FakeClock):
        self.store = store
        self.clock = clock

    def pending(self, email: str, full_name: str = "Test User") -> AccessRequest:
        self.clock.advance(seconds=1)
        return self.store.insert_pending(email, full_name)

    def active(self, email: str, expires_in: timedelta = timedelta(days=5), slot_number: int = 1) -> AccessRequest:
        request = self.pending(email)
        return self.store.activate(request, slot_number, self.clock() + expires_in)

    def expired_window(self, email: str) -> AccessRequest:
        """Active, but the access window already ended."""
        return self.active(email, expires_in=timedelta(hours=-1))

    def status(self, email: str, status: AccessStatus) -> AccessRequest:
        request = self.pending(email)
        request.status = status
        if status in (AccessStatus.expired, AccessStatus.removed):
            request.removed_at = self.clock()
        self.store.db.commit()
        return request


@pytest.fixture
def seed(store, clock):
    return Seeder(store, clock)


@pytest.fixture
def fetch(session_factory):
    """Read a request through a fresh session, bypassing identity-map caching."""

    def _fetch(email: str) -> AccessRequest:
        session = session_factory()
        try:
            return session.query(AccessRequest).filter(AccessRequest.email == email).first()
        finally:
            session.close()

    return _fetch


# ---- API ----

@pytest.fixture
def app(session_factory, notifier, clock, monkeypatch):
    monkeypatch.setattr(settings, "AUTOMATION_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "MAX_SLOTS", 3)
    limiter.enabled = False
    yield create_app(session_factory=session_factory, notifier=notifier, clock=clock)
    limiter.enabled = True


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_admin_token()}"}


@pytest.fixture
def admin_password(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_PASSWORD_HASH", hash_password(ADMIN_PASSWORD))
    return ADMIN_PASSWORD


@pytest.fixture
def webhook_headers():
    return {"Authorization": f"Bearer {WEBHOOK_SECRET}"}
