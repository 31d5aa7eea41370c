"""Shared test fixtures for the access control engine tests.

Provides a test database (in-memory SQLite), a controllable clock, the
in-memory rule backend, a session manager wired to all three, and a
FastAPI test client whose engine is replaced by a test engine.
"""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from accessgate.config import Settings
from accessgate.database import Base, init_db
from accessgate.engine import build_engine
from accessgate.errors import DriverError
from accessgate.main import app
from accessgate.services.firewall import FirewallDriver
from accessgate.services.persistence import SessionStore
from accessgate.services.reconciler import Reconciler
from accessgate.services.rulestore import MemoryBackend
from accessgate.services.session_manager import SessionManager

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

MAC = "aa:bb:cc:dd:ee:ff"
OTHER_MAC = "11:22:33:44:55:66"


class FaultyBackend(MemoryBackend):
    """Memory backend whose inserts can be made to fail on demand."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = False

    def insert(self, rule, position=1):
        if self.failing:
            raise DriverError("iptables: simulated failure")
        super().insert(rule, position)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=datetime(2024, 3, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0):
        self.now += timedelta(seconds=seconds, minutes=minutes)
        return self.now


@pytest.fixture()
def test_engine():
    """Create a test database engine with in-memory SQLite.

    Uses StaticPool so a single connection is shared across threads,
    which is required because TestClient dispatches requests in a
    separate thread while the test runs on the main thread.
    """
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture()
def test_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def backend():
    return FaultyBackend()


@pytest.fixture()
def driver(backend):
    return FirewallDriver(backend, "wlan0")


@pytest.fixture()
def store(session_factory):
    return SessionStore(session_factory, time_per_peso=30)


@pytest.fixture()
def manager(store, driver, clock):
    manager = SessionManager(store, driver, clock=clock)
    yield manager
    manager.shutdown()


@pytest.fixture()
def reconciler(manager):
    return Reconciler(manager)


@pytest.fixture()
def test_settings():
    return Settings(
        _env_file=None,
        DATABASE_URL=TEST_DATABASE_URL,
        SIMULATE_FIREWALL=True,
        SKIP_AP_VERIFY=True,
    )


@pytest.fixture()
def access_engine(test_settings, session_factory, backend, clock):
    """An engine on the test database; background threads are not started."""
    engine = build_engine(test_settings, session_factory, backend=backend, clock=clock)
    engine.start(background=False)
    yield engine
    engine.stop()


@pytest.fixture()
def client(access_engine):
    """Create a FastAPI test client with the test engine injected."""
    app.state.engine = access_engine
    with TestClient(app) as c:
        yield c
    app.state.engine = None
