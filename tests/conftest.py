"""Pytest configuration and shared fixtures."""
import os
from datetime import datetime, timedelta, timezone

# Keep the module-level app off the on-disk database
os.environ.setdefault("ORDERTRAIL_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ordertrail.database import Base
# Models imported so create_all sees their tables
from ordertrail.models.audit import Actor, AuditLogBlob
from ordertrail.models.domain import ServiceOrder
from ordertrail.services.audit_storage import AuditStorage, DurableIOFailure
from ordertrail.services.audit_store import AuditStore
from ordertrail.services.stage_cache import StageCache

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock. Each call returns the current time, then advances by step."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def set(self, moment: datetime):
        self.now = moment


class MemoryStorage(AuditStorage):
    """In-memory blob storage that can be told to fail."""

    def __init__(self, blob=None):
        self.blob = blob
        self.writes = 0
        self.fail_reads = False
        self.fail_writes = False

    def read(self):
        if self.fail_reads:
            raise DurableIOFailure("storage offline", key="test")
        return self.blob

    def write(self, blob):
        if self.fail_writes:
            raise DurableIOFailure("quota exceeded", key="test")
        self.writes += 1
        self.blob = blob


@pytest.fixture
def session_factory():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def store(storage, clock):
    return AuditStore(storage=storage, clock=clock)


@pytest.fixture
def cache():
    return StageCache()


@pytest.fixture
def alice():
    return Actor(id="u-1", name="Alice")


@pytest.fixture
def bob():
    return Actor(id="u-2", name="Bob")
