"""
Pytest configuration and fixtures.

This file is automatically loaded by pytest and provides
shared fixtures for all tests.
"""

import threading
from typing import Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from rumbledore.config import Settings
from rumbledore.db.models import Base
from rumbledore.db.session import create_session_factory
from rumbledore.identity.graph import create_identity
from rumbledore.identity.locks import IdentityLockRegistry
from rumbledore.identity.services import create_identity_services
from rumbledore.identity.signals import StatisticalProfile
from rumbledore.identity.sources import SourceRecordData


class FakeStatisticsProvider:
    """In-memory statistics keyed by (entity_kind, source_id, season)."""

    def __init__(self):
        self.profiles: dict[tuple, StatisticalProfile] = {}
        self.error: Optional[Exception] = None
        self.delay: float = 0.0
        self.calls = 0
        self._lock = threading.Lock()

    def add(self, entity_kind, source_id, season, games_played, total_points):
        self.profiles[(entity_kind, source_id, season)] = StatisticalProfile(
            games_played=games_played, total_points=total_points
        )

    def get_profile(self, entity_kind, source_id, season):
        with self._lock:
            self.calls += 1
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        return self.profiles.get((entity_kind, source_id, season))


class ListRecordSource:
    """Record source backed by a plain list, filtered like the database one."""

    def __init__(self, records: Optional[list[SourceRecordData]] = None):
        self.records = list(records or [])
        self.error: Optional[Exception] = None

    def add(self, record: SourceRecordData) -> SourceRecordData:
        self.records.append(record)
        return record

    def load_records(
        self, scope_id: str, entity_kind: str, seasons: Optional[Sequence[int]] = None
    ) -> list[SourceRecordData]:
        if self.error is not None:
            raise self.error
        found = [
            r for r in self.records
            if r.scope_id == scope_id and r.entity_kind == entity_kind
            and (not seasons or r.season in seasons)
        ]
        return sorted(found, key=lambda r: (r.season, r.source_id))


def make_record(
    name: str,
    source_id: int,
    season: int,
    position: Optional[str] = None,
    affiliation: Optional[str] = None,
    entity_kind: str = "player",
    scope_id: str = "league-1",
) -> SourceRecordData:
    return SourceRecordData(
        entity_kind=entity_kind,
        scope_id=scope_id,
        source_id=source_id,
        season=season,
        name=name,
        position=position,
        affiliation=affiliation,
    )


@pytest.fixture
def settings():
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        database_url="sqlite://",
        resolution_workers=2,
        resolution_batch_size=50,
        stats_timeout_seconds=1.0,
        stats_max_retries=0,
        stats_retry_base_delay=0.0,
        identity_lock_timeout_seconds=1.0,
        log_level="INFO",
    )


@pytest.fixture
def engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool shares the single connection across threads so worker
    threads see the same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def stats_provider():
    return FakeStatisticsProvider()


@pytest.fixture
def record_source():
    return ListRecordSource()


@pytest.fixture
def lock_registry():
    return IdentityLockRegistry(poll_interval_seconds=0.01)


@pytest.fixture
def services(db_session, stats_provider, record_source, settings, lock_registry):
    services = create_identity_services(
        db_session,
        stats_provider,
        record_source=record_source,
        settings=settings,
        lock_registry=lock_registry,
    )
    yield services
    services.close()


@pytest.fixture
def seed_identity(db_session):
    """Create and commit an identity holding one mapping; returns its id."""

    def _seed(name, source_id, season, position=None, affiliation=None,
              entity_kind="player", scope_id="league-1", confidence=1.0):
        record = make_record(name, source_id, season, position, affiliation, entity_kind, scope_id)
        identity, _ = create_identity(db_session, record, confidence, "manual", "tester")
        db_session.commit()
        return identity.id

    return _seed


@pytest.fixture
def new_record():
    """Factory for SourceRecordData with league-1 defaults."""
    return make_record
