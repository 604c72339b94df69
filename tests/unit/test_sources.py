"""
Unit tests for database-backed records and statistics.
"""

from rumbledore.db.models import SourceRecord
from rumbledore.identity.signals import StatisticalProfile
from rumbledore.identity.sources import (
    DatabaseRecordSource,
    DatabaseStatisticsProvider,
    SourceRecordData,
)


def add_rows(db_session):
    db_session.add_all([
        SourceRecord(entity_kind="player", scope_id="league-1", source_id=101, season=2023,
                     name="Patrick Mahomes", position="QB", affiliation="KC",
                     games_played=17, total_points=390.0),
        SourceRecord(entity_kind="player", scope_id="league-1", source_id=101, season=2022,
                     name="Patrick Mahomes", position="QB", affiliation="KC",
                     games_played=17, total_points=400.0, average_points=23.5),
        SourceRecord(entity_kind="team", scope_id="league-1", source_id=7, season=2022,
                     name="Gridiron Gurus", affiliation="Alice Smith"),
        SourceRecord(entity_kind="player", scope_id="league-2", source_id=101, season=2022,
                     name="Someone Else", games_played=3, total_points=9.0),
    ])
    db_session.commit()


def test_record_source_filters_and_orders(db_session):
    add_rows(db_session)
    source = DatabaseRecordSource(db_session)

    records = source.load_records("league-1", "player")
    assert [(r.source_id, r.season) for r in records] == [(101, 2022), (101, 2023)]
    assert records[0] == SourceRecordData(
        entity_kind="player", scope_id="league-1", source_id=101, season=2022,
        name="Patrick Mahomes", position="QB", affiliation="KC",
    )

    assert [r.season for r in source.load_records("league-1", "player", seasons=[2023])] == [2023]
    assert [r.name for r in source.load_records("league-1", "team")] == ["Gridiron Gurus"]


def test_statistics_provider(db_session, session_factory):
    add_rows(db_session)
    provider = DatabaseStatisticsProvider(session_factory, scope_id="league-1")

    assert provider.get_profile("player", 101, 2022) == StatisticalProfile(
        games_played=17, total_points=400.0, average_points=23.5
    )
    assert provider.get_profile("player", 101, 2023).points_per_game == 390.0 / 17
    # No games recorded and no row at all both mean "no statistics"
    assert provider.get_profile("team", 7, 2022) is None
    assert provider.get_profile("player", 999, 2022) is None


def test_statistics_provider_scope(db_session, session_factory):
    add_rows(db_session)
    provider = DatabaseStatisticsProvider(session_factory, scope_id="league-2")
    assert provider.get_profile("player", 101, 2022).games_played == 3
