"""
Inputs to identity resolution: per-season source records and their stats.

The ingestion pipeline writes source_records; resolution only reads them,
through a SourceRecordSource so tests (and other pipelines) can feed
records directly. DatabaseStatisticsProvider answers statistics lookups
from the same table.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from rumbledore.db.models import IdentityMatch, SourceRecord
from rumbledore.identity.signals import StatisticalProfile
from rumbledore.statuses import validate_entity_kind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceRecordData:
    """
    Immutable view of one per-season record.

    For players, affiliation is the pro team abbreviation; for fantasy
    teams it is the owner's display name.
    """
    entity_kind: str
    scope_id: str
    source_id: int
    season: int
    name: str
    position: Optional[str] = None
    affiliation: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, int, int]:
        return (self.entity_kind, self.scope_id, self.source_id, self.season)

    def describe(self) -> str:
        return f"{self.entity_kind} {self.source_id}/{self.season} ({self.name!r})"

    @classmethod
    def from_model(cls, row: SourceRecord) -> "SourceRecordData":
        return cls(
            entity_kind=row.entity_kind,
            scope_id=row.scope_id,
            source_id=row.source_id,
            season=row.season,
            name=row.name,
            position=row.position,
            affiliation=row.affiliation,
        )

    @classmethod
    def from_match(cls, match: IdentityMatch) -> "SourceRecordData":
        return cls(
            entity_kind=match.entity_kind,
            scope_id=match.scope_id,
            source_id=match.source_id,
            season=match.season,
            name=match.observed_name,
            position=match.position,
            affiliation=match.affiliation,
        )


class SourceRecordSource(Protocol):
    """Supplies the records a resolution run works through."""

    def load_records(
        self,
        scope_id: str,
        entity_kind: str,
        seasons: Optional[Sequence[int]] = None,
    ) -> list[SourceRecordData]:
        ...


class DatabaseRecordSource:
    """Reads records from the source_records table."""

    def __init__(self, db: Session):
        self.db = db

    def load_records(
        self,
        scope_id: str,
        entity_kind: str,
        seasons: Optional[Sequence[int]] = None,
    ) -> list[SourceRecordData]:
        query = select(SourceRecord).where(
            SourceRecord.scope_id == scope_id,
            SourceRecord.entity_kind == validate_entity_kind(entity_kind),
        )
        if seasons:
            query = query.where(SourceRecord.season.in_(list(seasons)))
        query = query.order_by(SourceRecord.season, SourceRecord.source_id, SourceRecord.id)

        records = [SourceRecordData.from_model(row) for row in self.db.scalars(query)]
        logger.debug("Loaded %d %s records for scope %s", len(records), entity_kind, scope_id)
        return records


class DatabaseStatisticsProvider:
    """
    Statistics from the season columns on source_records.

    Each lookup opens its own short-lived session because the statistics
    gateway calls providers from its own worker threads.
    """

    def __init__(self, session_factory: sessionmaker, scope_id: Optional[str] = None):
        self.session_factory = session_factory
        # Source ids are only unique within a league
        self.scope_id = scope_id

    def get_profile(
        self, entity_kind: str, source_id: int, season: int
    ) -> Optional[StatisticalProfile]:
        query = select(SourceRecord).where(
            SourceRecord.entity_kind == entity_kind,
            SourceRecord.source_id == source_id,
            SourceRecord.season == season,
        )
        if self.scope_id is not None:
            query = query.where(SourceRecord.scope_id == self.scope_id)

        with self.session_factory() as session:
            row = session.scalars(query).first()

            if row is None or row.games_played is None:
                return None

            return StatisticalProfile(
                games_played=row.games_played,
                total_points=row.total_points or 0.0,
                average_points=row.average_points,
            )
