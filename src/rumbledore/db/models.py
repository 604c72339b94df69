"""
SQLAlchemy ORM models for Rumbledore identity resolution.

The schema is built around canonical identities that persist across
seasons. Source systems reissue numeric ids every season (renamed teams,
reused ids, nickname drift), so every per-season source record is linked to
a canonical identity through exactly one mapping.

Key design decisions:
- Identities are never deleted once anything depends on them; merged or
  emptied identities are retired and point at the identity that absorbed them
- Mappings are write-once except for identity_id, which moves on merge/split
- The audit log is append-only; rollbacks add entries instead of erasing them
- Identity rows carry a version counter so concurrent writers fail fast

Tables:
- canonical_identities: Stable cross-season players and teams
- identity_mappings: (kind, scope, source id, season) -> identity links
- identity_matches: Candidate pairings awaiting human review
- identity_audit_log: Every structural mutation with before/after snapshots
- source_records: Per-season records delivered by the ingestion pipeline
- resolution_runs: One row per batch resolution run
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from rumbledore.errors import ImmutableRecordError

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Identity lifecycle
# =============================================================================

@dataclass(frozen=True)
class Active:
    """Lifecycle state of an identity that still accepts mappings."""


@dataclass(frozen=True)
class Retired:
    """Lifecycle state of an identity superseded by another one."""
    merged_into_id: int


Lifecycle = Union[Active, Retired]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# =============================================================================
# Identity Models
# =============================================================================

class CanonicalIdentity(Base):
    """
    Stable cross-season representation of a player or team.

    The canonical_name is derived from the highest-confidence (then most
    recent) mapping. Retired identities keep their row and their audit
    history; merged_into_id says where their mappings went.
    """
    __tablename__ = "canonical_identities"

    id: Mapped[int] = mapped_column(primary_key=True)

    # 'player' or 'team'
    entity_kind: Mapped[str] = mapped_column(String(10), nullable=False)

    # League (or other grouping) the identity belongs to
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    canonical_name: Mapped[str] = mapped_column(String(255), nullable=False)
    alternate_names: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # 'active' or 'retired'; use the lifecycle property rather than these columns
    state: Mapped[str] = mapped_column(String(10), nullable=False, default="active")
    merged_into_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("canonical_identities.id"), nullable=True
    )

    # Optimistic concurrency counter, bumped on every UPDATE of this row
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    mappings: Mapped[list["IdentityMapping"]] = relationship(
        back_populates="identity",
        order_by="(IdentityMapping.season, IdentityMapping.id)",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("entity_kind IN ('player', 'team')", name="ck_identity_kind"),
        CheckConstraint(
            "(state = 'active' AND merged_into_id IS NULL) OR "
            "(state = 'retired' AND merged_into_id IS NOT NULL)",
            name="ck_identity_lifecycle",
        ),
        Index("idx_identities_kind_scope_state", "entity_kind", "scope_id", "state"),
    )

    @property
    def lifecycle(self) -> Lifecycle:
        if self.state == "retired":
            return Retired(merged_into_id=self.merged_into_id)
        return Active()

    @property
    def is_active(self) -> bool:
        return isinstance(self.lifecycle, Active)

    def retire(self, merged_into_id: int) -> None:
        self.state = "retired"
        self.merged_into_id = merged_into_id
        self.touch()

    def reactivate(self) -> None:
        self.state = "active"
        self.merged_into_id = None
        self.touch()

    def touch(self) -> None:
        """Mark the row dirty so the version check runs on the next flush."""
        self.updated_at = utc_now()

    def refresh_canonical_name(self) -> None:
        """Use the highest-confidence mapping's name, newest season breaking ties."""
        if not self.mappings:
            return
        best = max(
            self.mappings,
            key=lambda m: (m.confidence, m.season, m.id or 0),
        )
        self.canonical_name = best.observed_name

    def __repr__(self) -> str:
        return (
            f"<CanonicalIdentity(id={self.id}, kind='{self.entity_kind}', "
            f"name='{self.canonical_name}', state='{self.state}')>"
        )


class IdentityMapping(Base):
    """
    Link from one per-season source record to a canonical identity.

    Only identity_id may change after insert (merge/split move it).
    Everything else is what the source said in that season.
    """
    __tablename__ = "identity_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("canonical_identities.id"), nullable=False
    )

    entity_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    season: Mapped[int] = mapped_column(Integer, nullable=False)

    observed_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Players: roster position (QB, WR, ...). Teams: unused.
    position: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    # Players: pro team abbreviation. Teams: owner name.
    affiliation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    # 'automatic', 'fuzzy_match', 'manual'
    method: Mapped[str] = mapped_column(String(20), nullable=False)

    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    identity: Mapped["CanonicalIdentity"] = relationship(back_populates="mappings")

    __table_args__ = (
        UniqueConstraint(
            "entity_kind", "scope_id", "source_id", "season",
            name="uq_mapping_source_season",
        ),
        Index("idx_identity_mappings_identity", "identity_id"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_mapping_confidence"),
    )

    @property
    def source_key(self) -> tuple[str, str, int, int]:
        return (self.entity_kind, self.scope_id, self.source_id, self.season)

    def __repr__(self) -> str:
        return (
            f"<IdentityMapping(id={self.id}, identity_id={self.identity_id}, "
            f"source_id={self.source_id}, season={self.season})>"
        )


class IdentityMatch(Base):
    """
    Candidate pairing awaiting a human decision.

    Created when the scorer lands in a manual review band. Nothing in the
    identity graph changes until a reviewer approves it.

    Status values:
    - 'pending': Waiting for review
    - 'approved': Mapping committed to the suggested identity
    - 'merged': Mapping committed to a different identity chosen by the reviewer
    - 'rejected': Record became a new identity of its own
    """
    __tablename__ = "identity_matches"

    id: Mapped[int] = mapped_column(primary_key=True)

    entity_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    season: Mapped[int] = mapped_column(Integer, nullable=False)
    observed_name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    affiliation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    candidate_identity_id: Mapped[int] = mapped_column(
        ForeignKey("canonical_identities.id"), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    factors: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    reasons: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    candidate_identity: Mapped["CanonicalIdentity"] = relationship()

    __table_args__ = (
        Index(
            "idx_identity_matches_source",
            "entity_kind", "scope_id", "source_id", "season", "status",
        ),
        Index("idx_identity_matches_scope_status", "scope_id", "status"),
    )

    @property
    def source_key(self) -> tuple[str, str, int, int]:
        return (self.entity_kind, self.scope_id, self.source_id, self.season)

    def __repr__(self) -> str:
        return (
            f"<IdentityMatch(id={self.id}, source_id={self.source_id}, "
            f"season={self.season}, status='{self.status}')>"
        )


class IdentityAuditLog(Base):
    """
    Append-only record of one structural mutation.

    Rollbacks write a new row whose reference_id points at the entry being
    undone, so the log only ever grows and history can be replayed.
    """
    __tablename__ = "identity_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)

    entity_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # 'create', 'merge', 'split', 'approve', 'reject', 'rollback'
    action: Mapped[str] = mapped_column(String(20), nullable=False)

    before_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    reference_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("identity_audit_log.id"), nullable=True
    )
    performed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        Index("idx_identity_audit_entity", "entity_kind", "entity_id"),
        Index("idx_identity_audit_reference", "reference_id"),
        Index("idx_identity_audit_actor", "actor"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdentityAuditLog(id={self.id}, action='{self.action}', "
            f"entity={self.entity_kind}:{self.entity_id})>"
        )


# =============================================================================
# Ingestion and Operations Models
# =============================================================================

class SourceRecord(Base):
    """
    One per-season record as delivered by the ingestion pipeline.

    The pipeline owns this table; resolution only reads it. Season
    statistics are optional and feed the statistical similarity signal.
    """
    __tablename__ = "source_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    season: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    affiliation: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    games_played: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_points: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    average_points: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    ingested_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "entity_kind", "scope_id", "source_id", "season",
            name="uq_source_record",
        ),
        Index("idx_source_records_scope", "scope_id", "entity_kind", "season"),
    )

    def __repr__(self) -> str:
        return (
            f"<SourceRecord(kind='{self.entity_kind}', source_id={self.source_id}, "
            f"season={self.season}, name='{self.name}')>"
        )


class ResolutionRun(Base):
    """Top-level record of one batch resolution run."""

    __tablename__ = "resolution_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_kind: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    summary_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_resolution_runs_scope_started_at", "scope_id", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<ResolutionRun(run_id='{self.run_id}', status='{self.status}')>"


# =============================================================================
# Write-once guards
# =============================================================================

_MAPPING_MUTABLE_COLUMNS = {"identity_id"}


@event.listens_for(IdentityMapping, "before_update")
def _guard_mapping_fields(mapper, connection, target) -> None:
    state = inspect(target)
    for attr in mapper.column_attrs:
        if attr.key in _MAPPING_MUTABLE_COLUMNS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise ImmutableRecordError(
                f"IdentityMapping.{attr.key} is write-once (mapping {target.id})"
            )


@event.listens_for(IdentityAuditLog, "before_update")
def _guard_audit_update(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"Audit entry {target.id} cannot be modified")


@event.listens_for(IdentityAuditLog, "before_delete")
def _guard_audit_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"Audit entry {target.id} cannot be deleted")
