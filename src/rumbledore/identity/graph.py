"""
Low-level operations on the identity graph.

Shared by the resolver, the review service and the merge/split manager.
Nothing here commits; callers run these inside a locked transaction.
"""

from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from rumbledore.db.models import CanonicalIdentity, IdentityMapping, IdentityMatch
from rumbledore.errors import InvalidOperation, NotFound
from rumbledore.identity.sources import SourceRecordData
from rumbledore.statuses import MappingMethod


def load_identity(db: Session, identity_id: int) -> CanonicalIdentity:
    """
    Fetch an identity with fresh column values.

    Raises:
        NotFound: No identity with this id
    """
    identity = db.get(CanonicalIdentity, identity_id, populate_existing=True)
    if identity is None:
        raise NotFound(f"Identity {identity_id} not found")
    return identity


def require_active(identity: CanonicalIdentity) -> None:
    if not identity.is_active:
        raise InvalidOperation(
            f"Identity {identity.id} is retired (merged into {identity.merged_into_id})"
        )


def find_mapping(
    db: Session, entity_kind: str, scope_id: str, source_id: int, season: int
) -> Optional[IdentityMapping]:
    return db.scalars(
        select(IdentityMapping).where(
            IdentityMapping.entity_kind == entity_kind,
            IdentityMapping.scope_id == scope_id,
            IdentityMapping.source_id == source_id,
            IdentityMapping.season == season,
        )
    ).first()


def find_pending_match(
    db: Session, entity_kind: str, scope_id: str, source_id: int, season: int
) -> Optional[IdentityMatch]:
    return db.scalars(
        select(IdentityMatch)
        .where(
            IdentityMatch.entity_kind == entity_kind,
            IdentityMatch.scope_id == scope_id,
            IdentityMatch.source_id == source_id,
            IdentityMatch.season == season,
            IdentityMatch.status == "pending",
        )
        .order_by(IdentityMatch.id)
    ).first()


def holds_season(identity: CanonicalIdentity, season: int) -> bool:
    return any(m.season == season for m in identity.mappings)


def merge_alternate_names(identity: CanonicalIdentity, names: Iterable[Optional[str]]) -> None:
    """Keep every name the identity has carried, except its current canonical one."""
    merged: list[str] = []
    for name in [*(identity.alternate_names or []), *names]:
        if name and name != identity.canonical_name and name not in merged:
            merged.append(name)
    # Reassign so the JSON column is flagged dirty
    identity.alternate_names = merged


def attach_mapping(
    db: Session,
    identity: CanonicalIdentity,
    record: SourceRecordData,
    confidence: float,
    method: MappingMethod,
    actor: Optional[str],
) -> IdentityMapping:
    """
    Link a source record to an identity.

    Bumps the identity's version so concurrent writers to the same identity
    conflict instead of silently interleaving.
    """
    mapping = IdentityMapping(
        entity_kind=record.entity_kind,
        scope_id=record.scope_id,
        source_id=record.source_id,
        season=record.season,
        observed_name=record.name,
        position=record.position,
        affiliation=record.affiliation,
        confidence=round(confidence, 4),
        method=method,
        created_by=actor,
    )
    identity.mappings.append(mapping)
    db.add(mapping)

    previous = identity.canonical_name
    identity.refresh_canonical_name()
    merge_alternate_names(identity, [previous, record.name])
    identity.touch()
    db.flush()
    return mapping


def create_identity(
    db: Session,
    record: SourceRecordData,
    confidence: float,
    method: MappingMethod,
    actor: Optional[str],
) -> tuple[CanonicalIdentity, IdentityMapping]:
    """New active identity holding a single mapping for `record`."""
    identity = CanonicalIdentity(
        entity_kind=record.entity_kind,
        scope_id=record.scope_id,
        canonical_name=record.name,
        alternate_names=[],
        state="active",
        created_by=actor,
    )
    db.add(identity)
    mapping = attach_mapping(db, identity, record, confidence, method, actor)
    return identity, mapping


def detach_mapping(db: Session, identity: CanonicalIdentity, mapping: IdentityMapping) -> None:
    """Remove a mapping outright. Only rollbacks do this."""
    db.delete(mapping)
    identity.touch()
    db.flush()
    db.expire(identity, ["mappings"])


def move_mapping(
    mapping: IdentityMapping, source: CanonicalIdentity, target: CanonicalIdentity
) -> None:
    # identity_id is the one mutable mapping field; the backref drops it from source.mappings
    target.mappings.append(mapping)
    source.touch()
    target.touch()
