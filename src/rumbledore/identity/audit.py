"""
Append-only audit trail for identity graph mutations.

Every create, merge, split, approve, reject and rollback writes exactly one
entry here with before/after snapshots. Entries are never updated or
deleted (the model refuses both); undoing a change writes a new 'rollback'
entry whose reference_id points at the entry it reverses.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rumbledore.db.models import CanonicalIdentity, IdentityAuditLog, utc_now
from rumbledore.errors import NotFound, ValidationError
from rumbledore.statuses import AUDIT_ACTIONS, AuditAction, validate_entity_kind

logger = logging.getLogger(__name__)

TOP_ACTORS_LIMIT = 10
DEFAULT_ACTIVITY_DAYS = 30


def identity_snapshot(identity: CanonicalIdentity) -> dict:
    """JSON-safe picture of an identity, as stored in audit before/after states."""
    return {
        "id": identity.id,
        "state": identity.state,
        "merged_into_id": identity.merged_into_id,
        "canonical_name": identity.canonical_name,
        "alternate_names": list(identity.alternate_names or []),
        "mapping_ids": sorted(m.id for m in identity.mappings),
    }


class AuditLogger:
    """
    Sole writer of identity audit entries.

    Writes are flushed but not committed; the service performing the
    mutation owns the transaction so the entry lands atomically with it.
    """

    def __init__(self, db: Session):
        self.db = db

    def log_action(
        self,
        entity_kind: str,
        entity_id: int,
        action: AuditAction,
        before: Optional[dict],
        after: Optional[dict],
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> IdentityAuditLog:
        """
        Append one audit entry.

        Args:
            entity_kind: 'player' or 'team'
            entity_id: Identity the mutation is about (the primary for merges)
            action: One of AUDIT_ACTIONS
            before: JSON-serializable snapshot before the mutation
            after: JSON-serializable snapshot after the mutation
            reason: Free-text justification
            actor: Who performed it ('system' for batch runs)
            reference_id: Entry being rolled back, for 'rollback' entries

        Returns:
            The new entry (flushed, so it has an id)
        """
        if action not in AUDIT_ACTIONS:
            raise ValidationError(f"Unknown audit action: {action!r}")
        if action == "rollback" and reference_id is None:
            raise ValidationError("Rollback entries must reference the entry they undo")

        entry = IdentityAuditLog(
            entity_kind=validate_entity_kind(entity_kind),
            entity_id=entity_id,
            action=action,
            before_state=before,
            after_state=after,
            reason=reason,
            actor=actor,
            reference_id=reference_id,
            performed_at=utc_now(),
        )
        self.db.add(entry)
        self.db.flush()

        logger.debug(
            "Audit %s %s:%s by %s (entry %s)",
            action, entity_kind, entity_id, actor, entry.id,
        )
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get_entry(self, entry_id: int) -> IdentityAuditLog:
        entry = self.db.get(IdentityAuditLog, entry_id)
        if entry is None:
            raise NotFound(f"Audit entry {entry_id} not found")
        return entry

    def get_audit_trail(self, entity_kind: str, entity_id: int) -> list[IdentityAuditLog]:
        """All entries for one identity, oldest first."""
        return list(
            self.db.scalars(
                select(IdentityAuditLog)
                .where(
                    IdentityAuditLog.entity_kind == entity_kind,
                    IdentityAuditLog.entity_id == entity_id,
                )
                .order_by(IdentityAuditLog.performed_at, IdentityAuditLog.id)
            )
        )

    def find_rollback_of(self, entry_id: int) -> Optional[IdentityAuditLog]:
        return self.db.scalars(
            select(IdentityAuditLog).where(
                IdentityAuditLog.action == "rollback",
                IdentityAuditLog.reference_id == entry_id,
            )
        ).first()

    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(IdentityAuditLog)) or 0

    def get_audit_statistics(
        self,
        entity_kind: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> dict:
        """
        Summary numbers for the audit viewer.

        Returns:
            Dict with:
            - total: Number of matching entries
            - by_action: {action: count}
            - top_actors: Up to 10 {"actor", "count"} dicts, busiest first
            - daily_activity: {"date", "count"} dicts, oldest first. Covers
              the last 30 days when no start is given.
        """
        filters = []
        if entity_kind:
            filters.append(IdentityAuditLog.entity_kind == entity_kind)
        if start:
            filters.append(IdentityAuditLog.performed_at >= start)
        if end:
            filters.append(IdentityAuditLog.performed_at <= end)
        if actor:
            filters.append(IdentityAuditLog.actor == actor)

        total = self.db.scalar(
            select(func.count()).select_from(IdentityAuditLog).where(*filters)
        ) or 0

        by_action = {
            action: count
            for action, count in self.db.execute(
                select(IdentityAuditLog.action, func.count())
                .where(*filters)
                .group_by(IdentityAuditLog.action)
            )
        }

        top_actors = [
            {"actor": name, "count": count}
            for name, count in self.db.execute(
                select(IdentityAuditLog.actor, func.count().label("n"))
                .where(*filters, IdentityAuditLog.actor.is_not(None))
                .group_by(IdentityAuditLog.actor)
                .order_by(func.count().desc(), IdentityAuditLog.actor)
                .limit(TOP_ACTORS_LIMIT)
            )
        ]

        activity_filters = list(filters)
        if start is None:
            activity_filters.append(
                IdentityAuditLog.performed_at >= utc_now() - timedelta(days=DEFAULT_ACTIVITY_DAYS)
            )
        day = func.date(IdentityAuditLog.performed_at)
        daily_activity = [
            {"date": str(date), "count": count}
            for date, count in self.db.execute(
                select(day, func.count())
                .where(*activity_filters)
                .group_by(day)
                .order_by(day)
            )
        ]

        return {
            "total": total,
            "by_action": by_action,
            "top_actors": top_actors,
            "daily_activity": daily_activity,
        }
