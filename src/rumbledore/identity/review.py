"""
Human decisions on pending identity matches.

Resolution queues uncertain pairings as IdentityMatch rows. A reviewer
either approves one (optionally pointing it at a different identity than
the one suggested) or rejects it, in which case the record becomes an
identity of its own. Both decisions are audited and can be rolled back.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from rumbledore.config import Settings, get_settings
from rumbledore.db.models import IdentityAuditLog, IdentityMatch, utc_now
from rumbledore.errors import InvalidOperation, NotFound
from rumbledore.identity.audit import AuditLogger, identity_snapshot
from rumbledore.identity.graph import (
    attach_mapping,
    create_identity,
    find_mapping,
    holds_season,
    load_identity,
    require_active,
)
from rumbledore.identity.locks import IdentityLockRegistry, identity_lock_key
from rumbledore.identity.sources import SourceRecordData

logger = logging.getLogger(__name__)


class ReviewService:
    """Approve or reject pending matches."""

    def __init__(
        self,
        db: Session,
        audit: AuditLogger,
        locks: IdentityLockRegistry,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.db = db
        self.audit = audit
        self.locks = locks
        self.lock_timeout = settings.identity_lock_timeout_seconds

    def _pending_match(self, match_id: int) -> IdentityMatch:
        match = self.db.get(IdentityMatch, match_id, populate_existing=True)
        if match is None:
            raise NotFound(f"Identity match {match_id} not found")
        if match.status != "pending":
            raise InvalidOperation(f"Identity match {match_id} is already {match.status}")
        return match

    def _ensure_unmapped(self, record: SourceRecordData) -> None:
        existing = find_mapping(self.db, *record.key)
        if existing is not None:
            raise InvalidOperation(
                f"{record.describe()} is already mapped to identity {existing.identity_id}"
            )

    def approve_match(
        self,
        match_id: int,
        target_identity_id: Optional[int] = None,
        actor: str = "system",
    ) -> IdentityAuditLog:
        """
        Commit a pending match as a manual mapping.

        Args:
            match_id: Pending match to approve
            target_identity_id: Identity to map to, when the reviewer picked a
                different one than suggested (status becomes 'merged')
            actor: Reviewer

        Returns:
            The 'approve' audit entry

        Raises:
            NotFound: Match or target identity does not exist
            InvalidOperation: Match not pending, target retired or of another
                kind/scope, record already mapped, or target already holds a
                mapping for that season
        """
        match = self._pending_match(match_id)
        target_id = target_identity_id or match.candidate_identity_id
        identity = load_identity(self.db, target_id)

        keys = [identity_lock_key(identity.entity_kind, identity.id)]
        with self.locks.transaction(self.db, keys, self.lock_timeout):
            match = self._pending_match(match_id)
            identity = load_identity(self.db, target_id)
            require_active(identity)
            if (identity.entity_kind, identity.scope_id) != (match.entity_kind, match.scope_id):
                raise InvalidOperation(
                    f"Identity {identity.id} is not a {match.entity_kind} in scope {match.scope_id}"
                )

            record = SourceRecordData.from_match(match)
            self._ensure_unmapped(record)
            if holds_season(identity, record.season):
                raise InvalidOperation(
                    f"Identity {identity.id} already has a mapping for season {record.season}"
                )

            before = {"identity": identity_snapshot(identity)}
            mapping = attach_mapping(self.db, identity, record, match.confidence, "manual", actor)

            match.status = "approved" if identity.id == match.candidate_identity_id else "merged"
            match.reviewed_by = actor
            match.reviewed_at = utc_now()
            match.updated_at = match.reviewed_at

            after = {
                "identity": identity_snapshot(identity),
                "mapping_id": mapping.id,
                "match_id": match.id,
                "source": list(record.key),
            }
            entry = self.audit.log_action(
                identity.entity_kind, identity.id, "approve", before, after,
                f"Approved match {match.id} ({match.status})", actor,
            )

        logger.info(
            "Match %s approved into identity %s by %s", match_id, target_id, actor,
        )
        return entry

    def reject_match(self, match_id: int, actor: str = "system") -> IdentityAuditLog:
        """
        Reject a pending match; the record becomes a new identity.

        Returns:
            The 'reject' audit entry (entity_id is the new identity)

        Raises:
            NotFound: Match does not exist
            InvalidOperation: Match not pending, or record already mapped
        """
        with self.locks.transaction(self.db, [], self.lock_timeout):
            match = self._pending_match(match_id)
            record = SourceRecordData.from_match(match)
            self._ensure_unmapped(record)

            identity, mapping = create_identity(self.db, record, 1.0, "manual", actor)

            match.status = "rejected"
            match.reviewed_by = actor
            match.reviewed_at = utc_now()
            match.updated_at = match.reviewed_at

            after = {
                "identity": identity_snapshot(identity),
                "mapping_id": mapping.id,
                "match_id": match.id,
                "source": list(record.key),
            }
            entry = self.audit.log_action(
                identity.entity_kind, identity.id, "reject", None, after,
                f"Rejected match {match.id}", actor,
            )

        logger.info("Match %s rejected by %s; new identity %s", match_id, actor, identity.id)
        return entry
