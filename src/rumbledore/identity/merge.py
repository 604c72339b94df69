"""
Manual corrections to the identity graph: merge, split and rollback.

Resolution will occasionally attach a record to the wrong identity or fail
to notice two identities are the same person. Reviewers fix that here:

- merge_identities: fold a secondary identity into a primary one
- split_identity: move some mappings off an identity into a new one
- rollback_change: undo any audited mutation (including batch approvals)

Each call is one transaction under per-identity locks and writes exactly
one audit entry. Identities are retired, never deleted, once anything
depends on them; the single exception is rolling back the creation of an
identity nothing else has touched.
"""

import logging
from typing import Callable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from rumbledore.config import Settings, get_settings
from rumbledore.db.models import (
    CanonicalIdentity,
    IdentityAuditLog,
    IdentityMapping,
    IdentityMatch,
    utc_now,
)
from rumbledore.errors import ConcurrentModification, InvalidOperation, NotFound
from rumbledore.identity.audit import AuditLogger, identity_snapshot
from rumbledore.identity.graph import (
    detach_mapping,
    load_identity,
    merge_alternate_names,
    move_mapping,
    require_active,
)
from rumbledore.identity.locks import IdentityLockRegistry, identity_lock_key

logger = logging.getLogger(__name__)


class MergeSplitManager:
    """
    Merge, split and rollback for canonical identities.

    Usage:
        manager = MergeSplitManager(session, audit, locks)
        entry = manager.merge_identities(primary_id=10, secondary_id=42, reason="same player")
        manager.rollback_change(entry.id)
    """

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

    def _lock_keys(self, *identities: CanonicalIdentity) -> list[int]:
        return [identity_lock_key(i.entity_kind, i.id) for i in identities]

    # =========================================================================
    # Merge
    # =========================================================================

    def merge_identities(
        self,
        primary_id: int,
        secondary_id: int,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> IdentityAuditLog:
        """
        Fold secondary into primary.

        All of secondary's mappings move to primary, secondary is retired
        pointing at primary, and its names become alternates of primary.
        Pending matches that suggested secondary now suggest primary.

        Returns:
            The 'merge' audit entry

        Raises:
            NotFound: Either identity does not exist
            InvalidOperation: Same identity, different kind or scope, or
                either identity already retired (a primary emptied by a full
                split into secondary is the one exception)
            ConcurrentModification: Lock timeout or version conflict
        """
        if primary_id == secondary_id:
            raise InvalidOperation("Cannot merge an identity with itself")

        primary = load_identity(self.db, primary_id)
        secondary = load_identity(self.db, secondary_id)

        with self.locks.transaction(self.db, self._lock_keys(primary, secondary), self.lock_timeout):
            primary = load_identity(self.db, primary_id)
            secondary = load_identity(self.db, secondary_id)

            if primary.entity_kind != secondary.entity_kind:
                raise InvalidOperation(
                    f"Cannot merge a {secondary.entity_kind} into a {primary.entity_kind}"
                )
            if primary.scope_id != secondary.scope_id:
                raise InvalidOperation("Cannot merge identities from different scopes")
            # The empty shell a full split left behind can take its mappings back
            reviving = (
                not primary.is_active
                and primary.merged_into_id == secondary.id
                and not primary.mappings
            )
            if not reviving:
                require_active(primary)
            require_active(secondary)

            seasons = {m.season for m in primary.mappings}
            clashes = sorted(seasons & {m.season for m in secondary.mappings})
            if clashes:
                logger.warning(
                    "Merging %s into %s leaves two mappings in season(s) %s",
                    secondary.id, primary.id, clashes,
                )

            before = {
                "primary": identity_snapshot(primary),
                "secondary": identity_snapshot(secondary),
            }

            if reviving:
                primary.reactivate()
            for mapping in list(secondary.mappings):
                move_mapping(mapping, secondary, primary)

            previous = primary.canonical_name
            primary.refresh_canonical_name()
            merge_alternate_names(
                primary, [previous, secondary.canonical_name, *(secondary.alternate_names or [])]
            )

            secondary.retire(primary.id)
            retargeted = self._retarget_pending_matches(secondary.id, primary.id)
            self.db.flush()

            after = {
                "primary": identity_snapshot(primary),
                "secondary": identity_snapshot(secondary),
                "retargeted_match_ids": retargeted,
            }
            entry = self.audit.log_action(
                primary.entity_kind, primary.id, "merge", before, after, reason, actor
            )

        logger.info(
            "Merged %s identity %s into %s (%d mappings moved) by %s",
            primary.entity_kind, secondary_id, primary_id,
            len(before["secondary"]["mapping_ids"]), actor,
        )
        return entry

    def _retarget_pending_matches(self, from_id: int, to_id: int) -> list[int]:
        match_ids = sorted(
            self.db.scalars(
                select(IdentityMatch.id).where(
                    IdentityMatch.candidate_identity_id == from_id,
                    IdentityMatch.status == "pending",
                )
            )
        )
        if match_ids:
            self.db.execute(
                update(IdentityMatch)
                .where(IdentityMatch.id.in_(match_ids))
                .values(candidate_identity_id=to_id, updated_at=utc_now())
                .execution_options(synchronize_session="fetch")
            )
        return match_ids

    # =========================================================================
    # Split
    # =========================================================================

    def split_identity(
        self,
        identity_id: int,
        mapping_ids: Sequence[int],
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> IdentityAuditLog:
        """
        Move some of an identity's mappings to a brand new identity.

        If every mapping moves, the original is retired pointing at the new
        identity rather than deleted, so its audit history stays valid.

        Returns:
            The 'split' audit entry

        Raises:
            NotFound: Identity does not exist
            InvalidOperation: Empty or duplicated mapping_ids, ids that are
                not current mappings of the identity, or a retired identity
        """
        mapping_ids = list(mapping_ids)
        if not mapping_ids:
            raise InvalidOperation("Split needs at least one mapping id")
        if len(set(mapping_ids)) != len(mapping_ids):
            raise InvalidOperation("Split mapping ids contain duplicates")

        original = load_identity(self.db, identity_id)

        with self.locks.transaction(self.db, self._lock_keys(original), self.lock_timeout):
            original = load_identity(self.db, identity_id)
            require_active(original)

            current = {m.id: m for m in original.mappings}
            unknown = sorted(set(mapping_ids) - set(current))
            if unknown:
                raise InvalidOperation(
                    f"Mappings {unknown} do not belong to identity {identity_id}"
                )

            before = {"original": identity_snapshot(original)}
            moving = [current[mid] for mid in mapping_ids]

            new_identity = CanonicalIdentity(
                entity_kind=original.entity_kind,
                scope_id=original.scope_id,
                canonical_name=moving[0].observed_name,
                alternate_names=[],
                state="active",
                created_by=actor,
            )
            self.db.add(new_identity)
            self.db.flush()

            for mapping in moving:
                move_mapping(mapping, original, new_identity)
            new_identity.refresh_canonical_name()
            new_identity.alternate_names = sorted(
                {m.observed_name for m in moving} - {new_identity.canonical_name}
            )

            if original.mappings:
                previous = original.canonical_name
                original.refresh_canonical_name()
                merge_alternate_names(original, [previous])
            else:
                original.retire(new_identity.id)
            self.db.flush()

            after = {
                "original": identity_snapshot(original),
                "new": identity_snapshot(new_identity),
                "moved_mapping_ids": sorted(mapping_ids),
            }
            entry = self.audit.log_action(
                original.entity_kind, original.id, "split", before, after, reason, actor
            )

        logger.info(
            "Split %d mappings off %s identity %s into %s by %s",
            len(mapping_ids), original.entity_kind, identity_id, new_identity.id, actor,
        )
        return entry

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback_change(
        self,
        audit_entry_id: int,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> IdentityAuditLog:
        """
        Apply the inverse of an audited mutation.

        The identities involved must still look exactly as the entry left
        them; anything else means later changes depend on this one.

        Returns:
            The new 'rollback' audit entry

        Raises:
            NotFound: No audit entry with this id
            InvalidOperation: The entry is itself a rollback, or has already
                been rolled back
            ConcurrentModification: The graph has moved on since the entry
        """
        entry = self.audit.get_entry(audit_entry_id)
        if entry.action == "rollback":
            raise InvalidOperation("A rollback cannot be rolled back; apply the original change again")
        if self.audit.find_rollback_of(entry.id) is not None:
            raise InvalidOperation(f"Audit entry {entry.id} has already been rolled back")

        handlers: dict[str, Callable] = {
            "merge": self._undo_merge,
            "split": self._undo_split,
            "approve": self._undo_attach,
            "create": self._undo_create,
            "reject": self._undo_create,
        }
        handler = handlers[entry.action]
        after = entry.after_state or {}
        keys = [
            identity_lock_key(entry.entity_kind, snapshot["id"])
            for snapshot in after.values()
            if isinstance(snapshot, dict) and "id" in snapshot
        ]

        with self.locks.transaction(self.db, keys, self.lock_timeout):
            current, restored = handler(entry)
            rollback_entry = self.audit.log_action(
                entry.entity_kind,
                entry.entity_id,
                "rollback",
                current,
                restored,
                reason or f"Rollback of {entry.action} entry {entry.id}",
                actor,
                reference_id=entry.id,
            )

        logger.info(
            "Rolled back %s entry %s on %s %s by %s",
            entry.action, entry.id, entry.entity_kind, entry.entity_id, actor,
        )
        return rollback_entry

    def _load_as_recorded(self, snapshot: dict) -> CanonicalIdentity:
        """Load the identity in a snapshot, insisting nothing changed since."""
        try:
            identity = load_identity(self.db, snapshot["id"])
        except NotFound as e:
            raise ConcurrentModification(str(e)) from e

        if (
            identity.state != snapshot["state"]
            or identity.merged_into_id != snapshot["merged_into_id"]
            or sorted(m.id for m in identity.mappings) != snapshot["mapping_ids"]
        ):
            raise ConcurrentModification(
                f"Identity {identity.id} has changed since this entry was recorded"
            )
        return identity

    @staticmethod
    def _restore_names(identity: CanonicalIdentity, snapshot: dict) -> None:
        identity.canonical_name = snapshot["canonical_name"]
        identity.alternate_names = list(snapshot["alternate_names"])
        identity.touch()

    def _reopen_match(self, match_id: Optional[int]) -> None:
        if match_id is None:
            return
        match = self.db.get(IdentityMatch, match_id)
        if match is None:
            return
        match.status = "pending"
        match.reviewed_by = None
        match.reviewed_at = None
        match.updated_at = utc_now()

    def _undo_merge(self, entry: IdentityAuditLog) -> tuple[dict, dict]:
        before, after = entry.before_state, entry.after_state
        primary = self._load_as_recorded(after["primary"])
        secondary = self._load_as_recorded(after["secondary"])
        current = {"primary": identity_snapshot(primary), "secondary": identity_snapshot(secondary)}

        moving_back = set(before["secondary"]["mapping_ids"])
        for mapping in list(primary.mappings):
            if mapping.id in moving_back:
                move_mapping(mapping, primary, secondary)

        secondary.reactivate()
        if before["primary"]["state"] == "retired":
            primary.retire(before["primary"]["merged_into_id"])
        self._restore_names(primary, before["primary"])
        self._restore_names(secondary, before["secondary"])

        match_ids = after.get("retargeted_match_ids") or []
        if match_ids:
            self.db.execute(
                update(IdentityMatch)
                .where(
                    IdentityMatch.id.in_(match_ids),
                    IdentityMatch.status == "pending",
                    IdentityMatch.candidate_identity_id == primary.id,
                )
                .values(candidate_identity_id=secondary.id, updated_at=utc_now())
                .execution_options(synchronize_session="fetch")
            )
        self.db.flush()

        return current, {"primary": identity_snapshot(primary), "secondary": identity_snapshot(secondary)}

    def _undo_split(self, entry: IdentityAuditLog) -> tuple[dict, dict]:
        before, after = entry.before_state, entry.after_state
        original = self._load_as_recorded(after["original"])
        new_identity = self._load_as_recorded(after["new"])
        current = {"original": identity_snapshot(original), "new": identity_snapshot(new_identity)}

        for mapping in list(new_identity.mappings):
            move_mapping(mapping, new_identity, original)

        if not original.is_active:
            original.reactivate()
        new_identity.retire(original.id)
        self._restore_names(original, before["original"])
        self.db.flush()

        return current, {"original": identity_snapshot(original), "new": identity_snapshot(new_identity)}

    def _undo_attach(self, entry: IdentityAuditLog) -> tuple[dict, dict]:
        """Inverse of 'approve': drop the mapping that was committed."""
        before, after = entry.before_state, entry.after_state
        identity = self._load_as_recorded(after["identity"])
        current = {"identity": identity_snapshot(identity)}

        mapping = self.db.get(IdentityMapping, after["mapping_id"])
        detach_mapping(self.db, identity, mapping)
        self._restore_names(identity, before["identity"])
        self._reopen_match(after.get("match_id"))
        self.db.flush()

        return current, {"identity": identity_snapshot(identity)}

    def _undo_create(self, entry: IdentityAuditLog) -> tuple[dict, dict]:
        """Inverse of 'create' and 'reject': drop the identity that was created."""
        after = entry.after_state
        identity = self._load_as_recorded(after["identity"])
        current = {"identity": identity_snapshot(identity)}

        referenced = self.db.scalars(
            select(IdentityMatch.id).where(IdentityMatch.candidate_identity_id == identity.id)
        ).first()
        if referenced is not None:
            raise ConcurrentModification(
                f"Identity {identity.id} is referenced by match {referenced}; resolve that first"
            )

        mapping = self.db.get(IdentityMapping, after["mapping_id"])
        detach_mapping(self.db, identity, mapping)
        self.db.delete(identity)
        self._reopen_match(after.get("match_id"))
        self.db.flush()

        return current, {"identity": None}
