"""Per-identity locking for graph mutations.

Two writers touching the same canonical identity must not interleave, while
writers on disjoint identities never wait on each other. Within a process
this is a lock per identity key; on PostgreSQL a transaction-scoped
advisory lock per key extends the exclusion across processes. The version
counter on CanonicalIdentity catches anything that slips past both.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from typing import Generator, Iterable

from sqlalchemy import text
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rumbledore.errors import ConcurrentModification

logger = logging.getLogger(__name__)


def identity_lock_key(entity_kind: str, identity_id: int) -> int:
    """Return a deterministic signed 64-bit lock key for one identity."""
    digest = hashlib.sha256(f"identity:{entity_kind}:{identity_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=True)


class IdentityLockRegistry:
    """
    Hands out per-identity locks.

    Keys are always taken in sorted order so two writers that need
    overlapping sets cannot deadlock.
    """

    def __init__(self, poll_interval_seconds: float = 0.05):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]; dropped when unused
        self._locks: dict[int, list] = {}
        self.poll_interval_seconds = poll_interval_seconds

    def _checkout(self, key: int) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: int) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @property
    def tracked_keys(self) -> int:
        """Keys with a holder or waiter right now."""
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(
        self,
        session: Session,
        keys: Iterable[int],
        timeout: float = 5.0,
    ) -> Generator[None, None, None]:
        """
        Hold the locks for `keys` for the life of this context.

        On PostgreSQL the advisory locks are transaction-scoped, so they are
        released by the caller's commit or rollback rather than on exit.

        Raises:
            ConcurrentModification: a lock could not be taken before timeout
        """
        ordered = sorted(set(keys))
        deadline = time.monotonic() + max(timeout, 0.0)
        acquired: list[threading.Lock] = []
        checked_out: list[int] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                remaining = max(deadline - time.monotonic(), 0.0)
                if not lock.acquire(timeout=remaining):
                    logger.warning("Timed out after %.1fs waiting for identity lock %s", timeout, key)
                    raise ConcurrentModification(f"Identity lock {key} is busy")
                acquired.append(lock)

            if _is_postgres(session):
                for key in ordered:
                    self._advisory_xact_lock(session, key, deadline)

            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)

    @contextmanager
    def transaction(
        self,
        session: Session,
        keys: Iterable[int],
        timeout: float = 5.0,
    ) -> Generator[None, None, None]:
        """
        One all-or-nothing graph mutation under the locks for `keys`.

        Commits on success while the locks are still held. Any failure rolls
        the session back; a failed version check surfaces as
        ConcurrentModification.
        """
        try:
            with self.hold(session, keys, timeout):
                yield
                session.flush()
                session.commit()
        except StaleDataError as e:
            session.rollback()
            raise ConcurrentModification(f"Identity was modified concurrently: {e}") from e
        except Exception:
            session.rollback()
            raise

    def _advisory_xact_lock(self, session: Session, key: int, deadline: float) -> None:
        while True:
            acquired = bool(
                session.execute(
                    text("SELECT pg_try_advisory_xact_lock(:key)"),
                    {"key": key},
                ).scalar()
            )
            if acquired:
                return
            if time.monotonic() >= deadline:
                raise ConcurrentModification(f"Advisory lock {key} is held by another process")
            time.sleep(self.poll_interval_seconds)


def _is_postgres(session: Session) -> bool:
    return session.get_bind().dialect.name == "postgresql"
