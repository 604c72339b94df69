"""
Database module for Rumbledore.

Provides SQLAlchemy ORM models for the identity graph and session helpers.

Usage:
    from rumbledore.db import CanonicalIdentity, session_scope

    with session_scope(factory) as session:
        identities = session.query(CanonicalIdentity).all()
"""

from rumbledore.db.models import (
    Base,
    Active,
    Retired,
    Lifecycle,
    CanonicalIdentity,
    IdentityMapping,
    IdentityMatch,
    IdentityAuditLog,
    SourceRecord,
    ResolutionRun,
    utc_now,
)
from rumbledore.db.session import (
    get_engine,
    create_session_factory,
    init_db,
    session_scope,
)

__all__ = [
    # Base
    "Base",
    # Lifecycle
    "Active",
    "Retired",
    "Lifecycle",
    # Models
    "CanonicalIdentity",
    "IdentityMapping",
    "IdentityMatch",
    "IdentityAuditLog",
    "SourceRecord",
    "ResolutionRun",
    "utc_now",
    # Session
    "get_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
]
