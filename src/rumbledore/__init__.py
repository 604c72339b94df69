"""
Rumbledore identity resolution.

Reconciles per-season fantasy league records (players and teams, whose
source ids are reissued every season) into stable canonical identities.

Main components:
- identity.normalizer: Name canonicalization
- identity.matcher: Fuzzy name similarity and candidate ranking
- identity.scorer: Weighted confidence and the action policy
- identity.resolver: Batch resolution runs
- identity.merge: Manual merge/split and audited rollback
- identity.audit: Append-only audit trail
- db: SQLAlchemy models and session helpers
"""

__version__ = "1.0.0"
