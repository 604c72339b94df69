"""
Cross-season identity resolution for players and teams.

Pipeline for each unmapped source record:
1. Normalize the observed name (normalizer)
2. Shortlist existing identities by name (matcher)
3. Score the shortlist with supporting signals (signals, scorer)
4. Auto-approve, queue for review, or create a new identity (resolver)

Every change to the identity graph is written to the append-only audit
log and can be rolled back (audit, merge).

Usage:
    from rumbledore.identity import create_identity_services

    services = create_identity_services(session, stats_provider)
    response = services.resolver.resolve_identities("league-123")
"""

from rumbledore.identity.normalizer import (
    NormalizedName,
    normalize,
    tokenize,
    phonetic_key,
)
from rumbledore.identity.matcher import FuzzyMatcher
from rumbledore.identity.scorer import (
    ConfidenceFactors,
    ConfidenceScorer,
    Explanation,
    ScoringWeights,
    ActionThresholds,
)
from rumbledore.identity.signals import (
    StatisticalProfile,
    StatisticsGateway,
    StatisticsProvider,
)
from rumbledore.identity.sources import (
    SourceRecordData,
    SourceRecordSource,
    DatabaseRecordSource,
    DatabaseStatisticsProvider,
)
from rumbledore.identity.audit import AuditLogger
from rumbledore.identity.locks import IdentityLockRegistry
from rumbledore.identity.merge import MergeSplitManager
from rumbledore.identity.review import ReviewService
from rumbledore.identity.resolver import (
    IdentityResolver,
    ResolutionOptions,
    ResolveResponse,
    RecordOutcome,
)
from rumbledore.identity.services import IdentityServices, create_identity_services

__all__ = [
    # Names
    "NormalizedName",
    "normalize",
    "tokenize",
    "phonetic_key",
    "FuzzyMatcher",
    # Scoring
    "ConfidenceFactors",
    "ConfidenceScorer",
    "Explanation",
    "ScoringWeights",
    "ActionThresholds",
    # Signals and sources
    "StatisticalProfile",
    "StatisticsGateway",
    "StatisticsProvider",
    "SourceRecordData",
    "SourceRecordSource",
    "DatabaseRecordSource",
    "DatabaseStatisticsProvider",
    # Graph changes
    "AuditLogger",
    "IdentityLockRegistry",
    "MergeSplitManager",
    "ReviewService",
    # Resolution
    "IdentityResolver",
    "ResolutionOptions",
    "ResolveResponse",
    "RecordOutcome",
    "IdentityServices",
    "create_identity_services",
]
