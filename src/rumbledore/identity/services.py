"""
Wiring for the identity services.

Every component receives its collaborators explicitly. This module is the
one place that builds the whole graph for a session, so callers (the CLI,
a job runner, tests) never assemble it by hand.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from rumbledore.config import Settings, get_settings
from rumbledore.identity.audit import AuditLogger
from rumbledore.identity.locks import IdentityLockRegistry
from rumbledore.identity.matcher import FuzzyMatcher
from rumbledore.identity.merge import MergeSplitManager
from rumbledore.identity.resolver import IdentityResolver
from rumbledore.identity.review import ReviewService
from rumbledore.identity.scorer import ConfidenceScorer
from rumbledore.identity.signals import StatisticsGateway, StatisticsProvider
from rumbledore.identity.sources import DatabaseRecordSource, SourceRecordSource

# Shared across sessions in this process so two services never lock the
# same identity independently
_default_lock_registry = IdentityLockRegistry()


@dataclass
class IdentityServices:
    resolver: IdentityResolver
    matcher: FuzzyMatcher
    scorer: ConfidenceScorer
    gateway: StatisticsGateway
    audit: AuditLogger
    merge_manager: MergeSplitManager
    review: ReviewService
    locks: IdentityLockRegistry

    def close(self) -> None:
        self.gateway.close()


def create_identity_services(
    session: Session,
    statistics_provider: StatisticsProvider,
    record_source: Optional[SourceRecordSource] = None,
    settings: Optional[Settings] = None,
    lock_registry: Optional[IdentityLockRegistry] = None,
) -> IdentityServices:
    """
    Build the resolver and its collaborators around one session.

    Args:
        session: Session every component reads and writes through
        statistics_provider: Source of season statistics
        record_source: Where source records come from; defaults to the
            source_records table
        settings: Settings instance; defaults to get_settings()
        lock_registry: Per-identity locks; defaults to the process-wide registry

    Returns:
        IdentityServices; call close() when done to stop the gateway threads
    """
    settings = settings or get_settings()
    locks = lock_registry or _default_lock_registry
    record_source = record_source or DatabaseRecordSource(session)

    matcher = FuzzyMatcher(settings)
    scorer = ConfidenceScorer(settings=settings)
    gateway = StatisticsGateway(statistics_provider, settings=settings)
    audit = AuditLogger(session)
    merge_manager = MergeSplitManager(session, audit, locks, settings)
    review = ReviewService(session, audit, locks, settings)

    resolver = IdentityResolver(
        db=session,
        matcher=matcher,
        scorer=scorer,
        gateway=gateway,
        record_source=record_source,
        audit=audit,
        merge_manager=merge_manager,
        review=review,
        locks=locks,
        settings=settings,
    )
    return IdentityServices(
        resolver=resolver,
        matcher=matcher,
        scorer=scorer,
        gateway=gateway,
        audit=audit,
        merge_manager=merge_manager,
        review=review,
        locks=locks,
    )
