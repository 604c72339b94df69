"""
Batch identity resolution.

For every unmapped per-season source record in a scope, the resolver
builds a pool of existing canonical identities of the same kind (across
all seasons), shortlists them by name, scores the shortlist with the
supporting signals and applies the action policy:

1. auto_approve / auto_approve_high: commit a mapping to the best candidate
2. manual_review / manual_review_low: queue a pending IdentityMatch
3. skip, or no candidate at all: create a new canonical identity

Records are handled in groups (ascending season, then fixed-size chunks).
Within a group scoring runs on a thread pool over immutable snapshots;
applying is serialized and each record commits on its own, so a failure
or cancellation never undoes earlier records.

Run states: started -> scoring -> applying -> completed | partially_failed | cancelled
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rumbledore.config import Settings, get_settings
from rumbledore.db.models import (
    CanonicalIdentity,
    IdentityAuditLog,
    IdentityMapping,
    IdentityMatch,
    ResolutionRun,
    utc_now,
)
from rumbledore.errors import ConcurrentModification, ExternalSignalUnavailable, ValidationError
from rumbledore.identity.audit import AuditLogger, identity_snapshot
from rumbledore.identity.graph import (
    attach_mapping,
    create_identity,
    find_mapping,
    find_pending_match,
    holds_season,
    load_identity,
)
from rumbledore.identity.locks import IdentityLockRegistry, identity_lock_key
from rumbledore.identity.matcher import FuzzyMatcher
from rumbledore.identity.merge import MergeSplitManager
from rumbledore.identity.normalizer import NormalizedName, normalize
from rumbledore.identity.review import ReviewService
from rumbledore.identity.scorer import ConfidenceFactors, ConfidenceScorer
from rumbledore.identity.signals import (
    StatisticalProfile,
    StatisticsGateway,
    owner_continuity,
    position_compatibility,
    source_id_continuity,
    statistical_similarity,
    team_continuity,
)
from rumbledore.identity.sources import SourceRecordData, SourceRecordSource
from rumbledore.statuses import (
    AUTO_APPROVE_ACTIONS,
    ENTITY_KINDS,
    REVIEW_ACTIONS,
    Action,
    RunStatus,
    validate_entity_kind,
)

logger = logging.getLogger(__name__)

# Owner match counts for more than the team name when shortlisting teams
TEAM_OWNER_WEIGHT = 0.7
TEAM_NAME_WEIGHT = 0.3


# =============================================================================
# Options and results
# =============================================================================

@dataclass
class ResolutionOptions:
    """
    Knobs for one resolution run.

    entity_kind None resolves players, then teams. min_confidence treats a
    best candidate below it as no candidate at all. auto_approve False
    sends would-be automatic matches to manual review instead.
    """
    entity_kind: Optional[str] = None
    seasons: Optional[Sequence[int]] = None
    min_confidence: Optional[float] = None
    auto_approve: bool = True
    skip_existing: bool = True
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.entity_kind is not None:
            try:
                self.entity_kind = validate_entity_kind(self.entity_kind)
            except ValueError as e:
                raise ValidationError(str(e)) from e
        if self.min_confidence is not None and not 0.0 <= self.min_confidence <= 1.0:
            raise ValidationError(
                f"min_confidence must be within [0, 1], got {self.min_confidence}"
            )

    @property
    def entity_kinds(self) -> tuple[str, ...]:
        return (self.entity_kind,) if self.entity_kind else ENTITY_KINDS


@dataclass
class RecordOutcome:
    """What happened to one source record during a run."""
    entity_kind: str
    scope_id: str
    source_id: int
    season: int
    name: str
    # 'auto_matched', 'manual_review', 'created', 'skipped', 'error'
    outcome: str
    action: Optional[Action] = None
    confidence: Optional[float] = None
    identity_id: Optional[int] = None
    candidate_identity_id: Optional[int] = None
    match_id: Optional[int] = None
    factors: Optional[dict] = None
    reasons: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ResolveResponse:
    """Summary of a resolution run. errors > 0 means it only partly succeeded."""
    run_id: str
    status: RunStatus = "started"
    total_processed: int = 0
    auto_matched: int = 0
    manual_review_required: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    matches: list[RecordOutcome] = field(default_factory=list)
    execution_time: float = 0.0
    cancelled: bool = False

    def record(self, outcome: RecordOutcome) -> None:
        self.total_processed += 1
        self.matches.append(outcome)
        if outcome.outcome == "auto_matched":
            self.auto_matched += 1
        elif outcome.outcome == "manual_review":
            self.manual_review_required += 1
        elif outcome.outcome == "created":
            self.created += 1
        elif outcome.outcome == "skipped":
            self.skipped += 1
        elif outcome.outcome == "error":
            self.errors += 1
            self.error_messages.append(outcome.error or "unknown error")

    def summary(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "auto_matched": self.auto_matched,
            "manual_review_required": self.manual_review_required,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "execution_time": round(self.execution_time, 3),
            "cancelled": self.cancelled,
        }

    def to_dict(self) -> dict:
        data = {"run_id": self.run_id, "status": self.status, **self.summary()}
        data["error_messages"] = list(self.error_messages)
        data["matches"] = [m.to_dict() for m in self.matches]
        return data


# =============================================================================
# Immutable snapshots used by scoring workers
# =============================================================================

@dataclass(frozen=True)
class MappingSnapshot:
    source_id: int
    season: int
    observed_name: str
    position: Optional[str]
    affiliation: Optional[str]


@dataclass(frozen=True)
class CandidateSnapshot:
    identity_id: int
    entity_kind: str
    canonical_name: str
    names: tuple[NormalizedName, ...]
    mappings: tuple[MappingSnapshot, ...]

    @property
    def seasons(self) -> frozenset[int]:
        return frozenset(m.season for m in self.mappings)

    @property
    def source_ids(self) -> frozenset[int]:
        return frozenset(m.source_id for m in self.mappings)

    def nearest_mapping(self, season: int) -> Optional[MappingSnapshot]:
        """Mapping closest in time to season; the later one wins ties."""
        if not self.mappings:
            return None
        return min(self.mappings, key=lambda m: (abs(m.season - season), -m.season))

    @classmethod
    def from_identity(cls, identity: CanonicalIdentity) -> "CandidateSnapshot":
        raw_names = [identity.canonical_name, *(identity.alternate_names or [])]
        raw_names += [m.observed_name for m in identity.mappings]
        names: list[NormalizedName] = []
        for raw in raw_names:
            name = normalize(raw)
            if not name.is_empty and name not in names:
                names.append(name)
        return cls(
            identity_id=identity.id,
            entity_kind=identity.entity_kind,
            canonical_name=identity.canonical_name,
            names=tuple(names),
            mappings=tuple(
                MappingSnapshot(
                    source_id=m.source_id,
                    season=m.season,
                    observed_name=m.observed_name,
                    position=m.position,
                    affiliation=m.affiliation,
                )
                for m in identity.mappings
            ),
        )


@dataclass(frozen=True)
class ScoredRecord:
    """Output of the scoring phase for one record."""
    record: SourceRecordData
    candidate_id: Optional[int] = None
    confidence: float = 0.0
    action: Action = "skip"
    factors: Optional[ConfidenceFactors] = None
    reasons: tuple[str, ...] = ()
    error: Optional[str] = None


# =============================================================================
# Resolver
# =============================================================================

class IdentityResolver:
    """
    Orchestrates resolution runs and fronts the correction services.

    Usage:
        services = create_identity_services(session, stats_provider)
        response = services.resolver.resolve_identities("league-123")
        print(response.auto_matched, response.manual_review_required, response.errors)
    """

    def __init__(
        self,
        db: Session,
        matcher: FuzzyMatcher,
        scorer: ConfidenceScorer,
        gateway: StatisticsGateway,
        record_source: SourceRecordSource,
        audit: AuditLogger,
        merge_manager: MergeSplitManager,
        review: ReviewService,
        locks: IdentityLockRegistry,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.db = db
        self.matcher = matcher
        self.scorer = scorer
        self.gateway = gateway
        self.record_source = record_source
        self.audit = audit
        self.merge_manager = merge_manager
        self.review = review
        self.locks = locks
        self.workers = max(1, settings.resolution_workers)
        self.batch_size = max(1, settings.resolution_batch_size)
        self.lock_timeout = settings.identity_lock_timeout_seconds

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def resolve_identities(
        self,
        scope_id: str,
        options: Optional[ResolutionOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        actor: str = "system",
    ) -> ResolveResponse:
        """
        Resolve every unmapped source record in a scope.

        Per-record failures are counted in the response and never abort the
        run. Failures loading records or candidates do abort it.

        Args:
            scope_id: League (or other grouping) to resolve
            options: Run options; defaults to ResolutionOptions()
            cancel_event: Checked between record groups; when set the run
                stops and keeps everything already committed
            actor: Recorded on identities, mappings and audit entries

        Returns:
            ResolveResponse with counts, per-record outcomes and timing
        """
        options = options or ResolutionOptions()
        started = time.perf_counter()
        response = ResolveResponse(run_id=uuid.uuid4().hex)
        run = None if options.dry_run else self._start_run(response.run_id, scope_id, options)

        logger.info(
            "Resolution run %s started for scope %s (kinds=%s, seasons=%s, dry_run=%s)",
            response.run_id, scope_id, ",".join(options.entity_kinds),
            options.seasons or "all", options.dry_run,
        )

        try:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="resolve") as executor:
                for entity_kind in options.entity_kinds:
                    self._resolve_kind(
                        executor, scope_id, entity_kind, options, cancel_event, actor, response, run
                    )
                    if response.cancelled:
                        break
        except Exception:
            response.execution_time = time.perf_counter() - started
            if run is not None:
                self.db.rollback()
                self._finish_run(run, response, "partially_failed")
            logger.exception("Resolution run %s aborted", response.run_id)
            raise

        response.execution_time = time.perf_counter() - started
        if response.cancelled:
            status: RunStatus = "cancelled"
        elif response.errors:
            status = "partially_failed"
        else:
            status = "completed"
        response.status = status
        if run is not None:
            self._finish_run(run, response, status)

        logger.info(
            "Resolution run %s %s: %d processed, %d auto-matched, %d for review, "
            "%d created, %d skipped, %d errors in %.2fs",
            response.run_id, status, response.total_processed, response.auto_matched,
            response.manual_review_required, response.created, response.skipped,
            response.errors, response.execution_time,
        )
        return response

    def merge_identities(
        self,
        primary_id: int,
        secondary_id: int,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> IdentityAuditLog:
        return self.merge_manager.merge_identities(primary_id, secondary_id, reason, actor)

    def split_identity(
        self,
        identity_id: int,
        mapping_ids: Sequence[int],
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> IdentityAuditLog:
        return self.merge_manager.split_identity(identity_id, mapping_ids, reason, actor)

    def rollback_change(
        self,
        audit_entry_id: int,
        actor: str = "system",
        reason: Optional[str] = None,
    ) -> IdentityAuditLog:
        return self.merge_manager.rollback_change(audit_entry_id, actor, reason)

    def approve_match(
        self,
        match_id: int,
        target_identity_id: Optional[int] = None,
        actor: str = "system",
    ) -> IdentityAuditLog:
        return self.review.approve_match(match_id, target_identity_id, actor)

    def reject_match(self, match_id: int, actor: str = "system") -> IdentityAuditLog:
        return self.review.reject_match(match_id, actor)

    def get_identity_matches(
        self,
        scope_id: str,
        status: Optional[str] = None,
        entity_kind: Optional[str] = None,
    ) -> list[IdentityMatch]:
        """Matches in a scope, most confident first."""
        query = select(IdentityMatch).where(IdentityMatch.scope_id == scope_id)
        if status:
            query = query.where(IdentityMatch.status == status)
        if entity_kind:
            query = query.where(IdentityMatch.entity_kind == entity_kind)
        query = query.order_by(IdentityMatch.confidence.desc(), IdentityMatch.id)
        return list(self.db.scalars(query))

    def get_audit_trail(self, entity_kind: str, entity_id: int) -> list[IdentityAuditLog]:
        return self.audit.get_audit_trail(entity_kind, entity_id)

    def get_audit_statistics(
        self,
        entity_kind: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        actor: Optional[str] = None,
    ) -> dict:
        return self.audit.get_audit_statistics(entity_kind, start, end, actor)

    # =========================================================================
    # Run bookkeeping
    # =========================================================================

    def _start_run(self, run_id: str, scope_id: str, options: ResolutionOptions) -> ResolutionRun:
        run = ResolutionRun(
            run_id=run_id,
            scope_id=scope_id,
            entity_kind=options.entity_kind,
            status="started",
            started_at=utc_now(),
        )
        self.db.add(run)
        self.db.commit()
        return run

    def _set_run_status(self, run: Optional[ResolutionRun], status: RunStatus) -> None:
        if run is None or run.status == status:
            return
        run.status = status
        self.db.commit()

    def _finish_run(self, run: ResolutionRun, response: ResolveResponse, status: RunStatus) -> None:
        run.status = status
        run.ended_at = utc_now()
        run.summary_json = {**response.summary(), "error_messages": response.error_messages[:50]}
        self.db.commit()

    # =========================================================================
    # Per-kind resolution
    # =========================================================================

    def _resolve_kind(
        self,
        executor: ThreadPoolExecutor,
        scope_id: str,
        entity_kind: str,
        options: ResolutionOptions,
        cancel_event: Optional[threading.Event],
        actor: str,
        response: ResolveResponse,
        run: Optional[ResolutionRun],
    ) -> None:
        records = self._pending_records(scope_id, entity_kind, options, response)
        groups = self._group_records(records)
        logger.info(
            "Resolving %d %s records for scope %s in %d groups",
            len(records), entity_kind, scope_id, len(groups),
        )

        for index, group in enumerate(groups, start=1):
            if cancel_event is not None and cancel_event.is_set():
                response.cancelled = True
                logger.warning(
                    "Resolution run %s cancelled before %s group %d/%d",
                    response.run_id, entity_kind, index, len(groups),
                )
                return

            self._set_run_status(run, "scoring")
            pool = self._candidate_pool(scope_id, entity_kind)
            scored = list(executor.map(lambda record: self._score_record(record, pool), group))

            self._set_run_status(run, "applying")
            for result in scored:
                response.record(self._apply(result, options, actor, response.run_id))

            logger.info(
                "%s group %d/%d done (season %s, %d records, %d errors so far)",
                entity_kind, index, len(groups), group[0].season, len(group), response.errors,
            )

    def _pending_records(
        self,
        scope_id: str,
        entity_kind: str,
        options: ResolutionOptions,
        response: ResolveResponse,
    ) -> list[SourceRecordData]:
        """Deduplicated records that still need a decision."""
        records = self.record_source.load_records(scope_id, entity_kind, options.seasons)

        mapped = {
            tuple(row) for row in self.db.execute(
                select(
                    IdentityMapping.entity_kind,
                    IdentityMapping.scope_id,
                    IdentityMapping.source_id,
                    IdentityMapping.season,
                ).where(
                    IdentityMapping.scope_id == scope_id,
                    IdentityMapping.entity_kind == entity_kind,
                )
            )
        }
        queued: set[tuple] = set()
        if options.skip_existing:
            queued = {
                tuple(row) for row in self.db.execute(
                    select(
                        IdentityMatch.entity_kind,
                        IdentityMatch.scope_id,
                        IdentityMatch.source_id,
                        IdentityMatch.season,
                    ).where(
                        IdentityMatch.scope_id == scope_id,
                        IdentityMatch.entity_kind == entity_kind,
                        IdentityMatch.status == "pending",
                    )
                )
            }

        pending: list[SourceRecordData] = []
        seen: set[tuple] = set()
        for record in records:
            if record.key in seen:
                continue
            seen.add(record.key)
            # A tuple never gets a second mapping, whatever skip_existing says
            if record.key in mapped or record.key in queued:
                response.record(self._outcome(record, "skipped"))
                continue
            pending.append(record)
        return pending

    def _group_records(self, records: list[SourceRecordData]) -> list[list[SourceRecordData]]:
        by_season: dict[int, list[SourceRecordData]] = {}
        for record in records:
            by_season.setdefault(record.season, []).append(record)

        groups = []
        for season in sorted(by_season):
            season_records = by_season[season]
            for start in range(0, len(season_records), self.batch_size):
                groups.append(season_records[start:start + self.batch_size])
        return groups

    def _candidate_pool(self, scope_id: str, entity_kind: str) -> tuple[CandidateSnapshot, ...]:
        identities = self.db.scalars(
            select(CanonicalIdentity)
            .where(
                CanonicalIdentity.scope_id == scope_id,
                CanonicalIdentity.entity_kind == entity_kind,
                CanonicalIdentity.state == "active",
            )
            .options(selectinload(CanonicalIdentity.mappings))
            .order_by(CanonicalIdentity.id)
        ).all()
        return tuple(CandidateSnapshot.from_identity(identity) for identity in identities)

    # =========================================================================
    # Scoring (runs on worker threads, no database access)
    # =========================================================================

    def _score_record(
        self, record: SourceRecordData, pool: tuple[CandidateSnapshot, ...]
    ) -> ScoredRecord:
        try:
            target = normalize(record.name)
            eligible = [c for c in pool if record.season not in c.seasons]
            shortlist = self._shortlist(record, target, eligible)
            if not shortlist:
                return ScoredRecord(record=record, reasons=("No candidate identities",))

            record_profile = self._fetch_profile(record.entity_kind, record.source_id, record.season)

            best: Optional[ScoredRecord] = None
            for candidate, name_score in shortlist:
                factors = self._build_factors(record, record_profile, candidate, name_score)
                confidence, action = self.scorer.decide(factors)
                if best is None or confidence > best.confidence:
                    best = ScoredRecord(
                        record=record,
                        candidate_id=candidate.identity_id,
                        confidence=confidence,
                        action=action,
                        factors=factors,
                        reasons=tuple(self._reasons(factors)),
                    )
            return best
        except Exception as e:
            logger.warning("Scoring failed for %s: %s", record.describe(), e)
            return ScoredRecord(record=record, error=f"{record.describe()}: {e}")

    def _shortlist(
        self,
        record: SourceRecordData,
        target: NormalizedName,
        eligible: list[CandidateSnapshot],
    ) -> list[tuple[CandidateSnapshot, float]]:
        """
        Top candidates by name, each with its best name similarity.

        Every name an identity has carried is compared, so a renamed team
        or a nickname seen in an earlier season still finds its identity.
        For teams a matching owner or source id also earns a place.
        """
        if target.is_empty or not eligible:
            return []

        pairs = [(candidate, name) for candidate in eligible for name in candidate.names]
        ranked = self.matcher.best_matches(
            target, pairs, threshold=0.0, max_results=len(pairs), key=lambda pair: pair[1]
        )

        best_by_id: dict[int, tuple[CandidateSnapshot, float]] = {}
        for (candidate, _), score in ranked:
            best_by_id.setdefault(candidate.identity_id, (candidate, score))

        shortlisted: list[tuple[CandidateSnapshot, float, float]] = []
        for candidate in eligible:
            name_score = best_by_id.get(candidate.identity_id, (candidate, 0.0))[1]
            rank_score = name_score
            if record.entity_kind == "team":
                nearest = candidate.nearest_mapping(record.season)
                owner = owner_continuity(
                    self.matcher.similarity,
                    record.affiliation, record.season,
                    nearest.affiliation if nearest else None,
                    nearest.season if nearest else record.season,
                )
                rank_score = max(
                    name_score,
                    TEAM_NAME_WEIGHT * name_score + TEAM_OWNER_WEIGHT * owner,
                    source_id_continuity(record.source_id, candidate.source_ids),
                )
            if rank_score >= self.matcher.default_threshold:
                shortlisted.append((candidate, name_score, rank_score))

        shortlisted.sort(key=lambda item: item[2], reverse=True)
        return [(c, name_score) for c, name_score, _ in shortlisted[: self.matcher.default_max_results]]

    def _fetch_profile(self, entity_kind: str, source_id: int, season: int) -> Optional[StatisticalProfile]:
        try:
            return self.gateway.fetch(entity_kind, source_id, season)
        except ExternalSignalUnavailable as e:
            logger.warning("Statistics degraded for %s %s/%s: %s", entity_kind, source_id, season, e)
            return None

    def _build_factors(
        self,
        record: SourceRecordData,
        record_profile: Optional[StatisticalProfile],
        candidate: CandidateSnapshot,
        name_score: float,
    ) -> ConfidenceFactors:
        nearest = candidate.nearest_mapping(record.season)

        if record.entity_kind == "team":
            position = source_id_continuity(record.source_id, candidate.source_ids)
            continuity = owner_continuity(
                self.matcher.similarity,
                record.affiliation, record.season,
                nearest.affiliation if nearest else None,
                nearest.season if nearest else record.season,
            )
        else:
            position = position_compatibility(record.position, nearest.position if nearest else None)
            continuity = team_continuity(
                record.affiliation, record.season,
                nearest.affiliation if nearest else None,
                nearest.season if nearest else record.season,
            )

        candidate_profile = None
        if record_profile is not None and nearest is not None:
            candidate_profile = self._fetch_profile(record.entity_kind, nearest.source_id, nearest.season)

        stats_available = record_profile is not None and candidate_profile is not None
        stat_score = statistical_similarity(record_profile, candidate_profile) if stats_available else 0.0

        return ConfidenceFactors(
            name_similarity=name_score,
            position_match=position,
            team_continuity=continuity,
            stat_similarity=stat_score,
            stats_available=stats_available,
        )

    @staticmethod
    def _reasons(factors: ConfidenceFactors) -> list[str]:
        reasons = []
        if factors.name_similarity > 0.9:
            reasons.append("Name match")
        elif factors.name_similarity > 0.7:
            reasons.append("Similar name")
        if factors.position_match >= 1.0:
            reasons.append("Same position")
        elif factors.position_match > 0.5:
            reasons.append("Compatible positions")
        if factors.team_continuity > 0.5:
            reasons.append("Team continuity")
        if not factors.stats_available:
            reasons.append("Statistics unavailable")
        elif factors.stat_similarity > 0.8:
            reasons.append("Similar statistics")
        return reasons

    # =========================================================================
    # Applying (serialized, one commit per record)
    # =========================================================================

    def _policy_action(self, result: ScoredRecord, options: ResolutionOptions) -> Action:
        if result.candidate_id is None:
            return "skip"
        if options.min_confidence is not None and result.confidence < options.min_confidence:
            return "skip"
        if result.action in AUTO_APPROVE_ACTIONS and not options.auto_approve:
            return "manual_review"
        return result.action

    def _outcome(self, record: SourceRecordData, outcome: str, **kwargs) -> RecordOutcome:
        return RecordOutcome(
            entity_kind=record.entity_kind,
            scope_id=record.scope_id,
            source_id=record.source_id,
            season=record.season,
            name=record.name,
            outcome=outcome,
            **kwargs,
        )

    def _apply(
        self,
        result: ScoredRecord,
        options: ResolutionOptions,
        actor: str,
        run_id: str,
    ) -> RecordOutcome:
        record = result.record
        if result.error:
            return self._outcome(record, "error", error=result.error)

        action = self._policy_action(result, options)
        details = {
            "action": action,
            "confidence": round(result.confidence, 4) if result.candidate_id else None,
            "candidate_identity_id": result.candidate_id,
            "factors": result.factors.to_dict() if result.factors else None,
            "reasons": list(result.reasons),
        }

        if options.dry_run:
            if action in AUTO_APPROVE_ACTIONS:
                return self._outcome(record, "auto_matched", identity_id=result.candidate_id, **details)
            if action in REVIEW_ACTIONS:
                return self._outcome(record, "manual_review", **details)
            return self._outcome(record, "created", **details)

        try:
            if find_mapping(self.db, *record.key) is not None:
                return self._outcome(record, "skipped", **details)

            if action in AUTO_APPROVE_ACTIONS:
                outcome = self._apply_auto_match(result, actor)
                if outcome is not None:
                    return self._outcome(record, "auto_matched", identity_id=outcome, **details)
                # The candidate took another record for this season meanwhile
                details["action"] = action = "manual_review"
                details["reasons"].append("Candidate already mapped in this season")

            if action in REVIEW_ACTIONS:
                match_id = self._queue_for_review(result, action, details["reasons"], run_id, options)
                return self._outcome(record, "manual_review", match_id=match_id, **details)

            identity_id = self._create_new_identity(record, actor)
            return self._outcome(record, "created", identity_id=identity_id, **details)
        except Exception as e:
            self.db.rollback()
            logger.warning("Failed to apply %s: %s", record.describe(), e, exc_info=True)
            return self._outcome(record, "error", error=f"{record.describe()}: {e}", **details)

    def _apply_auto_match(self, result: ScoredRecord, actor: str) -> Optional[int]:
        """Commit a mapping to the candidate; None when it already has that season."""
        record = result.record
        keys = [identity_lock_key(record.entity_kind, result.candidate_id)]

        with self.locks.transaction(self.db, keys, self.lock_timeout):
            identity = load_identity(self.db, result.candidate_id)
            if not identity.is_active:
                raise ConcurrentModification(
                    f"Candidate identity {identity.id} was retired during the run"
                )
            if holds_season(identity, record.season):
                return None

            before = {"identity": identity_snapshot(identity)}
            method = "automatic" if result.factors.name_similarity >= 1.0 else "fuzzy_match"
            mapping = attach_mapping(self.db, identity, record, result.confidence, method, actor)
            after = {
                "identity": identity_snapshot(identity),
                "mapping_id": mapping.id,
                "match_id": self._close_pending_match(record, actor, identity.id),
                "source": list(record.key),
                "confidence": round(result.confidence, 4),
            }
            self.audit.log_action(
                record.entity_kind, identity.id, "approve", before, after,
                f"Auto-approved {result.action} at {result.confidence:.3f}", actor,
            )
            identity_id = identity.id
        return identity_id

    def _queue_for_review(
        self,
        result: ScoredRecord,
        action: Action,
        reasons: list[str],
        run_id: str,
        options: ResolutionOptions,
    ) -> int:
        record = result.record
        with self.locks.transaction(self.db, [], self.lock_timeout):
            match = None if options.skip_existing else find_pending_match(self.db, *record.key)
            if match is None:
                match = IdentityMatch(
                    entity_kind=record.entity_kind,
                    scope_id=record.scope_id,
                    source_id=record.source_id,
                    season=record.season,
                    observed_name=record.name,
                    position=record.position,
                    affiliation=record.affiliation,
                    status="pending",
                )
                self.db.add(match)
            match.candidate_identity_id = result.candidate_id
            match.confidence = round(result.confidence, 4)
            match.action = action
            match.factors = result.factors.to_dict() if result.factors else {}
            match.reasons = list(reasons)
            match.run_id = run_id
            match.updated_at = utc_now()
            self.db.flush()
            match_id = match.id
        return match_id

    def _close_pending_match(
        self, record: SourceRecordData, actor: str, mapped_to: Optional[int] = None
    ) -> Optional[int]:
        """
        Settle a pending match left by an earlier run once its record is mapped.

        Mapped to the suggested candidate is an approval, to another identity a
        merge; a brand new identity rejects the suggestion.
        """
        match = find_pending_match(self.db, *record.key)
        if match is None:
            return None
        if mapped_to is None:
            match.status = "rejected"
        elif mapped_to == match.candidate_identity_id:
            match.status = "approved"
        else:
            match.status = "merged"
        match.reviewed_by = actor
        match.reviewed_at = utc_now()
        match.updated_at = match.reviewed_at
        return match.id

    def _create_new_identity(self, record: SourceRecordData, actor: str) -> int:
        with self.locks.transaction(self.db, [], self.lock_timeout):
            identity, mapping = create_identity(self.db, record, 1.0, "automatic", actor)
            after = {
                "identity": identity_snapshot(identity),
                "mapping_id": mapping.id,
                "match_id": self._close_pending_match(record, actor),
                "source": list(record.key),
            }
            self.audit.log_action(
                record.entity_kind, identity.id, "create", None, after,
                "No confident match among existing identities", actor,
            )
            identity_id = identity.id
        return identity_id
