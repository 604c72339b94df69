"""
Unit tests for approving and rejecting pending matches.
"""

import pytest
from sqlalchemy import func, select

from rumbledore.db.models import CanonicalIdentity, IdentityMapping, IdentityMatch
from rumbledore.errors import InvalidOperation, NotFound
from rumbledore.identity.audit import identity_snapshot
from rumbledore.identity.graph import find_mapping, load_identity


@pytest.fixture
def review(services):
    return services.review


def queue_match(db_session, candidate_id, name="Mike Williams", source_id=301, season=2021):
    match = IdentityMatch(
        entity_kind="player",
        scope_id="league-1",
        source_id=source_id,
        season=season,
        observed_name=name,
        position="WR",
        affiliation="NYJ",
        candidate_identity_id=candidate_id,
        confidence=0.62,
        action="manual_review",
        factors={"name_similarity": 1.0},
        reasons=["Name match"],
    )
    db_session.add(match)
    db_session.commit()
    return match.id


def count(db_session, model):
    return db_session.scalar(select(func.count()).select_from(model))


class TestApprove:

    def test_approve_creates_manual_mapping(self, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2019, "WR", "LAC")
        match_id = queue_match(db_session, identity_id)

        entry = review.approve_match(match_id, actor="alice")

        match = db_session.get(IdentityMatch, match_id)
        assert match.status == "approved"
        assert match.reviewed_by == "alice"
        assert match.reviewed_at is not None

        mapping = find_mapping(db_session, "player", "league-1", 301, 2021)
        assert mapping.identity_id == identity_id
        assert mapping.method == "manual"
        assert mapping.confidence == pytest.approx(0.62)

        assert entry.action == "approve"
        assert entry.after_state["match_id"] == match_id
        assert entry.after_state["mapping_id"] == mapping.id

    def test_approve_into_other_identity_is_merged(self, review, db_session, seed_identity):
        suggested = seed_identity("Mike Williams", 201, 2019, "WR", "LAC")
        other = seed_identity("Mike Williams", 401, 2020, "WR", "NYJ")
        match_id = queue_match(db_session, suggested)

        review.approve_match(match_id, target_identity_id=other)

        assert db_session.get(IdentityMatch, match_id).status == "merged"
        assert find_mapping(db_session, "player", "league-1", 301, 2021).identity_id == other

    def test_approve_rollback_reopens_match(self, services, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2019, "WR", "LAC")
        match_id = queue_match(db_session, identity_id)
        before = identity_snapshot(load_identity(db_session, identity_id))

        entry = review.approve_match(match_id)
        services.merge_manager.rollback_change(entry.id)

        assert identity_snapshot(load_identity(db_session, identity_id)) == before
        assert find_mapping(db_session, "player", "league-1", 301, 2021) is None
        match = db_session.get(IdentityMatch, match_id)
        assert match.status == "pending"
        assert match.reviewed_by is None

    def test_approve_twice(self, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2019)
        match_id = queue_match(db_session, identity_id)
        review.approve_match(match_id)
        with pytest.raises(InvalidOperation):
            review.approve_match(match_id)

    def test_approve_missing(self, review):
        with pytest.raises(NotFound):
            review.approve_match(999)

    def test_target_already_holds_season(self, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2021)
        match_id = queue_match(db_session, identity_id, source_id=301, season=2021)
        with pytest.raises(InvalidOperation):
            review.approve_match(match_id)
        assert db_session.get(IdentityMatch, match_id).status == "pending"

    def test_retired_target(self, services, review, db_session, seed_identity):
        primary = seed_identity("Mike Williams", 201, 2018)
        secondary = seed_identity("Mike Williams", 201, 2019)
        match_id = queue_match(db_session, primary)
        services.merge_manager.merge_identities(primary, secondary)
        with pytest.raises(InvalidOperation):
            review.approve_match(match_id, target_identity_id=secondary)


class TestReject:

    def test_reject_creates_identity(self, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2019)
        match_id = queue_match(db_session, identity_id)

        entry = review.reject_match(match_id, actor="alice")

        assert db_session.get(IdentityMatch, match_id).status == "rejected"
        created = load_identity(db_session, entry.entity_id)
        assert created.id != identity_id
        assert created.canonical_name == "Mike Williams"
        assert [m.season for m in created.mappings] == [2021]
        assert entry.action == "reject"
        assert entry.before_state is None

    def test_reject_rollback_removes_identity(self, services, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2019)
        match_id = queue_match(db_session, identity_id)

        entry = review.reject_match(match_id)
        services.merge_manager.rollback_change(entry.id)

        assert db_session.get(CanonicalIdentity, entry.entity_id) is None
        assert count(db_session, CanonicalIdentity) == 1
        assert count(db_session, IdentityMapping) == 1
        assert db_session.get(IdentityMatch, match_id).status == "pending"

    def test_reject_already_mapped(self, review, db_session, seed_identity):
        identity_id = seed_identity("Mike Williams", 201, 2019)
        seed_identity("Mike Williams", 301, 2021)
        match_id = queue_match(db_session, identity_id)
        with pytest.raises(InvalidOperation):
            review.reject_match(match_id)
