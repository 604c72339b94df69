"""
Unit tests for merge, split and rollback of canonical identities.
"""

import pytest
from sqlalchemy import func, select

from rumbledore.db.models import CanonicalIdentity, IdentityMatch
from rumbledore.errors import ConcurrentModification, InvalidOperation, NotFound
from rumbledore.identity.audit import identity_snapshot
from rumbledore.identity.graph import attach_mapping, load_identity


@pytest.fixture
def manager(services):
    return services.merge_manager


def snapshot(db_session, identity_id):
    return identity_snapshot(load_identity(db_session, identity_id))


def pending_match(db_session, candidate_id, source_id=900, season=2024):
    match = IdentityMatch(
        entity_kind="player",
        scope_id="league-1",
        source_id=source_id,
        season=season,
        observed_name="Josh Allen",
        candidate_identity_id=candidate_id,
        confidence=0.6,
        action="manual_review",
    )
    db_session.add(match)
    db_session.commit()
    return match.id


class TestMerge:

    def test_merge_moves_mappings_and_retires_secondary(self, manager, db_session, seed_identity):
        primary_id = seed_identity("Josh Allen", 17, 2022, "QB", "BUF")
        secondary_id = seed_identity("Joshua Allen", 17, 2023, "QB", "BUF", confidence=0.8)

        entry = manager.merge_identities(primary_id, secondary_id, "same player", "alice")

        primary = load_identity(db_session, primary_id)
        secondary = load_identity(db_session, secondary_id)
        assert [m.season for m in primary.mappings] == [2022, 2023]
        assert secondary.mappings == []
        assert secondary.state == "retired"
        assert secondary.merged_into_id == primary_id
        assert primary.canonical_name == "Josh Allen"
        assert "Joshua Allen" in primary.alternate_names

        assert entry.action == "merge"
        assert entry.entity_id == primary_id
        assert entry.actor == "alice"
        assert entry.before_state["secondary"]["state"] == "active"
        assert entry.after_state["secondary"]["merged_into_id"] == primary_id

    def test_merge_retargets_pending_matches(self, manager, db_session, seed_identity):
        primary_id = seed_identity("Josh Allen", 17, 2022)
        secondary_id = seed_identity("Josh Allen", 18, 2023)
        match_id = pending_match(db_session, secondary_id)

        entry = manager.merge_identities(primary_id, secondary_id)

        assert db_session.get(IdentityMatch, match_id).candidate_identity_id == primary_id
        assert entry.after_state["retargeted_match_ids"] == [match_id]

    def test_merge_with_itself(self, manager, seed_identity):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        with pytest.raises(InvalidOperation):
            manager.merge_identities(identity_id, identity_id)

    def test_merge_retired(self, manager, seed_identity):
        a = seed_identity("Josh Allen", 17, 2021)
        b = seed_identity("Josh Allen", 17, 2022)
        c = seed_identity("Josh Allen", 17, 2023)
        manager.merge_identities(a, b)
        with pytest.raises(InvalidOperation):
            manager.merge_identities(c, b)

    def test_merge_across_kinds(self, manager, seed_identity):
        player = seed_identity("Josh Allen", 17, 2022)
        team = seed_identity("Josh Allen", 17, 2023, entity_kind="team")
        with pytest.raises(InvalidOperation):
            manager.merge_identities(player, team)

    def test_merge_across_scopes(self, manager, seed_identity):
        a = seed_identity("Josh Allen", 17, 2022)
        b = seed_identity("Josh Allen", 17, 2023, scope_id="league-2")
        with pytest.raises(InvalidOperation):
            manager.merge_identities(a, b)

    def test_merge_missing(self, manager, seed_identity):
        a = seed_identity("Josh Allen", 17, 2022)
        with pytest.raises(NotFound):
            manager.merge_identities(a, 999)


class TestSplit:

    def test_split_moves_mappings_to_new_identity(self, manager, db_session, seed_identity, new_record):
        identity_id = seed_identity("Mike Williams", 201, 2019, "WR", "LAC")
        identity = load_identity(db_session, identity_id)
        attach_mapping(db_session, identity, new_record("Mike Williams", 301, 2021, "WR", "NYJ"),
                       0.6, "manual", "t")
        db_session.commit()
        wrong = [m.id for m in load_identity(db_session, identity_id).mappings if m.season == 2021]

        entry = manager.split_identity(identity_id, wrong, "two different players", "alice")

        new_id = entry.after_state["new"]["id"]
        original = load_identity(db_session, identity_id)
        created = load_identity(db_session, new_id)
        assert [m.season for m in original.mappings] == [2019]
        assert [m.id for m in created.mappings] == wrong
        assert original.is_active and created.is_active
        assert created.canonical_name == "Mike Williams"
        assert entry.after_state["moved_mapping_ids"] == wrong

    def test_split_everything_retires_original(self, manager, db_session, seed_identity):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        mapping_ids = snapshot(db_session, identity_id)["mapping_ids"]

        entry = manager.split_identity(identity_id, mapping_ids)

        original = load_identity(db_session, identity_id)
        assert original.state == "retired"
        assert original.merged_into_id == entry.after_state["new"]["id"]

    @pytest.mark.parametrize("mapping_ids", [[], [1, 1], [999]])
    def test_split_invalid_mapping_ids(self, manager, seed_identity, mapping_ids):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        with pytest.raises(InvalidOperation):
            manager.split_identity(identity_id, mapping_ids)


class TestRollback:

    def test_merge_rollback_restores_both_identities(self, manager, db_session, seed_identity):
        primary_id = seed_identity("Josh Allen", 17, 2022)
        secondary_id = seed_identity("Joshua Allen", 17, 2023)
        match_id = pending_match(db_session, secondary_id)
        before = (snapshot(db_session, primary_id), snapshot(db_session, secondary_id))

        entry = manager.merge_identities(primary_id, secondary_id)
        rollback = manager.rollback_change(entry.id, actor="bob")

        assert (snapshot(db_session, primary_id), snapshot(db_session, secondary_id)) == before
        assert db_session.get(IdentityMatch, match_id).candidate_identity_id == secondary_id
        assert rollback.action == "rollback"
        assert rollback.reference_id == entry.id
        assert rollback.actor == "bob"

    def test_split_rollback_restores_original(self, manager, db_session, seed_identity, new_record):
        identity_id = seed_identity("Mike Williams", 201, 2019)
        identity = load_identity(db_session, identity_id)
        attach_mapping(db_session, identity, new_record("Mike Williams", 301, 2021), 0.6, "manual", "t")
        db_session.commit()
        before = snapshot(db_session, identity_id)

        entry = manager.split_identity(identity_id, before["mapping_ids"][-1:])
        manager.rollback_change(entry.id)

        assert snapshot(db_session, identity_id) == before
        new_identity = load_identity(db_session, entry.after_state["new"]["id"])
        assert new_identity.state == "retired"
        assert new_identity.merged_into_id == identity_id

    def test_full_split_rollback_reactivates(self, manager, db_session, seed_identity):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        before = snapshot(db_session, identity_id)

        entry = manager.split_identity(identity_id, before["mapping_ids"])
        manager.rollback_change(entry.id)

        assert snapshot(db_session, identity_id) == before

    def test_rollback_twice(self, manager, seed_identity):
        a = seed_identity("Josh Allen", 17, 2022)
        b = seed_identity("Josh Allen", 17, 2023)
        entry = manager.merge_identities(a, b)
        manager.rollback_change(entry.id)
        with pytest.raises(InvalidOperation):
            manager.rollback_change(entry.id)

    def test_rollback_of_rollback(self, manager, seed_identity):
        a = seed_identity("Josh Allen", 17, 2022)
        b = seed_identity("Josh Allen", 17, 2023)
        entry = manager.merge_identities(a, b)
        rollback = manager.rollback_change(entry.id)
        with pytest.raises(InvalidOperation):
            manager.rollback_change(rollback.id)

    def test_rollback_after_later_change(self, manager, db_session, seed_identity, new_record):
        a = seed_identity("Josh Allen", 17, 2022)
        b = seed_identity("Josh Allen", 17, 2023)
        entry = manager.merge_identities(a, b)

        primary = load_identity(db_session, a)
        attach_mapping(db_session, primary, new_record("Josh Allen", 17, 2024), 1.0, "manual", "t")
        db_session.commit()

        with pytest.raises(ConcurrentModification):
            manager.rollback_change(entry.id)
        assert load_identity(db_session, b).state == "retired"

    def test_rollback_missing_entry(self, manager):
        with pytest.raises(NotFound):
            manager.rollback_change(999)

    def test_failed_merge_leaves_no_trace(self, manager, db_session, seed_identity):
        a = seed_identity("Josh Allen", 17, 2022)
        b = seed_identity("Josh Allen", 17, 2023, scope_id="league-2")
        before = (snapshot(db_session, a), snapshot(db_session, b))

        with pytest.raises(InvalidOperation):
            manager.merge_identities(a, b)

        assert (snapshot(db_session, a), snapshot(db_session, b)) == before
        assert db_session.scalar(select(func.count()).select_from(CanonicalIdentity)) == 2


class TestSplitThenMerge:

    def test_partial_split_then_merge_restores_mappings(self, manager, db_session, seed_identity, new_record):
        identity_id = seed_identity("Mike Williams", 201, 2019)
        identity = load_identity(db_session, identity_id)
        attach_mapping(db_session, identity, new_record("Mike Williams", 301, 2021), 0.6, "manual", "t")
        db_session.commit()
        mapping_ids = snapshot(db_session, identity_id)["mapping_ids"]

        split = manager.split_identity(identity_id, mapping_ids[-1:])
        new_id = split.after_state["new"]["id"]
        manager.merge_identities(identity_id, new_id)

        assert snapshot(db_session, identity_id)["mapping_ids"] == mapping_ids
        assert load_identity(db_session, identity_id).is_active
        assert load_identity(db_session, new_id).merged_into_id == identity_id

    def test_full_split_then_merge_revives_original(self, manager, db_session, seed_identity, new_record):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        identity = load_identity(db_session, identity_id)
        attach_mapping(db_session, identity, new_record("Josh Allen", 17, 2023), 1.0, "manual", "t")
        db_session.commit()
        mapping_ids = snapshot(db_session, identity_id)["mapping_ids"]

        split = manager.split_identity(identity_id, mapping_ids)
        new_id = split.after_state["new"]["id"]
        entry = manager.merge_identities(identity_id, new_id)

        original = load_identity(db_session, identity_id)
        assert original.is_active
        assert original.merged_into_id is None
        assert sorted(m.id for m in original.mappings) == mapping_ids
        assert load_identity(db_session, new_id).merged_into_id == identity_id
        assert entry.before_state["primary"]["state"] == "retired"

    def test_reviving_merge_rolls_back_to_shell(self, manager, db_session, seed_identity):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        mapping_ids = snapshot(db_session, identity_id)["mapping_ids"]
        split = manager.split_identity(identity_id, mapping_ids)
        new_id = split.after_state["new"]["id"]
        shell = snapshot(db_session, identity_id)

        entry = manager.merge_identities(identity_id, new_id)
        manager.rollback_change(entry.id)

        assert snapshot(db_session, identity_id) == shell
        assert load_identity(db_session, new_id).is_active

    def test_shell_only_revives_for_its_own_split(self, manager, db_session, seed_identity):
        identity_id = seed_identity("Josh Allen", 17, 2022)
        other_id = seed_identity("Josh Allen", 18, 2023)
        manager.split_identity(identity_id, snapshot(db_session, identity_id)["mapping_ids"])

        with pytest.raises(InvalidOperation):
            manager.merge_identities(identity_id, other_id)
