"""
End-to-end tests for the resolve_identities command line.
"""

import json
import logging

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from rumbledore.db.models import SourceRecord
from scripts.resolve_identities import main


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'identity.db'}"


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def run(capsys, database_url, *argv):
    code = main(["--database-url", database_url, *argv])
    return code, json.loads(capsys.readouterr().out)


def seed_records(database_url):
    engine = create_engine(database_url)
    with Session(engine) as session:
        for season, total in ((2022, 400.0), (2023, 390.0)):
            session.add(SourceRecord(
                entity_kind="player", scope_id="league-1", source_id=101, season=season,
                name="Patrick Mahomes", position="QB", affiliation="KC",
                games_played=17, total_points=total,
            ))
        session.commit()
    engine.dispose()


def test_resolve_audit_and_rollback(capsys, database_url):
    code, payload = run(capsys, database_url, "init-db")
    assert code == 0
    assert payload == {"status": "ok"}
    seed_records(database_url)

    code, payload = run(capsys, database_url, "resolve", "league-1", "--entity-kind", "player")
    assert code == 0
    assert payload["status"] == "completed"
    assert payload["created"] == 1
    assert payload["auto_matched"] == 1

    code, payload = run(capsys, database_url, "audit", "player", "1")
    assert code == 0
    actions = [entry["action"] for entry in payload["audit_trail"]]
    assert actions[:2] == ["create", "approve"]
    approve_id = payload["audit_trail"][1]["id"]

    code, payload = run(capsys, database_url, "rollback", str(approve_id), "--actor", "alice")
    assert code == 0
    assert payload["audit_entry"]["action"] == "rollback"
    assert payload["audit_entry"]["actor"] == "alice"

    code, payload = run(capsys, database_url, "rollback", str(approve_id))
    assert code == 1
    assert payload["status"] == "error"
    assert payload["error"] == "InvalidOperation"


def test_dry_run_leaves_nothing_behind(capsys, database_url):
    run(capsys, database_url, "init-db")
    seed_records(database_url)

    code, payload = run(capsys, database_url, "resolve", "league-1", "--dry-run")
    assert code == 0
    assert payload["total_processed"] == 2

    code, payload = run(capsys, database_url, "matches", "league-1")
    assert code == 0
    assert payload == {"matches": []}

    code, payload = run(capsys, database_url, "audit", "player", "1")
    assert payload == {"audit_trail": []}


def test_unknown_match(capsys, database_url):
    run(capsys, database_url, "init-db")
    code, payload = run(capsys, database_url, "approve", "42")
    assert code == 1
    assert payload["error"] == "NotFound"
