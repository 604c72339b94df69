#!/usr/bin/env python3
"""
Resolve and curate cross-season player and team identities.

Create the tables:
    python scripts/resolve_identities.py init-db

Resolve every unmapped record in a league (players, then teams):
    python scripts/resolve_identities.py resolve league-123

Preview without writing anything:
    python scripts/resolve_identities.py resolve league-123 --dry-run --seasons 2022,2023

Work the review queue:
    python scripts/resolve_identities.py matches league-123 --status pending
    python scripts/resolve_identities.py approve 42 --actor alice
    python scripts/resolve_identities.py approve 42 --target 7 --actor alice
    python scripts/resolve_identities.py reject 43 --actor alice

Fix the graph by hand, and undo any audited change:
    python scripts/resolve_identities.py merge 7 9 --reason "same person"
    python scripts/resolve_identities.py split 7 --mappings 11,12
    python scripts/resolve_identities.py rollback 118
    python scripts/resolve_identities.py audit player 7

Every command prints JSON on stdout. Exit code is 0 on success, 1 when the
request was rejected, and 2 when a resolution run only partly succeeded.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add src to path so this script can be run directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rumbledore.config import get_settings
from rumbledore.db import create_session_factory, get_engine, init_db, session_scope
from rumbledore.db.models import IdentityAuditLog, IdentityMatch
from rumbledore.errors import IdentityError
from rumbledore.identity import (
    DatabaseStatisticsProvider,
    ResolutionOptions,
    create_identity_services,
)
from rumbledore.logging_config import configure_logging
from rumbledore.statuses import ENTITY_KINDS

logger = logging.getLogger("rumbledore.cli")


def _int_list(value: str) -> list[int]:
    try:
        return [int(x.strip()) for x in value.split(",") if x.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected comma-separated integers: {exc}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _entry_to_dict(entry: IdentityAuditLog) -> dict:
    return {
        "id": entry.id,
        "entity_kind": entry.entity_kind,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "reason": entry.reason,
        "actor": entry.actor,
        "reference_id": entry.reference_id,
        "performed_at": _iso(entry.performed_at),
    }


def _match_to_dict(match: IdentityMatch) -> dict:
    return {
        "id": match.id,
        "entity_kind": match.entity_kind,
        "scope_id": match.scope_id,
        "source_id": match.source_id,
        "season": match.season,
        "observed_name": match.observed_name,
        "candidate_identity_id": match.candidate_identity_id,
        "confidence": match.confidence,
        "action": match.action,
        "status": match.status,
        "factors": match.factors,
        "reasons": match.reasons,
        "reviewed_by": match.reviewed_by,
        "reviewed_at": _iso(match.reviewed_at),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Cross-season identity resolution for players and teams.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this invocation.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create the identity tables.")

    resolve = commands.add_parser("resolve", help="Resolve unmapped records in a scope.")
    resolve.add_argument("scope_id")
    resolve.add_argument("--entity-kind", choices=ENTITY_KINDS, default=None)
    resolve.add_argument("--seasons", type=_int_list, default=None,
                         help="Comma-separated seasons (default: all).")
    resolve.add_argument("--min-confidence", type=float, default=None)
    resolve.add_argument("--no-auto-approve", action="store_true",
                         help="Queue would-be automatic matches for review instead.")
    resolve.add_argument("--include-pending", action="store_true",
                         help="Re-score records that already have a pending match.")
    resolve.add_argument("--dry-run", action="store_true",
                         help="Score and report without writing to the database.")
    resolve.add_argument("--actor", default="system")

    matches = commands.add_parser("matches", help="List identity matches in a scope.")
    matches.add_argument("scope_id")
    matches.add_argument("--status", default=None)
    matches.add_argument("--entity-kind", choices=ENTITY_KINDS, default=None)

    approve = commands.add_parser("approve", help="Approve a pending match.")
    approve.add_argument("match_id", type=int)
    approve.add_argument("--target", type=int, default=None,
                         help="Map to this identity instead of the suggested one.")
    approve.add_argument("--actor", default="system")

    reject = commands.add_parser("reject", help="Reject a pending match.")
    reject.add_argument("match_id", type=int)
    reject.add_argument("--actor", default="system")

    merge = commands.add_parser("merge", help="Merge a secondary identity into a primary one.")
    merge.add_argument("primary_id", type=int)
    merge.add_argument("secondary_id", type=int)
    merge.add_argument("--reason", default=None)
    merge.add_argument("--actor", default="system")

    split = commands.add_parser("split", help="Move mappings off an identity into a new one.")
    split.add_argument("identity_id", type=int)
    split.add_argument("--mappings", type=_int_list, required=True,
                       help="Comma-separated mapping ids to move.")
    split.add_argument("--reason", default=None)
    split.add_argument("--actor", default="system")

    rollback = commands.add_parser("rollback", help="Undo an audited change.")
    rollback.add_argument("audit_entry_id", type=int)
    rollback.add_argument("--reason", default=None)
    rollback.add_argument("--actor", default="system")

    audit = commands.add_parser("audit", help="Show an identity's audit trail.")
    audit.add_argument("entity_kind", choices=ENTITY_KINDS)
    audit.add_argument("entity_id", type=int)

    return parser


def _run_command(args: argparse.Namespace, services) -> tuple[dict, int]:
    resolver = services.resolver

    if args.command == "resolve":
        options = ResolutionOptions(
            entity_kind=args.entity_kind,
            seasons=args.seasons,
            min_confidence=args.min_confidence,
            auto_approve=not args.no_auto_approve,
            skip_existing=not args.include_pending,
            dry_run=args.dry_run,
        )
        response = resolver.resolve_identities(args.scope_id, options, actor=args.actor)
        return response.to_dict(), (2 if response.errors else 0)

    if args.command == "matches":
        found = resolver.get_identity_matches(args.scope_id, args.status, args.entity_kind)
        return {"matches": [_match_to_dict(m) for m in found]}, 0

    if args.command == "approve":
        entry = resolver.approve_match(args.match_id, args.target, args.actor)
    elif args.command == "reject":
        entry = resolver.reject_match(args.match_id, args.actor)
    elif args.command == "merge":
        entry = resolver.merge_identities(args.primary_id, args.secondary_id, args.reason, args.actor)
    elif args.command == "split":
        entry = resolver.split_identity(args.identity_id, args.mappings, args.reason, args.actor)
    elif args.command == "rollback":
        entry = resolver.rollback_change(args.audit_entry_id, args.actor, args.reason)
    elif args.command == "audit":
        trail = services.audit.get_audit_trail(args.entity_kind, args.entity_id)
        return {"audit_trail": [_entry_to_dict(e) for e in trail]}, 0
    else:
        raise ValueError(f"Unknown command: {args.command}")

    return {"audit_entry": _entry_to_dict(entry)}, 0


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    engine = get_engine(args.database_url, settings)
    if args.command == "init-db":
        init_db(engine)
        print(json.dumps({"status": "ok"}))
        return 0

    factory = create_session_factory(engine)
    scope_id = getattr(args, "scope_id", None)
    payload: dict
    try:
        with session_scope(factory) as session:
            services = create_identity_services(
                session,
                DatabaseStatisticsProvider(factory, scope_id),
                settings=settings,
            )
            try:
                payload, code = _run_command(args, services)
            finally:
                services.close()
    except IdentityError as exc:
        logger.error("%s failed: %s", args.command, exc)
        payload = {"status": "error", "error": type(exc).__name__, "message": str(exc)}
        code = 1
    finally:
        engine.dispose()

    print(json.dumps(payload, indent=2, default=str))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
