"""Shared vocabulary for identity resolution.

This module is the single source of truth for the string values stored in
the identity tables and returned by the services, so the ORM models, the
services and the CLI agree on spelling.
"""

from __future__ import annotations

from typing import Literal

EntityKind = Literal["player", "team"]
ENTITY_KINDS: tuple[str, ...] = ("player", "team")

# Ordered from least to most confident; determine_action relies on this order.
Action = Literal[
    "skip",
    "manual_review_low",
    "manual_review",
    "auto_approve",
    "auto_approve_high",
]
ACTIONS: tuple[str, ...] = (
    "skip",
    "manual_review_low",
    "manual_review",
    "auto_approve",
    "auto_approve_high",
)
AUTO_APPROVE_ACTIONS: frozenset[str] = frozenset({"auto_approve", "auto_approve_high"})
REVIEW_ACTIONS: frozenset[str] = frozenset({"manual_review", "manual_review_low"})

MatchStatus = Literal["pending", "approved", "rejected", "merged"]
MATCH_STATUSES: tuple[str, ...] = ("pending", "approved", "rejected", "merged")

AuditAction = Literal["create", "merge", "split", "approve", "reject", "rollback"]
AUDIT_ACTIONS: tuple[str, ...] = ("create", "merge", "split", "approve", "reject", "rollback")

MappingMethod = Literal["automatic", "fuzzy_match", "manual"]
MAPPING_METHODS: tuple[str, ...] = ("automatic", "fuzzy_match", "manual")

IdentityState = Literal["active", "retired"]

RunStatus = Literal[
    "started",
    "scoring",
    "applying",
    "completed",
    "partially_failed",
    "cancelled",
]


def validate_entity_kind(value: str) -> str:
    """Return the lowercase entity kind, raising ValueError for unknown kinds."""
    kind = (value or "").strip().lower()
    if kind not in ENTITY_KINDS:
        raise ValueError(f"Unknown entity kind: {value!r}")
    return kind
