"""Database layer for MailPilot.

This module provides SQLite database access with async operations.

Usage:
    from mailpilot.db import DatabaseStore, StagedStatus

    store = DatabaseStore("data/mailpilot.db")
    await store.initialize()

    expired = await store.list_expired_staged_actions(now, limit=100)
    await store.transition_staged_action(expired[0].id, StagedStatus.EXECUTED)
"""

from mailpilot.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from mailpilot.db.store import (
    ActionSpec,
    ActionType,
    AuditAction,
    AuditEntry,
    DatabaseStore,
    EmailEvent,
    EventType,
    EvidenceItem,
    FolderRouting,
    Mailbox,
    Pattern,
    PatternCondition,
    PatternStatus,
    PatternType,
    RecencyStats,
    Rule,
    SenderActivity,
    StagedAction,
    StagedStatus,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Enums
    "ActionType",
    "AuditAction",
    "EventType",
    "PatternStatus",
    "PatternType",
    "StagedStatus",
    # Dataclasses
    "ActionSpec",
    "AuditEntry",
    "EmailEvent",
    "EvidenceItem",
    "FolderRouting",
    "Mailbox",
    "Pattern",
    "PatternCondition",
    "RecencyStats",
    "Rule",
    "SenderActivity",
    "StagedAction",
]
