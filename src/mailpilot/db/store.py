"""Database store with entities and async operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for MailPilot, plus the entity dataclasses and status enums the
rest of the package works with. It uses aiosqlite for async access.

Every status change goes through a conditional UPDATE (``WHERE status IN
...``) so concurrent workers coordinate through the database alone: the
losing side of a race sees ``False`` instead of overwriting the winner.

Usage:
    from mailpilot.db.store import DatabaseStore

    store = DatabaseStore("data/mailpilot.db")
    await store.initialize()

    senders = await store.aggregate_sender_activity(user_id, mailbox_id, since=cutoff)
    rescued = await store.transition_staged_action(staged_id, StagedStatus.RESCUED)
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import aiosqlite

from mailpilot.core.errors import DatabaseError, StateConflictError
from mailpilot.core.logging import get_logger
from mailpilot.db.models import init_database

logger = get_logger(__name__)

# Listing limits shared by all paginated queries
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


# =========================================================================
# Enumerations and transition tables
# =========================================================================


class EventType(StrEnum):
    ARRIVED = "arrived"
    DELETED = "deleted"
    MOVED = "moved"
    READ = "read"
    FLAGGED = "flagged"
    CATEGORIZED = "categorized"


class ActionType(StrEnum):
    DELETE = "delete"
    MOVE = "move"
    ARCHIVE = "archive"
    MARK_READ = "markRead"
    FLAG = "flag"
    CATEGORIZE = "categorize"


class PatternType(StrEnum):
    SENDER = "sender"
    FOLDER_ROUTING = "folder-routing"


class PatternStatus(StrEnum):
    DETECTED = "detected"
    SUGGESTED = "suggested"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        """Whether analysis runs may still refresh this pattern in place."""
        return self in OPEN_PATTERN_STATUSES

    def can_transition_to(self, target: PatternStatus) -> bool:
        return target in PATTERN_TRANSITIONS[self]


class StagedStatus(StrEnum):
    STAGED = "staged"
    RESCUED = "rescued"
    EXECUTED = "executed"
    EXPIRED = "expired"

    def can_transition_to(self, target: StagedStatus) -> bool:
        return target in STAGED_TRANSITIONS[self]


class AuditAction(StrEnum):
    PATTERN_APPROVED = "pattern_approved"
    PATTERN_REJECTED = "pattern_rejected"
    RULE_CREATED = "rule_created"
    RULE_EXECUTED = "rule_executed"
    EMAIL_STAGED = "email_staged"
    EMAIL_RESCUED = "email_rescued"
    EMAIL_EXECUTED = "email_executed"
    UNDO_ACTION = "undo_action"


OPEN_PATTERN_STATUSES = frozenset({PatternStatus.DETECTED, PatternStatus.SUGGESTED})

PATTERN_TRANSITIONS: dict[PatternStatus, frozenset[PatternStatus]] = {
    PatternStatus.DETECTED: frozenset(PatternStatus),
    PatternStatus.SUGGESTED: frozenset(PatternStatus),
    PatternStatus.APPROVED: frozenset(),
    PatternStatus.REJECTED: frozenset(),
    PatternStatus.EXPIRED: frozenset(),
}

STAGED_TRANSITIONS: dict[StagedStatus, frozenset[StagedStatus]] = {
    StagedStatus.STAGED: frozenset(
        {StagedStatus.RESCUED, StagedStatus.EXECUTED, StagedStatus.EXPIRED}
    ),
    StagedStatus.RESCUED: frozenset(),
    StagedStatus.EXECUTED: frozenset(),
    StagedStatus.EXPIRED: frozenset(),
}


def _sources_for(
    table: dict[Any, frozenset[Any]], target: StrEnum, entity: str
) -> list[str]:
    """Statuses allowed to move to ``target``; rejects unreachable targets."""
    sources = [str(status) for status, targets in table.items() if target in targets]
    if not sources:
        raise StateConflictError(f"No {entity} status can transition to '{target}'")
    return sources


# =========================================================================
# Timestamp helpers
# =========================================================================


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_db_timestamp(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO-8601 (sortable as text)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def new_id() -> str:
    return str(uuid.uuid4())


# =========================================================================
# Entities
# =========================================================================


@dataclass(frozen=True)
class ActionSpec:
    """A single mailbox action: what a pattern suggests, a rule runs, or a
    staged record will execute.

    Attributes:
        action_type: One of ActionType values (kept as str so unknown types
            from older records survive a round trip)
        to_folder: Destination folder ID for move actions
        category: Category name for categorize actions
        order: Execution order within a rule (lowest first, None last)
    """

    action_type: str
    to_folder: str | None = None
    category: str | None = None
    order: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action_type": self.action_type}
        if self.to_folder:
            data["to_folder"] = self.to_folder
        if self.category:
            data["category"] = self.category
        if self.order is not None:
            data["order"] = self.order
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionSpec:
        return cls(
            action_type=data["action_type"],
            to_folder=data.get("to_folder"),
            category=data.get("category"),
            order=data.get("order"),
        )


@dataclass(frozen=True)
class EvidenceItem:
    """One recent event supporting a pattern."""

    message_id: str | None
    timestamp: datetime
    action: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "timestamp": to_db_timestamp(self.timestamp),
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvidenceItem:
        return cls(
            message_id=data.get("message_id"),
            timestamp=from_db_timestamp(data["timestamp"]) or utcnow(),
            action=data["action"],
        )


@dataclass
class Mailbox:
    """Connected mailbox record."""

    id: str
    user_id: str
    email: str
    display_name: str | None = None
    is_connected: bool = True
    created_at: datetime | None = None


@dataclass
class EmailEvent:
    """Mailbox activity event.

    Events with automated_by_rule_id set were caused by MailPilot itself and
    are excluded from every aggregation.
    """

    user_id: str
    mailbox_id: str
    event_type: str
    timestamp: datetime
    message_id: str | None = None
    sender_email: str | None = None
    sender_domain: str | None = None
    from_folder: str | None = None
    to_folder: str | None = None
    automated_by_rule_id: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class PatternCondition:
    """What a pattern matches on."""

    sender_email: str
    sender_domain: str | None = None
    to_folder: str | None = None


@dataclass
class Pattern:
    """Detected behavioral pattern."""

    id: str
    user_id: str
    mailbox_id: str
    pattern_type: PatternType
    status: PatternStatus
    condition: PatternCondition
    suggested_action: ActionSpec
    confidence: int = 0
    sample_size: int = 0
    exception_count: int = 0
    evidence: list[EvidenceItem] = field(default_factory=list)
    rejected_at: datetime | None = None
    rejection_cooldown_until: datetime | None = None
    approved_at: datetime | None = None
    last_analyzed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StagedAction:
    """Destructive action parked behind the grace period."""

    id: str
    user_id: str
    mailbox_id: str
    rule_id: str | None
    message_id: str
    original_folder: str | None
    staged_at: datetime
    expires_at: datetime
    cleanup_at: datetime
    status: StagedStatus = StagedStatus.STAGED
    actions: list[ActionSpec] = field(default_factory=list)
    rescued_at: datetime | None = None
    executed_at: datetime | None = None


@dataclass
class AuditEntry:
    """Audit ledger entry."""

    id: str
    user_id: str
    mailbox_id: str | None
    action: str
    target_type: str | None
    target_id: str | None
    details: dict[str, Any]
    undoable: bool
    created_at: datetime
    undone_at: datetime | None = None
    undone_by: str | None = None


@dataclass
class Rule:
    """Automation rule (only the parts this package reads and writes)."""

    id: str
    user_id: str
    mailbox_id: str
    name: str
    source_pattern_id: str | None = None
    is_enabled: bool = True
    priority: int = 0
    conditions: dict[str, Any] = field(default_factory=dict)
    actions: list[ActionSpec] = field(default_factory=list)
    total_executions: int = 0
    last_executed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class SenderActivity:
    """Per-sender event counts over the observation window."""

    sender_email: str
    sender_domain: str | None
    total_events: int
    arrived_count: int
    deleted_count: int
    moved_count: int
    read_count: int
    first_seen: datetime
    last_seen: datetime
    evidence: list[EvidenceItem] = field(default_factory=list)


@dataclass
class FolderRouting:
    """Moves from one sender to one destination folder."""

    sender_email: str
    to_folder: str
    move_count: int
    first_seen: datetime
    last_seen: datetime
    evidence: list[EvidenceItem] = field(default_factory=list)


@dataclass(frozen=True)
class RecencyStats:
    """Event counts for one sender over the trailing recency window."""

    action_count: int = 0
    total_events: int = 0


# =========================================================================
# Row conversion
# =========================================================================


def _json_or(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


def _row_to_mailbox(row: aiosqlite.Row) -> Mailbox:
    return Mailbox(
        id=row["id"],
        user_id=row["user_id"],
        email=row["email"],
        display_name=row["display_name"],
        is_connected=bool(row["is_connected"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def _row_to_pattern(row: aiosqlite.Row) -> Pattern:
    return Pattern(
        id=row["id"],
        user_id=row["user_id"],
        mailbox_id=row["mailbox_id"],
        pattern_type=PatternType(row["pattern_type"]),
        status=PatternStatus(row["status"]),
        condition=PatternCondition(
            sender_email=row["sender_email"],
            sender_domain=row["sender_domain"],
            to_folder=row["condition_to_folder"] or None,
        ),
        suggested_action=ActionSpec(
            action_type=row["action_type"],
            to_folder=row["action_to_folder"],
            category=row["action_category"],
        ),
        confidence=row["confidence"],
        sample_size=row["sample_size"],
        exception_count=row["exception_count"],
        evidence=[EvidenceItem.from_dict(e) for e in _json_or(row["evidence_json"], [])],
        rejected_at=from_db_timestamp(row["rejected_at"]),
        rejection_cooldown_until=from_db_timestamp(row["rejection_cooldown_until"]),
        approved_at=from_db_timestamp(row["approved_at"]),
        last_analyzed_at=from_db_timestamp(row["last_analyzed_at"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _row_to_staged(row: aiosqlite.Row) -> StagedAction:
    return StagedAction(
        id=row["id"],
        user_id=row["user_id"],
        mailbox_id=row["mailbox_id"],
        rule_id=row["rule_id"],
        message_id=row["message_id"],
        original_folder=row["original_folder"],
        staged_at=from_db_timestamp(row["staged_at"]),
        expires_at=from_db_timestamp(row["expires_at"]),
        cleanup_at=from_db_timestamp(row["cleanup_at"]),
        status=StagedStatus(row["status"]),
        actions=[ActionSpec.from_dict(a) for a in _json_or(row["actions_json"], [])],
        rescued_at=from_db_timestamp(row["rescued_at"]),
        executed_at=from_db_timestamp(row["executed_at"]),
    )


def _row_to_audit(row: aiosqlite.Row) -> AuditEntry:
    return AuditEntry(
        id=row["id"],
        user_id=row["user_id"],
        mailbox_id=row["mailbox_id"],
        action=row["action"],
        target_type=row["target_type"],
        target_id=row["target_id"],
        details=_json_or(row["details_json"], {}),
        undoable=bool(row["undoable"]),
        created_at=from_db_timestamp(row["created_at"]),
        undone_at=from_db_timestamp(row["undone_at"]),
        undone_by=row["undone_by"],
    )


def _row_to_rule(row: aiosqlite.Row) -> Rule:
    return Rule(
        id=row["id"],
        user_id=row["user_id"],
        mailbox_id=row["mailbox_id"],
        name=row["name"],
        source_pattern_id=row["source_pattern_id"],
        is_enabled=bool(row["is_enabled"]),
        priority=row["priority"],
        conditions=_json_or(row["conditions_json"], {}),
        actions=[ActionSpec.from_dict(a) for a in _json_or(row["actions_json"], [])],
        total_executions=row["total_executions"],
        last_executed_at=from_db_timestamp(row["last_executed_at"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def _row_to_evidence(row: aiosqlite.Row) -> EvidenceItem:
    return EvidenceItem(
        message_id=row["message_id"],
        timestamp=from_db_timestamp(row["timestamp"]),
        action=row["event_type"],
    )


def _clamp_page(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


def _user_filter(user_id: str, **filters: Any) -> tuple[str, list[Any]]:
    """Build a user-scoped WHERE clause, skipping empty filters.

    A list or tuple value becomes an ``IN`` clause; anything else is an
    equality match.
    """
    clauses = ["user_id = ?"]
    params: list[Any] = [user_id]
    for column, value in filters.items():
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            clauses.append(f"{column} IN ({', '.join('?' for _ in value)})")
            params += [str(v) for v in value]
        else:
            clauses.append(f"{column} = ?")
            params.append(str(value))
    return " AND ".join(clauses), params


# Non-automated events of one mailbox since a cutoff
_LEARNABLE_EVENTS = (
    "user_id = ? AND mailbox_id = ? AND timestamp >= ? "
    "AND automated_by_rule_id IS NULL AND sender_email IS NOT NULL"
)


class DatabaseStore:
    """Database store for all MailPilot data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        - busy_timeout: 10s so sweep workers and request handlers can overlap
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    async def _list_page(
        self,
        table: str,
        where: str,
        params: list[Any],
        order_by: str,
        page: int,
        limit: int,
        to_record: Callable[[aiosqlite.Row], Any],
    ) -> tuple[list[Any], int]:
        """Fetch one page of rows plus the total count matching ``where``.

        Raises aiosqlite.Error; callers wrap it with their own context.
        """
        page, limit = _clamp_page(page, limit)
        async with self._db() as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params)
            total = (await cursor.fetchone())[0]
            cursor = await db.execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY {order_by} LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            )
            return [to_record(row) for row in await cursor.fetchall()], total

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep the WAL file bounded (end of each sweep)."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def save_mailbox(self, mailbox: Mailbox) -> None:
        """Insert or update a mailbox record."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO mailboxes (id, user_id, email, display_name, is_connected, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        email = excluded.email,
                        display_name = excluded.display_name,
                        is_connected = excluded.is_connected
                    """,
                    (
                        mailbox.id,
                        mailbox.user_id,
                        mailbox.email,
                        mailbox.display_name,
                        1 if mailbox.is_connected else 0,
                        to_db_timestamp(mailbox.created_at or utcnow()),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to save mailbox", mailbox_id=mailbox.id, error=str(e))
            raise DatabaseError(f"Failed to save mailbox {mailbox.id}: {e}") from e

    async def get_mailbox(self, mailbox_id: str) -> Mailbox | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM mailboxes WHERE id = ?", (mailbox_id,))
                row = await cursor.fetchone()
                return _row_to_mailbox(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get mailbox {mailbox_id}: {e}") from e

    async def list_mailboxes(
        self, user_id: str | None = None, connected_only: bool = True
    ) -> list[Mailbox]:
        """List mailboxes, optionally for one user."""
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if connected_only:
            clauses.append("is_connected = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT * FROM mailboxes {where} ORDER BY created_at", params
                )
                return [_row_to_mailbox(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list mailboxes: {e}") from e

    # =========================================================================
    # Event Operations
    # =========================================================================

    async def record_events(self, events: Iterable[EmailEvent]) -> int:
        """Append activity events in a single transaction.

        Returns:
            Number of events written
        """
        rows = [
            (
                e.user_id,
                e.mailbox_id,
                e.message_id,
                str(e.event_type),
                e.sender_email.lower() if e.sender_email else None,
                e.sender_domain.lower() if e.sender_domain else None,
                e.from_folder,
                e.to_folder,
                to_db_timestamp(e.timestamp),
                e.automated_by_rule_id,
            )
            for e in events
        ]
        if not rows:
            return 0

        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO email_events (
                        user_id, mailbox_id, message_id, event_type, sender_email,
                        sender_domain, from_folder, to_folder, timestamp, automated_by_rule_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to record events", count=len(rows), error=str(e))
            raise DatabaseError(f"Failed to record {len(rows)} events: {e}") from e

        return len(rows)

    async def record_event(self, event: EmailEvent) -> None:
        await self.record_events([event])

    async def aggregate_sender_activity(
        self,
        user_id: str,
        mailbox_id: str,
        since: datetime,
        min_events: int = 10,
        max_evidence: int = 10,
    ) -> list[SenderActivity]:
        """Group learnable events by sender and count each event type.

        Only senders with at least ``min_events`` events since the cutoff are
        returned. Each result carries the ``max_evidence`` most recent events.
        """
        since_ts = to_db_timestamp(since)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT sender_email, sender_domain,
                        COUNT(*) AS total_events,
                        SUM(CASE WHEN event_type = 'arrived' THEN 1 ELSE 0 END) AS arrived_count,
                        SUM(CASE WHEN event_type = 'deleted' THEN 1 ELSE 0 END) AS deleted_count,
                        SUM(CASE WHEN event_type = 'moved' THEN 1 ELSE 0 END) AS moved_count,
                        SUM(CASE WHEN event_type = 'read' THEN 1 ELSE 0 END) AS read_count,
                        MIN(timestamp) AS first_seen,
                        MAX(timestamp) AS last_seen
                    FROM email_events
                    WHERE {_LEARNABLE_EVENTS}
                    GROUP BY sender_email, sender_domain
                    HAVING COUNT(*) >= ?
                    ORDER BY total_events DESC
                    """,
                    (user_id, mailbox_id, since_ts, min_events),
                )
                groups = await cursor.fetchall()

                results: list[SenderActivity] = []
                for row in groups:
                    evidence_cursor = await db.execute(
                        f"""
                        SELECT message_id, timestamp, event_type FROM email_events
                        WHERE {_LEARNABLE_EVENTS} AND sender_email = ? AND sender_domain IS ?
                        ORDER BY timestamp DESC
                        LIMIT ?
                        """,
                        (
                            user_id,
                            mailbox_id,
                            since_ts,
                            row["sender_email"],
                            row["sender_domain"],
                            max_evidence,
                        ),
                    )
                    results.append(
                        SenderActivity(
                            sender_email=row["sender_email"],
                            sender_domain=row["sender_domain"],
                            total_events=row["total_events"],
                            arrived_count=row["arrived_count"] or 0,
                            deleted_count=row["deleted_count"] or 0,
                            moved_count=row["moved_count"] or 0,
                            read_count=row["read_count"] or 0,
                            first_seen=from_db_timestamp(row["first_seen"]),
                            last_seen=from_db_timestamp(row["last_seen"]),
                            evidence=[
                                _row_to_evidence(e) for e in await evidence_cursor.fetchall()
                            ],
                        )
                    )
                return results
        except aiosqlite.Error as e:
            logger.error("Sender aggregation failed", mailbox_id=mailbox_id, error=str(e))
            raise DatabaseError(f"Failed to aggregate sender activity for {mailbox_id}: {e}") from e

    async def aggregate_folder_routing(
        self,
        user_id: str,
        mailbox_id: str,
        since: datetime,
        min_moves: int = 5,
        max_evidence: int = 10,
    ) -> list[FolderRouting]:
        """Group learnable ``moved`` events by (sender, destination folder)."""
        since_ts = to_db_timestamp(since)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT sender_email, to_folder,
                        COUNT(*) AS move_count,
                        MIN(timestamp) AS first_seen,
                        MAX(timestamp) AS last_seen
                    FROM email_events
                    WHERE {_LEARNABLE_EVENTS}
                        AND event_type = 'moved' AND to_folder IS NOT NULL
                    GROUP BY sender_email, to_folder
                    HAVING COUNT(*) >= ?
                    ORDER BY move_count DESC, last_seen DESC
                    """,
                    (user_id, mailbox_id, since_ts, min_moves),
                )
                groups = await cursor.fetchall()

                results: list[FolderRouting] = []
                for row in groups:
                    evidence_cursor = await db.execute(
                        f"""
                        SELECT message_id, timestamp, event_type FROM email_events
                        WHERE {_LEARNABLE_EVENTS}
                            AND event_type = 'moved' AND sender_email = ? AND to_folder = ?
                        ORDER BY timestamp DESC
                        LIMIT ?
                        """,
                        (
                            user_id,
                            mailbox_id,
                            since_ts,
                            row["sender_email"],
                            row["to_folder"],
                            max_evidence,
                        ),
                    )
                    results.append(
                        FolderRouting(
                            sender_email=row["sender_email"],
                            to_folder=row["to_folder"],
                            move_count=row["move_count"],
                            first_seen=from_db_timestamp(row["first_seen"]),
                            last_seen=from_db_timestamp(row["last_seen"]),
                            evidence=[
                                _row_to_evidence(e) for e in await evidence_cursor.fetchall()
                            ],
                        )
                    )
                return results
        except aiosqlite.Error as e:
            logger.error("Folder routing aggregation failed", mailbox_id=mailbox_id, error=str(e))
            raise DatabaseError(f"Failed to aggregate folder routing for {mailbox_id}: {e}") from e

    async def get_recency_stats(
        self,
        user_id: str,
        mailbox_id: str,
        sender_email: str,
        event_type: str,
        since: datetime,
    ) -> RecencyStats:
        """Count all learnable events and ``event_type`` events for a sender since a cutoff."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT COUNT(*) AS total_events,
                        COALESCE(SUM(CASE WHEN event_type = ? THEN 1 ELSE 0 END), 0) AS action_count
                    FROM email_events
                    WHERE {_LEARNABLE_EVENTS} AND sender_email = ?
                    """,
                    (str(event_type), user_id, mailbox_id, to_db_timestamp(since), sender_email),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get recency stats for {sender_email}: {e}") from e

        if row is None:
            return RecencyStats()
        return RecencyStats(action_count=row["action_count"], total_events=row["total_events"])

    async def count_sender_events(
        self,
        user_id: str,
        mailbox_id: str,
        sender_email: str,
        event_type: str,
    ) -> int:
        """Count all learnable events of one type from a sender, with no time window."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM email_events
                    WHERE user_id = ? AND mailbox_id = ? AND sender_email = ?
                        AND event_type = ? AND automated_by_rule_id IS NULL
                    """,
                    (user_id, mailbox_id, sender_email, str(event_type)),
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count events for {sender_email}: {e}") from e

    # =========================================================================
    # Pattern Operations
    # =========================================================================

    async def create_pattern(self, pattern: Pattern) -> bool:
        """Insert a new pattern.

        Returns:
            False if an open pattern for the same tuple already exists
            (another analysis run created it first), True otherwise
        """
        now = to_db_timestamp(utcnow())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO patterns (
                        id, user_id, mailbox_id, pattern_type, status, confidence,
                        sample_size, exception_count, sender_email, sender_domain,
                        condition_to_folder, action_type, action_to_folder, action_category,
                        evidence_json, last_analyzed_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pattern.id,
                        pattern.user_id,
                        pattern.mailbox_id,
                        str(pattern.pattern_type),
                        str(pattern.status),
                        pattern.confidence,
                        pattern.sample_size,
                        pattern.exception_count,
                        pattern.condition.sender_email,
                        pattern.condition.sender_domain,
                        pattern.condition.to_folder or "",
                        pattern.suggested_action.action_type,
                        pattern.suggested_action.to_folder,
                        pattern.suggested_action.category,
                        json.dumps([e.to_dict() for e in pattern.evidence]),
                        to_db_timestamp(pattern.last_analyzed_at),
                        now,
                        now,
                    ),
                )
                await db.commit()
                return True
        except aiosqlite.IntegrityError:
            logger.info(
                "pattern_insert_lost_race",
                sender=pattern.condition.sender_email,
                action_type=pattern.suggested_action.action_type,
            )
            return False
        except aiosqlite.Error as e:
            logger.error("Failed to create pattern", pattern_id=pattern.id, error=str(e))
            raise DatabaseError(f"Failed to create pattern {pattern.id}: {e}") from e

    async def get_pattern(self, pattern_id: str, user_id: str | None = None) -> Pattern | None:
        """Get a pattern by ID, optionally scoped to its owner."""
        query = "SELECT * FROM patterns WHERE id = ?"
        params: list[Any] = [pattern_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return _row_to_pattern(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get pattern {pattern_id}: {e}") from e

    async def find_pattern(
        self,
        user_id: str,
        mailbox_id: str,
        pattern_type: PatternType,
        sender_email: str,
        action_type: str,
        statuses: Iterable[PatternStatus],
        cooldown_active_at: datetime | None = None,
    ) -> Pattern | None:
        """Find a pattern for a tuple in one of the given statuses.

        Args:
            cooldown_active_at: If given, only match patterns whose rejection
                cooldown is still running at this time
        """
        status_list = [str(s) for s in statuses]
        placeholders = ", ".join("?" for _ in status_list)
        query = f"""
            SELECT * FROM patterns
            WHERE user_id = ? AND mailbox_id = ? AND pattern_type = ? AND sender_email = ?
                AND action_type = ? AND status IN ({placeholders})
        """
        params: list[Any] = [
            user_id,
            mailbox_id,
            str(pattern_type),
            sender_email,
            action_type,
            *status_list,
        ]
        if cooldown_active_at is not None:
            query += " AND rejection_cooldown_until > ?"
            params.append(to_db_timestamp(cooldown_active_at))
        query += " ORDER BY updated_at DESC LIMIT 1"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return _row_to_pattern(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to find pattern for {sender_email}: {e}") from e

    async def refresh_pattern(
        self,
        pattern_id: str,
        status: PatternStatus,
        confidence: int,
        sample_size: int,
        exception_count: int,
        evidence: list[EvidenceItem],
        analyzed_at: datetime,
        to_folder: str | None = None,
    ) -> bool:
        """Update analysis results on an open pattern.

        `to_folder` moves a routing pattern to its current destination.

        Returns:
            False if the pattern left the open statuses in the meantime
            (approved or rejected by the user while analysis was running)
        """
        if not status.is_open:
            raise StateConflictError(
                f"Analysis may only set open statuses, not '{status}'", current_status=status
            )
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE patterns SET
                        status = ?, confidence = ?, sample_size = ?, exception_count = ?,
                        evidence_json = ?, last_analyzed_at = ?, updated_at = ?,
                        condition_to_folder = COALESCE(?, condition_to_folder),
                        action_to_folder = COALESCE(?, action_to_folder)
                    WHERE id = ? AND status IN ('detected', 'suggested')
                    """,
                    (
                        str(status),
                        confidence,
                        sample_size,
                        exception_count,
                        json.dumps([e.to_dict() for e in evidence]),
                        to_db_timestamp(analyzed_at),
                        to_db_timestamp(utcnow()),
                        to_folder,
                        to_folder,
                        pattern_id,
                    ),
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("Failed to refresh pattern", pattern_id=pattern_id, error=str(e))
            raise DatabaseError(f"Failed to refresh pattern {pattern_id}: {e}") from e

    async def transition_pattern(
        self,
        pattern_id: str,
        user_id: str,
        target: PatternStatus,
        now: datetime,
        cooldown_until: datetime | None = None,
        action: ActionSpec | None = None,
    ) -> bool:
        """Move a pattern to ``target`` if its current status allows it.

        Approval stamps approved_at (and optionally replaces the suggested
        action); rejection stamps rejected_at and the cooldown.

        Returns:
            True if the row was updated
        """
        sources = _sources_for(PATTERN_TRANSITIONS, target, "pattern")
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [str(target), to_db_timestamp(now)]

        if target == PatternStatus.APPROVED:
            assignments.append("approved_at = ?")
            params.append(to_db_timestamp(now))
        elif target == PatternStatus.REJECTED:
            assignments += ["rejected_at = ?", "rejection_cooldown_until = ?"]
            params += [to_db_timestamp(now), to_db_timestamp(cooldown_until)]

        if action is not None:
            assignments += ["action_type = ?", "action_to_folder = ?", "action_category = ?"]
            params += [action.action_type, action.to_folder, action.category]

        placeholders = ", ".join("?" for _ in sources)
        params += [pattern_id, user_id, *sources]

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE patterns SET {", ".join(assignments)}
                    WHERE id = ? AND user_id = ? AND status IN ({placeholders})
                    """,
                    params,
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("Failed to transition pattern", pattern_id=pattern_id, error=str(e))
            raise DatabaseError(f"Failed to update pattern {pattern_id}: {e}") from e

    async def list_patterns(
        self,
        user_id: str,
        mailbox_id: str | None = None,
        statuses: Iterable[PatternStatus] | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[Pattern], int]:
        """List a user's patterns, highest confidence first.

        Returns:
            Tuple of (patterns on this page, total matching count)
        """
        where, params = _user_filter(
            user_id, mailbox_id=mailbox_id, status=list(statuses or [])
        )
        try:
            return await self._list_page(
                "patterns",
                where,
                params,
                "confidence DESC, created_at DESC",
                page,
                limit,
                _row_to_pattern,
            )
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list patterns for user {user_id}: {e}") from e

    # =========================================================================
    # Staged Action Operations
    # =========================================================================

    async def create_staged_action(self, staged: StagedAction) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO staged_actions (
                        id, user_id, mailbox_id, rule_id, message_id, original_folder,
                        staged_at, expires_at, cleanup_at, status, actions_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        staged.id,
                        staged.user_id,
                        staged.mailbox_id,
                        staged.rule_id,
                        staged.message_id,
                        staged.original_folder,
                        to_db_timestamp(staged.staged_at),
                        to_db_timestamp(staged.expires_at),
                        to_db_timestamp(staged.cleanup_at),
                        str(staged.status),
                        json.dumps([a.to_dict() for a in staged.actions]),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to create staged action", staged_action_id=staged.id, error=str(e))
            raise DatabaseError(f"Failed to create staged action {staged.id}: {e}") from e

    async def get_staged_action(
        self, staged_id: str, user_id: str | None = None
    ) -> StagedAction | None:
        query = "SELECT * FROM staged_actions WHERE id = ?"
        params: list[Any] = [staged_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return _row_to_staged(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get staged action {staged_id}: {e}") from e

    async def transition_staged_action(
        self,
        staged_id: str,
        target: StagedStatus,
        now: datetime | None = None,
        user_id: str | None = None,
    ) -> bool:
        """Atomically move a staged action out of ``staged``.

        Returns:
            True if this call performed the transition, False if the record
            was no longer in a status that allows it (or doesn't exist)
        """
        sources = _sources_for(STAGED_TRANSITIONS, target, "staged action")
        now = now or utcnow()
        assignments = ["status = ?"]
        params: list[Any] = [str(target)]
        if target == StagedStatus.RESCUED:
            assignments.append("rescued_at = ?")
            params.append(to_db_timestamp(now))
        elif target == StagedStatus.EXECUTED:
            assignments.append("executed_at = ?")
            params.append(to_db_timestamp(now))

        query = (
            f"UPDATE staged_actions SET {', '.join(assignments)} "
            f"WHERE id = ? AND status IN ({', '.join('?' for _ in sources)})"
        )
        params += [staged_id, *sources]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("Failed to update staged action", staged_action_id=staged_id, error=str(e))
            raise DatabaseError(f"Failed to update staged action {staged_id}: {e}") from e

    async def rescue_staged_actions(
        self, staged_ids: list[str], user_id: str, now: datetime | None = None
    ) -> list[StagedAction]:
        """Rescue every still-staged record in ``staged_ids`` owned by the user.

        Returns:
            Only the records this call actually transitioned
        """
        stamp = to_db_timestamp(now or utcnow())
        rescued_ids: list[str] = []
        try:
            async with self._db() as db:
                for staged_id in dict.fromkeys(staged_ids):
                    cursor = await db.execute(
                        """
                        UPDATE staged_actions SET status = 'rescued', rescued_at = ?
                        WHERE id = ? AND user_id = ? AND status = 'staged'
                        """,
                        (stamp, staged_id, user_id),
                    )
                    if cursor.rowcount == 1:
                        rescued_ids.append(staged_id)
                await db.commit()

                if not rescued_ids:
                    return []
                cursor = await db.execute(
                    f"SELECT * FROM staged_actions WHERE id IN ({', '.join('?' for _ in rescued_ids)})",
                    rescued_ids,
                )
                return [_row_to_staged(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("Batch rescue failed", count=len(staged_ids), error=str(e))
            raise DatabaseError(f"Failed to rescue staged actions: {e}") from e

    async def list_expired_staged_actions(
        self, now: datetime, limit: int = 100
    ) -> list[StagedAction]:
        """Staged records whose grace period has passed, oldest expiry first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM staged_actions
                    WHERE status = 'staged' AND expires_at <= ?
                    ORDER BY expires_at
                    LIMIT ?
                    """,
                    (to_db_timestamp(now), limit),
                )
                return [_row_to_staged(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list expired staged actions: {e}") from e

    async def list_staged_actions(
        self,
        user_id: str,
        mailbox_id: str | None = None,
        status: StagedStatus = StagedStatus.STAGED,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[StagedAction], int]:
        """List a user's staged actions, soonest expiry first."""
        where, params = _user_filter(user_id, status=status, mailbox_id=mailbox_id)
        try:
            return await self._list_page(
                "staged_actions", where, params, "expires_at", page, limit, _row_to_staged
            )
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list staged actions for user {user_id}: {e}") from e

    async def get_staged_actions(self, staged_ids: list[str], user_id: str) -> list[StagedAction]:
        """Fetch the given records owned by the user, in any status."""
        if not staged_ids:
            return []
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM staged_actions
                    WHERE user_id = ? AND id IN ({', '.join('?' for _ in staged_ids)})
                    """,
                    [user_id, *staged_ids],
                )
                return [_row_to_staged(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get staged actions: {e}") from e

    async def count_staged_actions(self, user_id: str, mailbox_id: str | None = None) -> int:
        """Count records still waiting out their grace period."""
        where, params = _user_filter(
            user_id, status=StagedStatus.STAGED, mailbox_id=mailbox_id
        )
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT COUNT(*) FROM staged_actions WHERE {where}", params
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count staged actions: {e}") from e

    # =========================================================================
    # Audit Log Operations
    # =========================================================================

    async def log_audit(
        self,
        user_id: str,
        action: AuditAction | str,
        mailbox_id: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
        undoable: bool = False,
        created_at: datetime | None = None,
    ) -> AuditEntry:
        """Append an entry to the audit ledger."""
        entry = AuditEntry(
            id=new_id(),
            user_id=user_id,
            mailbox_id=mailbox_id,
            action=str(action),
            target_type=target_type,
            target_id=target_id,
            details=details or {},
            undoable=undoable,
            created_at=created_at or utcnow(),
        )
        await self.log_audit_entries([entry])
        return entry

    async def log_audit_entries(self, entries: list[AuditEntry]) -> None:
        """Append several audit entries in one transaction."""
        if not entries:
            return
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO audit_log (
                        id, user_id, mailbox_id, action, target_type, target_id,
                        details_json, undoable, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            e.id,
                            e.user_id,
                            e.mailbox_id,
                            e.action,
                            e.target_type,
                            e.target_id,
                            json.dumps(e.details, default=str),
                            1 if e.undoable else 0,
                            to_db_timestamp(e.created_at),
                        )
                        for e in entries
                    ],
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to write audit entries", count=len(entries), error=str(e))
            raise DatabaseError(f"Failed to write {len(entries)} audit entries: {e}") from e

    async def get_audit_entry(self, entry_id: str, user_id: str | None = None) -> AuditEntry | None:
        query = "SELECT * FROM audit_log WHERE id = ?"
        params: list[Any] = [entry_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return _row_to_audit(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get audit entry {entry_id}: {e}") from e

    async def mark_audit_undone(
        self,
        entry_id: str,
        undone_by: str,
        undone_at: datetime,
        details: dict[str, Any],
    ) -> bool:
        """Stamp undone_at/undone_by exactly once.

        Returns:
            False if the entry was already undone
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE audit_log SET undone_at = ?, undone_by = ?, details_json = ?
                    WHERE id = ? AND undone_at IS NULL
                    """,
                    (
                        to_db_timestamp(undone_at),
                        undone_by,
                        json.dumps(details, default=str),
                        entry_id,
                    ),
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("Failed to mark audit entry undone", audit_entry_id=entry_id, error=str(e))
            raise DatabaseError(f"Failed to mark audit entry {entry_id} undone: {e}") from e

    async def list_audit_entries(
        self,
        user_id: str,
        mailbox_id: str | None = None,
        action: str | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[AuditEntry], int]:
        """List a user's audit entries, newest first."""
        where, params = _user_filter(user_id, mailbox_id=mailbox_id, action=action)
        try:
            return await self._list_page(
                "audit_log", where, params, "created_at DESC", page, limit, _row_to_audit
            )
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list audit entries for user {user_id}: {e}") from e

    # =========================================================================
    # Rule Operations
    # =========================================================================

    async def create_rule(self, rule: Rule) -> bool:
        """Insert a rule.

        Returns:
            False if a rule already exists for the same source pattern
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO rules (
                        id, user_id, mailbox_id, name, source_pattern_id, is_enabled,
                        priority, conditions_json, actions_json, total_executions, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.id,
                        rule.user_id,
                        rule.mailbox_id,
                        rule.name,
                        rule.source_pattern_id,
                        1 if rule.is_enabled else 0,
                        rule.priority,
                        json.dumps(rule.conditions),
                        json.dumps([a.to_dict() for a in rule.actions]),
                        rule.total_executions,
                        to_db_timestamp(rule.created_at or utcnow()),
                    ),
                )
                await db.commit()
                return True
        except aiosqlite.IntegrityError:
            return False
        except aiosqlite.Error as e:
            logger.error("Failed to create rule", rule_id=rule.id, error=str(e))
            raise DatabaseError(f"Failed to create rule {rule.id}: {e}") from e

    async def get_rule(self, rule_id: str) -> Rule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM rules WHERE id = ?", (rule_id,))
                row = await cursor.fetchone()
                return _row_to_rule(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get rule {rule_id}: {e}") from e

    async def get_rule_by_source_pattern(self, pattern_id: str) -> Rule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM rules WHERE source_pattern_id = ?", (pattern_id,)
                )
                row = await cursor.fetchone()
                return _row_to_rule(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get rule for pattern {pattern_id}: {e}") from e

    async def get_max_rule_priority(self, user_id: str, mailbox_id: str) -> int | None:
        """Highest rule priority in a mailbox, or None if it has no rules."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT MAX(priority) FROM rules WHERE user_id = ? AND mailbox_id = ?",
                    (user_id, mailbox_id),
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to read rule priorities: {e}") from e

    async def record_rule_execution(self, rule_id: str, executed_at: datetime) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE rules SET total_executions = total_executions + 1, last_executed_at = ?
                    WHERE id = ?
                    """,
                    (to_db_timestamp(executed_at), rule_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to record rule execution", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to record execution for rule {rule_id}: {e}") from e
