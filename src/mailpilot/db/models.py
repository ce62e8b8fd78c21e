"""SQLite database schema and initialization for MailPilot.

Tables:
- mailboxes: Connected mailboxes and the user that owns them
- email_events: Append-only mailbox activity log (pattern engine input)
- patterns: Detected behavioral patterns and their review state
- staged_actions: Destructive actions parked behind the grace period
- audit_log: Append-only ledger of state-changing actions (undo source)
- rules: Automation rules converted from approved patterns

Usage:
    from mailpilot.db.models import init_database

    await init_database("data/mailpilot.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailpilot.core.errors import DatabaseError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "mailboxes",
    "email_events",
    "patterns",
    "staged_actions",
    "audit_log",
    "rules",
)

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS mailboxes (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    email TEXT NOT NULL,                    -- Graph addressing key (/users/{email})
    display_name TEXT,
    is_connected INTEGER DEFAULT 1,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_mailboxes_user ON mailboxes(user_id, is_connected);

-- Written by the ingestion pipeline; read-only to the pattern engine
CREATE TABLE IF NOT EXISTS email_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    mailbox_id TEXT NOT NULL,
    message_id TEXT,
    event_type TEXT NOT NULL,               -- 'arrived', 'deleted', 'moved', 'read',
                                            -- 'flagged', 'categorized'
    sender_email TEXT,
    sender_domain TEXT,
    from_folder TEXT,
    to_folder TEXT,
    timestamp DATETIME NOT NULL,
    automated_by_rule_id TEXT               -- Set when caused by automation; never learned from
);

CREATE INDEX IF NOT EXISTS idx_events_mailbox_time
    ON email_events(user_id, mailbox_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_sender
    ON email_events(user_id, mailbox_id, sender_email, timestamp);

CREATE TABLE IF NOT EXISTS patterns (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    mailbox_id TEXT NOT NULL,
    pattern_type TEXT NOT NULL,             -- 'sender', 'folder-routing'
    status TEXT NOT NULL,                   -- 'detected', 'suggested', 'approved',
                                            -- 'rejected', 'expired'
    confidence INTEGER NOT NULL DEFAULT 0,  -- 0-100
    sample_size INTEGER NOT NULL DEFAULT 0,
    exception_count INTEGER NOT NULL DEFAULT 0,
    sender_email TEXT NOT NULL,
    sender_domain TEXT,
    condition_to_folder TEXT NOT NULL DEFAULT '',  -- '' for sender patterns
    action_type TEXT NOT NULL,
    action_to_folder TEXT,
    action_category TEXT,
    evidence_json TEXT,                     -- Most recent first, capped
    rejected_at DATETIME,
    rejection_cooldown_until DATETIME,
    approved_at DATETIME,
    last_analyzed_at DATETIME,
    created_at DATETIME,
    updated_at DATETIME
);

-- At most one open (detected/suggested) pattern per tuple; the destination
-- folder is an attribute of a routing pattern, not part of its key
DROP INDEX IF EXISTS idx_patterns_open_tuple;
CREATE UNIQUE INDEX IF NOT EXISTS idx_patterns_open_key
    ON patterns(user_id, mailbox_id, pattern_type, sender_email, action_type)
    WHERE status IN ('detected', 'suggested');

CREATE INDEX IF NOT EXISTS idx_patterns_tuple_status
    ON patterns(user_id, mailbox_id, pattern_type, sender_email, action_type, status);
CREATE INDEX IF NOT EXISTS idx_patterns_user_status ON patterns(user_id, status);

CREATE TABLE IF NOT EXISTS staged_actions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    mailbox_id TEXT NOT NULL,
    rule_id TEXT,
    message_id TEXT NOT NULL,
    original_folder TEXT,
    staged_at DATETIME NOT NULL,
    expires_at DATETIME NOT NULL,           -- staged_at + grace period
    cleanup_at DATETIME NOT NULL,           -- expires_at + retention buffer
    status TEXT NOT NULL DEFAULT 'staged',  -- 'staged', 'rescued', 'executed', 'expired'
    actions_json TEXT NOT NULL,
    rescued_at DATETIME,
    executed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_staged_status_expiry ON staged_actions(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_staged_user ON staged_actions(user_id, mailbox_id, status);

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    mailbox_id TEXT,
    action TEXT NOT NULL,                   -- see AuditAction
    target_type TEXT,                       -- 'email', 'pattern', 'rule'
    target_id TEXT,
    details_json TEXT,
    undoable INTEGER DEFAULT 0,
    undone_at DATETIME,                     -- Set at most once
    undone_by TEXT,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_user_time ON audit_log(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_target ON audit_log(target_id);

CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    mailbox_id TEXT NOT NULL,
    name TEXT NOT NULL,
    source_pattern_id TEXT UNIQUE,          -- One rule per converted pattern
    is_enabled INTEGER DEFAULT 1,
    priority INTEGER DEFAULT 0,
    conditions_json TEXT,
    actions_json TEXT,
    total_executions INTEGER DEFAULT 0,
    last_executed_at DATETIME,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_rules_mailbox ON rules(user_id, mailbox_id, priority);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Audit and event data identify people; keep the file owner-only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("Missing database tables", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
