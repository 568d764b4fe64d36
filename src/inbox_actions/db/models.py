"""SQLite database schema and initialization for inbox-actions.

Tables:
- email_metadata: one row per provider message, metadata only (never a body)
- actions: tasks extracted from exactly one sentence of one message
- sync_checkpoints: per (user, provider) since-timestamp and delta cursor
- oauth_credentials: access/refresh tokens per (user, provider)
- imap_credentials: IMAP server settings per user
- provider_connections: connection state and last error per (user, provider)

Usage:
    from inbox_actions.db.models import init_database

    await init_database("data/inbox_actions.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inbox_actions.core.errors import DatabaseError
from inbox_actions.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "email_metadata",
    "actions",
    "sync_checkpoints",
    "oauth_credentials",
    "imap_credentials",
    "provider_connections",
)

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- Message metadata; the body is fetched transiently and never stored
CREATE TABLE IF NOT EXISTS email_metadata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,                 -- 'GMAIL', 'IMAP', 'MICROSOFT_GRAPH'
    provider_message_id TEXT NOT NULL,      -- Opaque id; IMAP UIDs as decimal strings
    thread_id TEXT,                         -- threadId / conversationId
    sender TEXT NOT NULL,
    subject TEXT,
    snippet TEXT,                           -- At most 200 chars
    received_at DATETIME NOT NULL,          -- UTC ISO-8601
    labels_json TEXT,                       -- Labels, categories or IMAP flags
    web_link TEXT,
    status TEXT NOT NULL DEFAULT 'EXTRACTED', -- 'EXTRACTED', 'ANALYZED'
    extracted_at DATETIME NOT NULL,
    analyzed_at DATETIME,
    UNIQUE (user_id, provider, provider_message_id)
);

CREATE INDEX IF NOT EXISTS idx_email_metadata_status
    ON email_metadata(user_id, provider, status, received_at DESC);

-- Actions extracted from message bodies
CREATE TABLE IF NOT EXISTS actions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    provider_message_id TEXT NOT NULL,
    title TEXT NOT NULL,
    action_type TEXT NOT NULL,              -- 'SEND', 'CALL', 'FOLLOW_UP', 'PAY', 'VALIDATE'
    source_sentence TEXT NOT NULL,
    due_date DATETIME,
    status TEXT NOT NULL DEFAULT 'TODO',    -- 'TODO', 'DONE', 'IGNORED'
    email_from TEXT,
    email_received_at DATETIME,
    email_web_link TEXT,
    created_at DATETIME NOT NULL,
    FOREIGN KEY (user_id, provider, provider_message_id)
        REFERENCES email_metadata(user_id, provider, provider_message_id)
);

CREATE INDEX IF NOT EXISTS idx_actions_email
    ON actions(user_id, provider, provider_message_id);
CREATE INDEX IF NOT EXISTS idx_actions_user_status ON actions(user_id, status);

-- Sync checkpoints (since never moves backwards)
CREATE TABLE IF NOT EXISTS sync_checkpoints (
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    since DATETIME,                         -- Start time of the last successful pass
    cursor TEXT,                            -- Graph deltaLink or IMAP folder positions (JSON)
    updated_at DATETIME NOT NULL,
    PRIMARY KEY (user_id, provider)
);

-- OAuth grants (written by the external consent flow, refreshed here)
CREATE TABLE IF NOT EXISTS oauth_credentials (
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,                 -- 'GMAIL', 'MICROSOFT_GRAPH', or 'IMAP' for XOAUTH2
    access_token TEXT,
    refresh_token TEXT,
    expires_at DATETIME,
    scope TEXT,
    updated_at DATETIME NOT NULL,
    PRIMARY KEY (user_id, provider)
);

-- IMAP server settings
CREATE TABLE IF NOT EXISTS imap_credentials (
    user_id TEXT PRIMARY KEY,
    host TEXT NOT NULL,
    port INTEGER NOT NULL DEFAULT 993,
    username TEXT NOT NULL,
    password TEXT,                          -- NULL when XOAUTH2 is used
    folder TEXT NOT NULL DEFAULT 'INBOX',
    use_tls INTEGER NOT NULL DEFAULT 1,     -- 1 = implicit TLS, 0 = STARTTLS
    use_oauth2 INTEGER NOT NULL DEFAULT 0,
    oauth_provider TEXT,                    -- 'google' or 'microsoft' for XOAUTH2
    updated_at DATETIME NOT NULL
);

-- Connection state shown by getStatus()
CREATE TABLE IF NOT EXISTS provider_connections (
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    is_connected INTEGER NOT NULL DEFAULT 1,
    last_sync_at DATETIME,
    last_error TEXT,
    last_error_at DATETIME,
    PRIMARY KEY (user_id, provider)
);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode and
    creates all tables and indexes. Safe to call repeatedly.

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

        # Tokens and passwords live here: owner read/write only
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
    """Check that all required tables exist."""
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
