"""Database store with async operations for all inbox-actions tables.

DatabaseStore wraps aiosqlite and hands out dataclasses. Every write that
belongs to one logical step (one metadata row, one analyzed message with its
actions) is its own transaction, so a crash mid-pass never leaves a message
half-analyzed.

Usage:
    from inbox_actions.db.store import DatabaseStore

    store = DatabaseStore("data/inbox_actions.db")
    await store.initialize()

    created = await store.insert_email_metadata(metadata)
    pending = await store.get_extracted_emails("user-1", "GMAIL")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import aiosqlite

from inbox_actions.core.errors import DatabaseError
from inbox_actions.core.logging import get_logger, short_id
from inbox_actions.core.text import MAX_SNIPPET_LENGTH
from inbox_actions.db.models import init_database
from inbox_actions.extraction.rules import ActionType

if TYPE_CHECKING:
    from inbox_actions.extraction.engine import ActionDraft

logger = get_logger(__name__)

Provider = Literal["GMAIL", "IMAP", "MICROSOFT_GRAPH"]
EmailStatus = Literal["EXTRACTED", "ANALYZED"]
ActionStatus = Literal["TODO", "DONE", "IGNORED"]

PROVIDERS: tuple[Provider, ...] = ("GMAIL", "IMAP", "MICROSOFT_GRAPH")

# SQLite caps bound parameters per statement
_IN_CLAUSE_CHUNK = 500


def _to_db(value: datetime | None) -> str | None:
    """Serialize a datetime as UTC ISO-8601 (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass
class EmailMetadata:
    """Metadata-only record of one provider message."""

    user_id: str
    provider: Provider
    provider_message_id: str
    sender: str
    received_at: datetime
    thread_id: str | None = None
    subject: str | None = None
    snippet: str | None = None
    labels: list[str] = field(default_factory=list)
    web_link: str | None = None
    status: EmailStatus = "EXTRACTED"
    id: int | None = None
    extracted_at: datetime | None = None
    analyzed_at: datetime | None = None


@dataclass
class Action:
    """Action record from the database."""

    id: int
    user_id: str
    provider: Provider
    provider_message_id: str
    title: str
    action_type: ActionType
    source_sentence: str
    due_date: datetime | None = None
    status: ActionStatus = "TODO"
    email_from: str | None = None
    email_received_at: datetime | None = None
    email_web_link: str | None = None
    created_at: datetime | None = None


@dataclass
class OAuthCredentials:
    """OAuth grant for one (user, provider)."""

    user_id: str
    provider: Provider
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None


@dataclass
class ImapCredentials:
    """IMAP server settings for one user."""

    user_id: str
    host: str
    username: str
    port: int = 993
    password: str | None = None
    folder: str = "INBOX"
    use_tls: bool = True
    use_oauth2: bool = False
    oauth_provider: Literal["google", "microsoft"] | None = None


@dataclass(frozen=True)
class SyncCheckpoint:
    """Where the next sync pass for a mailbox starts."""

    user_id: str
    provider: Provider
    since: datetime | None = None
    cursor: str | None = None
    updated_at: datetime | None = None


@dataclass
class ProviderConnection:
    """Connection state of one (user, provider)."""

    user_id: str
    provider: Provider
    is_connected: bool = True
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None


class DatabaseStore:
    """Async store for metadata, actions, checkpoints and credentials.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        PRAGMAs:
        - busy_timeout: 10s so concurrent user runs wait instead of failing
        - foreign_keys: ON so actions always point at a stored message
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Email metadata
    # =========================================================================

    async def email_exists(self, user_id: str, provider: Provider, provider_message_id: str) -> bool:
        """Check whether a message was already ingested."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT 1 FROM email_metadata
                    WHERE user_id = ? AND provider = ? AND provider_message_id = ?
                    """,
                    (user_id, provider, provider_message_id),
                )
                return await cursor.fetchone() is not None

        except aiosqlite.Error as e:
            logger.error("Failed to check email existence", error=str(e))
            raise DatabaseError(f"Failed to check email existence: {e}") from e

    async def insert_email_metadata(self, email: EmailMetadata) -> EmailMetadata | None:
        """Insert a new EXTRACTED record.

        The unique key (user, provider, provider_message_id) makes this safe to
        call twice for the same message: the second call inserts nothing.

        Returns:
            The stored record, or None if the message already existed
        """
        snippet = email.snippet
        if snippet and len(snippet) > MAX_SNIPPET_LENGTH:
            snippet = snippet[:MAX_SNIPPET_LENGTH]
        extracted_at = datetime.now(UTC)

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO email_metadata (
                        user_id, provider, provider_message_id, thread_id, sender,
                        subject, snippet, received_at, labels_json, web_link,
                        status, extracted_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'EXTRACTED', ?)
                    ON CONFLICT(user_id, provider, provider_message_id) DO NOTHING
                    """,
                    (
                        email.user_id,
                        email.provider,
                        email.provider_message_id,
                        email.thread_id,
                        email.sender,
                        email.subject,
                        snippet,
                        _to_db(email.received_at),
                        json.dumps(email.labels),
                        email.web_link,
                        _to_db(extracted_at),
                    ),
                )
                await db.commit()

                if cursor.rowcount == 0:
                    return None
                return replace(
                    email,
                    id=cursor.lastrowid,
                    snippet=snippet,
                    status="EXTRACTED",
                    extracted_at=extracted_at,
                    analyzed_at=None,
                )

        except aiosqlite.Error as e:
            logger.error(
                "Failed to insert email metadata",
                message_id=short_id(email.provider_message_id),
                error=str(e),
            )
            raise DatabaseError(f"Failed to insert email metadata: {e}") from e

    async def get_email(
        self, user_id: str, provider: Provider, provider_message_id: str
    ) -> EmailMetadata | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM email_metadata
                    WHERE user_id = ? AND provider = ? AND provider_message_id = ?
                    """,
                    (user_id, provider, provider_message_id),
                )
                row = await cursor.fetchone()
                return self._row_to_email(row) if row else None

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get email: {e}") from e

    async def get_extracted_emails(
        self, user_id: str, provider: Provider, limit: int | None = None
    ) -> list[EmailMetadata]:
        """EXTRACTED records for one mailbox, newest first."""
        query = """
            SELECT * FROM email_metadata
            WHERE user_id = ? AND provider = ? AND status = 'EXTRACTED'
            ORDER BY received_at DESC, id DESC
        """
        params: list[Any] = [user_id, provider]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_email(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get extracted emails", error=str(e))
            raise DatabaseError(f"Failed to get extracted emails: {e}") from e

    async def mark_email_analyzed(
        self, user_id: str, provider: Provider, provider_message_id: str
    ) -> bool:
        """Move a record from EXTRACTED to ANALYZED.

        Idempotent. ANALYZED records are never moved back.

        Returns:
            True if the record changed state on this call
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE email_metadata
                    SET status = 'ANALYZED', analyzed_at = ?
                    WHERE user_id = ? AND provider = ? AND provider_message_id = ?
                        AND status = 'EXTRACTED'
                    """,
                    (_to_db(datetime.now(UTC)), user_id, provider, provider_message_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error(
                "Failed to mark email analyzed",
                message_id=short_id(provider_message_id),
                error=str(e),
            )
            raise DatabaseError(f"Failed to mark email analyzed: {e}") from e

    async def record_analysis(
        self, email: EmailMetadata, drafts: Sequence[ActionDraft]
    ) -> int:
        """Store the actions of one message and mark it ANALYZED atomically.

        If the record is no longer EXTRACTED nothing is written, so a message
        can never produce its actions twice.

        Returns:
            Number of actions created
        """
        now = datetime.now(UTC)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE email_metadata
                    SET status = 'ANALYZED', analyzed_at = ?
                    WHERE user_id = ? AND provider = ? AND provider_message_id = ?
                        AND status = 'EXTRACTED'
                    """,
                    (_to_db(now), email.user_id, email.provider, email.provider_message_id),
                )
                if cursor.rowcount == 0:
                    await db.rollback()
                    logger.debug(
                        "analysis_already_recorded",
                        message_id=short_id(email.provider_message_id),
                    )
                    return 0

                for draft in drafts:
                    await db.execute(
                        """
                        INSERT INTO actions (
                            user_id, provider, provider_message_id, title, action_type,
                            source_sentence, due_date, status, email_from,
                            email_received_at, email_web_link, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, 'TODO', ?, ?, ?, ?)
                        """,
                        (
                            email.user_id,
                            email.provider,
                            email.provider_message_id,
                            draft.title,
                            draft.action_type,
                            draft.source_sentence,
                            _to_db(draft.due_date),
                            email.sender,
                            _to_db(email.received_at),
                            email.web_link,
                            _to_db(now),
                        ),
                    )
                await db.commit()
                return len(drafts)

        except aiosqlite.Error as e:
            logger.error(
                "Failed to record analysis",
                message_id=short_id(email.provider_message_id),
                error=str(e),
            )
            raise DatabaseError(f"Failed to record analysis: {e}") from e

    async def count_existing(
        self, user_id: str, provider: Provider, provider_message_ids: Sequence[str]
    ) -> int:
        """How many of the given ids are already stored."""
        ids = list(dict.fromkeys(provider_message_ids))
        if not ids:
            return 0

        total = 0
        try:
            async with self._db() as db:
                for start in range(0, len(ids), _IN_CLAUSE_CHUNK):
                    chunk = ids[start : start + _IN_CLAUSE_CHUNK]
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"""
                        SELECT COUNT(*) FROM email_metadata
                        WHERE user_id = ? AND provider = ?
                            AND provider_message_id IN ({placeholders})
                        """,
                        [user_id, provider, *chunk],
                    )
                    total += (await cursor.fetchone())[0]
            return total

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count existing emails: {e}") from e

    async def count_emails_by_status(self, user_id: str, provider: Provider) -> dict[str, int]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT status, COUNT(*) AS n FROM email_metadata
                    WHERE user_id = ? AND provider = ?
                    GROUP BY status
                    """,
                    (user_id, provider),
                )
                counts = {"EXTRACTED": 0, "ANALYZED": 0}
                for row in await cursor.fetchall():
                    counts[row["status"]] = row["n"]
                return counts

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count emails: {e}") from e

    async def get_ignored_emails(
        self, user_id: str, provider: Provider | None = None
    ) -> list[EmailMetadata]:
        """ANALYZED records that produced no action.

        Derived on read; "ignored" is never stored as a status.
        """
        query = """
            SELECT e.* FROM email_metadata e
            WHERE e.user_id = ? AND e.status = 'ANALYZED'
        """
        params: list[Any] = [user_id]
        if provider is not None:
            query += " AND e.provider = ?"
            params.append(provider)
        query += """
            AND NOT EXISTS (
                SELECT 1 FROM actions a
                WHERE a.user_id = e.user_id
                    AND a.provider = e.provider
                    AND a.provider_message_id = e.provider_message_id
            )
            ORDER BY e.received_at DESC
        """

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_email(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get ignored emails", error=str(e))
            raise DatabaseError(f"Failed to get ignored emails: {e}") from e

    def _row_to_email(self, row: aiosqlite.Row) -> EmailMetadata:
        return EmailMetadata(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            provider_message_id=row["provider_message_id"],
            thread_id=row["thread_id"],
            sender=row["sender"],
            subject=row["subject"],
            snippet=row["snippet"],
            received_at=_from_db(row["received_at"]),
            labels=json.loads(row["labels_json"]) if row["labels_json"] else [],
            web_link=row["web_link"],
            status=row["status"],
            extracted_at=_from_db(row["extracted_at"]),
            analyzed_at=_from_db(row["analyzed_at"]),
        )

    # =========================================================================
    # Actions
    # =========================================================================

    async def get_actions_for_email(
        self, user_id: str, provider: Provider, provider_message_id: str
    ) -> list[Action]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM actions
                    WHERE user_id = ? AND provider = ? AND provider_message_id = ?
                    ORDER BY id
                    """,
                    (user_id, provider, provider_message_id),
                )
                return [self._row_to_action(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get actions for email: {e}") from e

    async def get_actions(
        self, user_id: str, status: ActionStatus | None = None
    ) -> list[Action]:
        """All actions of a user, soonest deadline first."""
        query = "SELECT * FROM actions WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY due_date IS NULL, due_date, id"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_action(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get actions: {e}") from e

    def _row_to_action(self, row: aiosqlite.Row) -> Action:
        return Action(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            provider_message_id=row["provider_message_id"],
            title=row["title"],
            action_type=row["action_type"],
            source_sentence=row["source_sentence"],
            due_date=_from_db(row["due_date"]),
            status=row["status"],
            email_from=row["email_from"],
            email_received_at=_from_db(row["email_received_at"]),
            email_web_link=row["email_web_link"],
            created_at=_from_db(row["created_at"]),
        )

    # =========================================================================
    # Sync checkpoints
    # =========================================================================

    async def get_checkpoint(self, user_id: str, provider: Provider) -> SyncCheckpoint | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sync_checkpoints WHERE user_id = ? AND provider = ?",
                    (user_id, provider),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return SyncCheckpoint(
                    user_id=row["user_id"],
                    provider=row["provider"],
                    since=_from_db(row["since"]),
                    cursor=row["cursor"],
                    updated_at=_from_db(row["updated_at"]),
                )

        except aiosqlite.Error as e:
            logger.error("Failed to get checkpoint", error=str(e))
            raise DatabaseError(f"Failed to get checkpoint: {e}") from e

    async def save_checkpoint(
        self,
        user_id: str,
        provider: Provider,
        since: datetime | None,
        cursor: str | None,
    ) -> None:
        """Persist a checkpoint; since only ever moves forward."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sync_checkpoints (user_id, provider, since, cursor, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        since = CASE
                            WHEN sync_checkpoints.since IS NULL
                                OR excluded.since > sync_checkpoints.since
                            THEN excluded.since
                            ELSE sync_checkpoints.since
                        END,
                        cursor = excluded.cursor,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, provider, _to_db(since), cursor, _to_db(datetime.now(UTC))),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save checkpoint", error=str(e))
            raise DatabaseError(f"Failed to save checkpoint: {e}") from e

    # =========================================================================
    # Credentials
    # =========================================================================

    async def get_oauth_credentials(
        self, user_id: str, provider: Provider
    ) -> OAuthCredentials | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM oauth_credentials WHERE user_id = ? AND provider = ?",
                    (user_id, provider),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return OAuthCredentials(
                    user_id=row["user_id"],
                    provider=row["provider"],
                    access_token=row["access_token"],
                    refresh_token=row["refresh_token"],
                    expires_at=_from_db(row["expires_at"]),
                    scope=row["scope"],
                )

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get OAuth credentials: {e}") from e

    async def save_oauth_credentials(self, credentials: OAuthCredentials) -> None:
        """Store a grant and mark the mailbox as connected."""
        now = _to_db(datetime.now(UTC))
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO oauth_credentials (
                        user_id, provider, access_token, refresh_token,
                        expires_at, scope, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        expires_at = excluded.expires_at,
                        scope = excluded.scope,
                        updated_at = excluded.updated_at
                    """,
                    (
                        credentials.user_id,
                        credentials.provider,
                        credentials.access_token,
                        credentials.refresh_token,
                        _to_db(credentials.expires_at),
                        credentials.scope,
                        now,
                    ),
                )
                await self._mark_connected(db, credentials.user_id, credentials.provider)
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to save OAuth credentials: {e}") from e

    async def update_access_token(
        self,
        user_id: str,
        provider: Provider,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed token. A rotated refresh token replaces the old one."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE oauth_credentials
                    SET access_token = ?,
                        expires_at = ?,
                        refresh_token = COALESCE(?, refresh_token),
                        updated_at = ?
                    WHERE user_id = ? AND provider = ?
                    """,
                    (
                        access_token,
                        _to_db(expires_at),
                        refresh_token,
                        _to_db(datetime.now(UTC)),
                        user_id,
                        provider,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to persist refreshed token", provider=provider, error=str(e))
            raise DatabaseError(f"Failed to update access token: {e}") from e

    async def get_imap_credentials(self, user_id: str) -> ImapCredentials | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM imap_credentials WHERE user_id = ?", (user_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return ImapCredentials(
                    user_id=row["user_id"],
                    host=row["host"],
                    port=row["port"],
                    username=row["username"],
                    password=row["password"],
                    folder=row["folder"],
                    use_tls=bool(row["use_tls"]),
                    use_oauth2=bool(row["use_oauth2"]),
                    oauth_provider=row["oauth_provider"],
                )

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get IMAP credentials: {e}") from e

    async def save_imap_credentials(self, credentials: ImapCredentials) -> None:
        """Store IMAP settings and mark the mailbox as connected."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO imap_credentials (
                        user_id, host, port, username, password, folder,
                        use_tls, use_oauth2, oauth_provider, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        host = excluded.host,
                        port = excluded.port,
                        username = excluded.username,
                        password = excluded.password,
                        folder = excluded.folder,
                        use_tls = excluded.use_tls,
                        use_oauth2 = excluded.use_oauth2,
                        oauth_provider = excluded.oauth_provider,
                        updated_at = excluded.updated_at
                    """,
                    (
                        credentials.user_id,
                        credentials.host,
                        credentials.port,
                        credentials.username,
                        credentials.password,
                        credentials.folder,
                        1 if credentials.use_tls else 0,
                        1 if credentials.use_oauth2 else 0,
                        credentials.oauth_provider,
                        _to_db(datetime.now(UTC)),
                    ),
                )
                await self._mark_connected(db, credentials.user_id, "IMAP")
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to save IMAP credentials: {e}") from e

    # =========================================================================
    # Connection state
    # =========================================================================

    async def _mark_connected(
        self, db: aiosqlite.Connection, user_id: str, provider: Provider
    ) -> None:
        await db.execute(
            """
            INSERT INTO provider_connections (user_id, provider, is_connected)
            VALUES (?, ?, 1)
            ON CONFLICT(user_id, provider) DO UPDATE SET
                is_connected = 1,
                last_error = NULL,
                last_error_at = NULL
            """,
            (user_id, provider),
        )

    async def record_sync_success(
        self, user_id: str, provider: Provider, synced_at: datetime
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO provider_connections (
                        user_id, provider, is_connected, last_sync_at
                    ) VALUES (?, ?, 1, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        is_connected = 1,
                        last_sync_at = excluded.last_sync_at,
                        last_error = NULL,
                        last_error_at = NULL
                    """,
                    (user_id, provider, _to_db(synced_at)),
                )
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record sync success: {e}") from e

    async def record_provider_error(
        self,
        user_id: str,
        provider: Provider,
        error: str,
        disconnect: bool = False,
    ) -> None:
        """Remember the last failure; disconnect=True when the user must reconnect."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO provider_connections (
                        user_id, provider, is_connected, last_error, last_error_at
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        is_connected = CASE WHEN ? THEN 0 ELSE provider_connections.is_connected END,
                        last_error = excluded.last_error,
                        last_error_at = excluded.last_error_at
                    """,
                    (
                        user_id,
                        provider,
                        0 if disconnect else 1,
                        error[:500],
                        _to_db(datetime.now(UTC)),
                        1 if disconnect else 0,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record provider error: {e}") from e

    async def get_connection(
        self, user_id: str, provider: Provider
    ) -> ProviderConnection | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM provider_connections WHERE user_id = ? AND provider = ?",
                    (user_id, provider),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                return ProviderConnection(
                    user_id=row["user_id"],
                    provider=row["provider"],
                    is_connected=bool(row["is_connected"]),
                    last_sync_at=_from_db(row["last_sync_at"]),
                    last_error=row["last_error"],
                    last_error_at=_from_db(row["last_error_at"]),
                )

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get connection state: {e}") from e

    async def list_connected_accounts(self) -> list[tuple[str, Provider]]:
        """Every (user, provider) with credentials that isn't flagged disconnected."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT acc.user_id, acc.provider FROM (
                        SELECT user_id, provider FROM oauth_credentials
                        WHERE provider IN ('GMAIL', 'MICROSOFT_GRAPH')
                        UNION
                        SELECT user_id, 'IMAP' AS provider FROM imap_credentials
                    ) AS acc
                    LEFT JOIN provider_connections pc
                        ON pc.user_id = acc.user_id AND pc.provider = acc.provider
                    WHERE COALESCE(pc.is_connected, 1) = 1
                    ORDER BY acc.user_id, acc.provider
                    """
                )
                return [(row["user_id"], row["provider"]) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list connected accounts: {e}") from e
