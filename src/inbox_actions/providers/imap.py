"""IMAP adapter (any IMAP4rev1 server, password or XOAUTH2 login).

UIDs are only meaningful inside one folder and one UIDVALIDITY epoch, so the
cursor is a JSON map of folder -> "<UIDVALIDITY>:<last seen UID>". While a
folder's UIDVALIDITY holds, a pass searches `UID last+1:*`; when it changes
the pass falls back to a `SINCE` search from the checkpoint, and a folder
never listed before gets the first-sync lookback window.

Messages in the account's folder are stored under their decimal UID; other
folders qualify it as "<folder>:<UID>". Bodies are read from the folder the
message was listed in, with BODY.PEEK so the server's \\Seen flag never
changes.

imaplib is blocking: every operation opens a session in a worker thread,
does its work and logs out. Sessions are never shared between operations.
"""

import asyncio
import imaplib
import json
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from email import message_from_bytes, policy
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

import regex

from inbox_actions.auth.oauth import TokenManager
from inbox_actions.core.errors import (
    BodyUnavailableError,
    ProviderAPIError,
    ReconnectRequiredError,
    TransientNetworkError,
)
from inbox_actions.core.logging import get_logger, short_id
from inbox_actions.core.retry import RetryPolicy, call_with_retry
from inbox_actions.core.text import html_to_text, make_snippet
from inbox_actions.db.store import (
    DatabaseStore,
    EmailMetadata,
    ImapCredentials,
    Provider,
    SyncCheckpoint,
)
from inbox_actions.providers.base import (
    DEFAULT_FIRST_SYNC_LOOKBACK,
    EmailProvider,
    FetchOptions,
    Listing,
    MessageRef,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_FETCH_BATCH_SIZE = 100

HEADER_FIELDS = "FROM SUBJECT DATE MESSAGE-ID IN-REPLY-TO REFERENCES"
FETCH_HEADERS = f"(UID FLAGS INTERNALDATE BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})])"
FETCH_BODY = "(BODY.PEEK[])"

# IMAP dates are always English, whatever the local locale
IMAP_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

UID_PATTERN = regex.compile(rb"UID (\d+)")
FLAGS_PATTERN = regex.compile(rb"FLAGS \(([^)]*)\)")
INTERNALDATE_PATTERN = regex.compile(rb'INTERNALDATE "([^"]+)"')
INTERNALDATE_FORMAT = regex.compile(
    r"\s*(\d{1,2})-([A-Za-z]{3})-(\d{4}) (\d{2}):(\d{2}):(\d{2}) ([+-])(\d{2})(\d{2})"
)
ANGLE_ID_PATTERN = regex.compile(r"<[^>]+>")


class _AuthenticationRejected(Exception):
    """The server refused LOGIN / AUTHENTICATE."""


@dataclass(frozen=True, slots=True)
class FetchedHeaders:
    uid: int
    flags: list[str]
    internal_date: datetime | None
    header_bytes: bytes


def parse_cursor(cursor: str | None) -> dict[str, tuple[str, int]]:
    """Per-folder (UIDVALIDITY, last UID); malformed entries are dropped."""
    if not cursor:
        return {}
    try:
        raw = json.loads(cursor)
    except json.JSONDecodeError:
        return {}
    if not isinstance(raw, dict):
        return {}

    positions = {}
    for folder, value in raw.items():
        uidvalidity, _, last_uid = str(value).partition(":")
        if uidvalidity and last_uid.isdigit():
            positions[folder] = (uidvalidity, int(last_uid))
    return positions


def format_cursor(positions: dict[str, tuple[str, int]]) -> str:
    return json.dumps(
        {folder: f"{uidvalidity}:{uid}" for folder, (uidvalidity, uid) in positions.items()},
        sort_keys=True,
    )


def imap_date(value: datetime) -> str:
    """Date in the dd-Mon-yyyy form SEARCH SINCE expects."""
    return f"{value.day:02d}-{IMAP_MONTHS[value.month - 1]}-{value.year}"


def parse_internal_date(value: bytes | str) -> datetime | None:
    text = value.decode("ascii", errors="replace") if isinstance(value, bytes) else value
    match = INTERNALDATE_FORMAT.match(text)
    if not match:
        return None
    day, month_name, year, hour, minute, second, sign, off_h, off_m = match.groups()
    if month_name.title() not in IMAP_MONTHS:
        return None
    offset = timedelta(hours=int(off_h), minutes=int(off_m))
    tz_offset = offset if sign == "+" else -offset
    local = datetime(
        int(year),
        IMAP_MONTHS.index(month_name.title()) + 1,
        int(day),
        int(hour),
        int(minute),
        int(second),
        tzinfo=UTC,
    )
    return local - tz_offset


def quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_fetch_response(data: list[Any]) -> list[FetchedHeaders]:
    """Group a UID FETCH response into one entry per message.

    imaplib returns (envelope, literal) tuples, and data items sent after the
    literal (often FLAGS) arrive as a separate bytes element.
    """
    grouped: list[list[bytes]] = []
    for item in data:
        if isinstance(item, tuple):
            grouped.append([item[0], item[1] or b""])
        elif isinstance(item, bytes) and grouped:
            grouped[-1][0] += b" " + item

    fetched = []
    for envelope, literal in grouped:
        uid_match = UID_PATTERN.search(envelope)
        if not uid_match:
            continue
        flags_match = FLAGS_PATTERN.search(envelope)
        date_match = INTERNALDATE_PATTERN.search(envelope)
        fetched.append(
            FetchedHeaders(
                uid=int(uid_match.group(1)),
                flags=flags_match.group(1).decode().split() if flags_match else [],
                internal_date=parse_internal_date(date_match.group(1)) if date_match else None,
                header_bytes=literal,
            )
        )
    return fetched


def thread_id_from_headers(
    message_id: str | None, in_reply_to: str | None, references: str | None
) -> str | None:
    """Root of the References chain, else the parent, else the message itself."""
    for value in (references, in_reply_to, message_id):
        if value:
            match = ANGLE_ID_PATTERN.search(value)
            return match.group(0) if match else value.strip()
    return None


class ImapProvider(EmailProvider):
    """Mailbox on an IMAP server."""

    provider: Provider = "IMAP"

    def __init__(
        self,
        store: DatabaseStore,
        user_id: str,
        credentials: ImapCredentials,
        token_manager: TokenManager | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE,
        connection_factory: Callable[[], imaplib.IMAP4] | None = None,
        first_sync_lookback: timedelta = DEFAULT_FIRST_SYNC_LOOKBACK,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        super().__init__(store, user_id, first_sync_lookback, clock)
        self.credentials = credentials
        self.token_manager = token_manager
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.fetch_batch_size = fetch_batch_size
        self._connection_factory = connection_factory or self._connect
        self._sleep = sleep

    # =========================================================================
    # Session handling
    # =========================================================================

    def _connect(self) -> imaplib.IMAP4:
        creds = self.credentials
        context = ssl.create_default_context()
        if creds.use_tls:
            return imaplib.IMAP4_SSL(
                creds.host, creds.port, ssl_context=context, timeout=self.timeout
            )

        conn = imaplib.IMAP4(creds.host, creds.port, timeout=self.timeout)
        try:
            status, _ = conn.starttls(ssl_context=context)
        except imaplib.IMAP4.error as e:
            conn.shutdown()
            raise ProviderAPIError(
                f"IMAP server {creds.host} does not support STARTTLS; refusing to send "
                "credentials in clear text."
            ) from e
        if status != "OK":
            conn.shutdown()
            raise ProviderAPIError(f"STARTTLS negotiation with {creds.host} failed")
        return conn

    def _authenticate(self, conn: imaplib.IMAP4, access_token: str | None) -> None:
        creds = self.credentials
        if access_token is not None:
            auth_string = (
                f"user={creds.username}{chr(1)}auth=Bearer {access_token}{chr(1)}{chr(1)}"
            )
            conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
            return
        if not creds.password:
            raise ReconnectRequiredError(
                "No IMAP password stored. Reconnect the account.", provider=self.provider
            )
        conn.login(creds.username, creds.password)

    def _with_connection(self, work: Callable[[imaplib.IMAP4], Any], access_token: str | None):
        """Open a session, authenticate, run `work`, always log out. Runs in a thread."""
        host = self.credentials.host
        try:
            conn = self._connection_factory()
        except (OSError, imaplib.IMAP4.abort) as e:
            raise TransientNetworkError(f"Cannot connect to IMAP server {host}: {e}") from e

        try:
            try:
                self._authenticate(conn, access_token)
            except imaplib.IMAP4.abort:
                raise
            except imaplib.IMAP4.error as e:
                raise _AuthenticationRejected(str(e)) from e
            return work(conn)
        except imaplib.IMAP4.abort as e:
            raise TransientNetworkError(f"IMAP connection to {host} dropped: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProviderAPIError(f"IMAP command failed on {host}: {e}") from e
        except OSError as e:
            raise TransientNetworkError(f"IMAP connection to {host} failed: {e}") from e
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug("imap_logout_failed", error=str(e))

    async def _access_token(self) -> str | None:
        if not self.credentials.use_oauth2:
            return None
        if self.token_manager is None:
            raise ReconnectRequiredError(
                "IMAP account uses XOAUTH2 but no OAuth tokens are stored.",
                provider=self.provider,
            )
        return await self.token_manager.get_access_token()

    async def _run(self, operation_name: str, work: Callable[[imaplib.IMAP4], Any]) -> Any:
        """Run `work` in a fresh session with retries and one token refresh on rejection."""

        async def attempt():
            token = await self._access_token()
            try:
                return await asyncio.to_thread(self._with_connection, work, token)
            except _AuthenticationRejected as e:
                if token is None or self.token_manager is None:
                    raise ReconnectRequiredError(
                        f"IMAP server rejected the credentials: {e}", provider=self.provider
                    ) from e
                logger.info("imap_token_rejected")

            token = await self.token_manager.force_refresh()
            try:
                return await asyncio.to_thread(self._with_connection, work, token)
            except _AuthenticationRejected as e:
                raise ReconnectRequiredError(
                    f"IMAP server rejected a freshly refreshed token: {e}",
                    provider=self.provider,
                ) from e

        return await call_with_retry(
            attempt,
            self.retry_policy,
            operation_name=f"IMAP {operation_name}",
            sleep=self._sleep,
        )

    # =========================================================================
    # Mailbox commands (run inside a session)
    # =========================================================================

    def _select(self, conn: imaplib.IMAP4, folder: str) -> tuple[str, int | None]:
        """Open `folder` read-only; returns (UIDVALIDITY, UIDNEXT)."""
        status, _ = conn.select(quote_mailbox(folder), readonly=True)
        if status != "OK":
            raise ProviderAPIError(f"Cannot open IMAP folder '{folder}'")

        _, validity = conn.response("UIDVALIDITY")
        _, uidnext = conn.response("UIDNEXT")
        uidvalidity = validity[0].decode() if validity and validity[0] else "0"
        next_uid = int(uidnext[0]) if uidnext and uidnext[0] else None
        return uidvalidity, next_uid

    def _search(self, conn: imaplib.IMAP4, criteria: str) -> list[int]:
        status, data = conn.uid("SEARCH", criteria)
        if status != "OK":
            raise ProviderAPIError(f"IMAP search '{criteria}' failed")
        return sorted({int(uid) for chunk in data if chunk for uid in chunk.split()})

    def _new_uids(
        self, conn: imaplib.IMAP4, last_uid: int | None, since: datetime
    ) -> list[int]:
        if last_uid is not None:
            # "n:*" always matches the highest UID, even when it is below n
            return [uid for uid in self._search(conn, f"UID {last_uid + 1}:*") if uid > last_uid]
        # SINCE has day granularity in server time; widen, then filter on INTERNALDATE
        return self._search(conn, f"SINCE {imap_date(since - timedelta(days=1))}")

    def _fetch_headers(self, conn: imaplib.IMAP4, uids: list[int]) -> list[FetchedHeaders]:
        fetched: list[FetchedHeaders] = []
        for start in range(0, len(uids), self.fetch_batch_size):
            batch = uids[start : start + self.fetch_batch_size]
            status, data = conn.uid("FETCH", ",".join(str(uid) for uid in batch), FETCH_HEADERS)
            if status != "OK":
                raise ProviderAPIError("IMAP header fetch failed")
            fetched.extend(parse_fetch_response(data))
        return fetched

    # =========================================================================
    # Adapter hooks
    # =========================================================================

    def message_id(self, folder: str, uid: int) -> str:
        """Decimal UID in the account folder, "<folder>:<uid>" elsewhere."""
        if folder == self.credentials.folder:
            return str(uid)
        return f"{folder}:{uid}"

    def locate(self, provider_message_id: str) -> tuple[str, int] | None:
        """(folder, UID) of a stored message id; None if it is not one of ours."""
        folder, _, uid = provider_message_id.rpartition(":")
        if not uid.isdigit():
            return None
        return folder or self.credentials.folder, int(uid)

    async def list_new_messages(
        self,
        checkpoint: SyncCheckpoint | None,
        options: FetchOptions,
        started_at: datetime,
    ) -> Listing:
        folder = options.folder or self.credentials.folder
        positions = parse_cursor(checkpoint.cursor if checkpoint else None)
        stored = positions.get(folder)
        if stored is None:
            since = started_at - self.first_sync_lookback
        else:
            since = self.resolve_since(checkpoint, started_at)

        def work(conn: imaplib.IMAP4) -> Listing:
            uidvalidity, uidnext = self._select(conn, folder)

            last_uid = None
            if stored is not None and stored[0] == uidvalidity:
                last_uid = stored[1]
            elif stored is not None:
                logger.warning("imap_uidvalidity_changed", folder=folder)

            uids = self._new_uids(conn, last_uid, since)
            truncated = options.max_results is not None and len(uids) > options.max_results
            if truncated:
                # Oldest first; the cursor stops at the last one taken
                uids = uids[: options.max_results]

            fetched = self._fetch_headers(conn, uids)
            if last_uid is None:
                fetched = [
                    item
                    for item in fetched
                    if item.internal_date is None or item.internal_date >= since
                ]

            if uids:
                new_last = uids[-1]
            elif last_uid is not None:
                new_last = last_uid
            elif uidnext is not None:
                new_last = uidnext - 1
            else:
                new_last = None

            refs = [
                MessageRef(
                    self.message_id(folder, item.uid),
                    metadata=self._to_metadata(folder, item),
                )
                for item in sorted(fetched, key=lambda item: item.uid)
            ]
            updated = dict(positions)
            if new_last is None:
                updated.pop(folder, None)
            else:
                updated[folder] = (uidvalidity, new_last)
            cursor = format_cursor(updated) if updated else None
            return Listing(refs=refs, cursor=cursor, truncated=truncated)

        listing = await self._run("list", work)
        logger.debug("imap_listing", folder=folder, count=len(listing.refs))
        return listing

    def _to_metadata(self, folder: str, item: FetchedHeaders) -> EmailMetadata:
        headers = message_from_bytes(item.header_bytes, policy=policy.default)
        raw_from = str(headers.get("From", "") or "")
        subject = headers.get("Subject")
        subject = str(subject) if subject is not None else None

        received_at = item.internal_date
        if received_at is None and headers.get("Date"):
            try:
                received_at = parsedate_to_datetime(str(headers["Date"]))
            except (TypeError, ValueError):
                received_at = None
            if received_at is not None and received_at.tzinfo is None:
                received_at = received_at.replace(tzinfo=UTC)

        return EmailMetadata(
            user_id=self.user_id,
            provider=self.provider,
            provider_message_id=self.message_id(folder, item.uid),
            sender=parseaddr(raw_from)[1] or raw_from,
            received_at=(received_at or self.clock()).astimezone(UTC),
            thread_id=thread_id_from_headers(
                _header_str(headers.get("Message-ID")),
                _header_str(headers.get("In-Reply-To")),
                _header_str(headers.get("References")),
            ),
            subject=subject,
            # The header fetch carries no body text
            snippet=make_snippet(subject),
            labels=item.flags,
        )

    async def fetch_body(self, provider_message_id: str) -> str:
        located = self.locate(provider_message_id)
        if located is None:
            raise BodyUnavailableError(
                "Not an IMAP message id", message_id=provider_message_id
            )
        folder, uid = located
        checkpoint = await self.store.get_checkpoint(self.user_id, self.provider)
        position = parse_cursor(checkpoint.cursor if checkpoint else None).get(folder)
        listed_uidvalidity = position[0] if position else None

        def work(conn: imaplib.IMAP4) -> bytes:
            current, _ = self._select(conn, folder)
            if listed_uidvalidity is not None and current != listed_uidvalidity:
                raise BodyUnavailableError(
                    "Mailbox UIDVALIDITY changed since the message was listed",
                    message_id=provider_message_id,
                )
            status, data = conn.uid("FETCH", str(uid), FETCH_BODY)
            raw = next((item[1] for item in data or [] if isinstance(item, tuple)), None)
            if status != "OK" or not raw:
                raise BodyUnavailableError(
                    "Message no longer exists", message_id=provider_message_id
                )
            return raw

        raw = await self._run("fetch body", work)
        try:
            message = message_from_bytes(raw, policy=policy.default)
            part = message.get_body(preferencelist=("plain", "html"))
            if part is None:
                return ""
            content = part.get_content()
        except (LookupError, UnicodeError, ValueError) as e:
            logger.warning("imap_body_undecodable", message_id=short_id(provider_message_id))
            raise BodyUnavailableError(
                "Message body could not be decoded", message_id=provider_message_id
            ) from e

        if part.get_content_subtype() == "html":
            return html_to_text(content)
        return content

    async def list_candidate_ids(self, checkpoint: SyncCheckpoint | None) -> list[str]:
        folder = self.credentials.folder
        now = self.clock()
        stored = parse_cursor(checkpoint.cursor if checkpoint else None).get(folder)
        since = self.resolve_since(checkpoint, now) if stored else now - self.first_sync_lookback

        def work(conn: imaplib.IMAP4) -> list[str]:
            uidvalidity, _ = self._select(conn, folder)
            last_uid = stored[1] if stored is not None and stored[0] == uidvalidity else None
            return [self.message_id(folder, uid) for uid in self._new_uids(conn, last_uid, since)]

        return await self._run("count", work)


def _header_str(value: Any) -> str | None:
    return str(value) if value is not None else None
