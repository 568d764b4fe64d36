"""Tests for the IMAP adapter, against an in-memory IMAP4 stand-in."""

import imaplib
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from inbox_actions.core.errors import (
    ProviderAPIError,
    ReconnectRequiredError,
    TransientNetworkError,
)
from inbox_actions.core.retry import RetryPolicy
from inbox_actions.db.store import DatabaseStore, ImapCredentials, SyncCheckpoint
from inbox_actions.providers.base import FetchOptions
from inbox_actions.providers.imap import (
    IMAP_MONTHS,
    ImapProvider,
    format_cursor,
    imap_date,
    parse_cursor,
    parse_fetch_response,
    parse_internal_date,
    quote_mailbox,
    thread_id_from_headers,
)

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


def inbox_cursor(last_uid: int, uidvalidity: str = "777") -> str:
    return format_cursor({"INBOX": (uidvalidity, last_uid)})


@dataclass
class StoredMessage:
    received: datetime
    headers: bytes
    raw: bytes
    flags: list[str] = field(default_factory=list)


def headers_for(subject: str, message_id: str, sender: str = "Alice <alice@example.com>") -> bytes:
    return (
        f"From: {sender}\r\nSubject: {subject}\r\nMessage-ID: <{message_id}>\r\n\r\n"
    ).encode()


def plain_message(body: str) -> bytes:
    return (
        "From: alice@example.com\r\nSubject: Hi\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n\r\n" + body
    ).encode()


def html_message(markup: str) -> bytes:
    return (
        "From: alice@example.com\r\nSubject: Hi\r\nMIME-Version: 1.0\r\n"
        "Content-Type: text/html; charset=utf-8\r\n\r\n" + markup
    ).encode()


def internal_date(value: datetime) -> str:
    return f"{value.day:02d}-{IMAP_MONTHS[value.month - 1]}-{value.year} {value:%H:%M:%S} +0000"


@dataclass
class Mailbox:
    uidvalidity: str
    messages: dict[int, StoredMessage] = field(default_factory=dict)


class FakeImapServer:
    """Just enough of imaplib.IMAP4 for the adapter: select, response, uid, auth.

    `messages` and `uidvalidity` are the INBOX; other folders live in `folders`.
    """

    def __init__(self, uidvalidity: str = "777"):
        self.folders: dict[str, Mailbox] = {"INBOX": Mailbox(uidvalidity)}
        self.current = "INBOX"
        self.password = "secret"
        self.accepted_tokens: set[str] = set()
        self.commands: list[tuple] = []
        self.selected: list[tuple[str, bool]] = []
        self.logins: list[tuple[str, str]] = []
        self.auth_strings: list[bytes] = []
        self.logouts = 0

    @property
    def messages(self) -> dict[int, StoredMessage]:
        return self.folders["INBOX"].messages

    @property
    def uidvalidity(self) -> str:
        return self.folders["INBOX"].uidvalidity

    @uidvalidity.setter
    def uidvalidity(self, value: str) -> None:
        self.folders["INBOX"].uidvalidity = value

    def add(
        self,
        uid: int,
        received: datetime,
        subject: str = "Report",
        raw: bytes | None = None,
        folder: str = "INBOX",
    ):
        self.folders[folder].messages[uid] = StoredMessage(
            received=received,
            headers=headers_for(subject, f"m{uid}@example.com"),
            raw=raw or plain_message(f"Body of message {uid}"),
            flags=["\\Seen"] if uid % 2 else [],
        )

    # -- session --

    def login(self, user: str, password: str):
        self.logins.append((user, password))
        if password != self.password:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials")
        return "OK", [b"Logged in"]

    def authenticate(self, mechanism: str, callback):
        auth_string = callback(None)
        self.auth_strings.append(auth_string)
        token = auth_string.split(b"auth=Bearer ")[1].split(chr(1).encode())[0].decode()
        if token not in self.accepted_tokens:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid token")
        return "OK", [b"Authenticated"]

    def logout(self):
        self.logouts += 1
        return "BYE", [b"Logging out"]

    # -- mailbox --

    def select(self, mailbox: str, readonly: bool = False):
        self.selected.append((mailbox, readonly))
        name = mailbox.strip('"')
        if name not in self.folders:
            return "NO", [b"Mailbox does not exist"]
        self.current = name
        return "OK", [str(len(self._open.messages)).encode()]

    @property
    def _open(self) -> Mailbox:
        return self.folders[self.current]

    def response(self, code: str):
        if code == "UIDVALIDITY":
            return code, [self._open.uidvalidity.encode()]
        if code == "UIDNEXT":
            return code, [str(max(self._open.messages, default=0) + 1).encode()]
        return code, [None]

    def uid(self, command: str, *args):
        self.commands.append((command, *args))
        if command == "SEARCH":
            return "OK", [" ".join(str(uid) for uid in self._search(args[0])).encode()]
        if command == "FETCH":
            return "OK", self._fetch(args[0], args[1])
        raise imaplib.IMAP4.error(f"unsupported command {command}")

    def _search(self, criteria: str) -> list[int]:
        keyword, value = criteria.split(" ", 1)
        messages = self._open.messages
        uids = sorted(messages)
        if keyword == "UID":
            start = int(value.split(":")[0])
            matched = [uid for uid in uids if uid >= start]
            # Real servers always include the highest UID in "n:*"
            return matched or uids[-1:]
        since = datetime.strptime(value, "%d-%b-%Y").date()
        return [uid for uid in uids if messages[uid].received.date() >= since]

    def _fetch(self, uid_set: str, spec: str) -> list:
        data: list = []
        for seq, uid in enumerate(int(uid) for uid in uid_set.split(",")):
            message = self._open.messages.get(uid)
            if message is None:
                continue
            if "HEADER.FIELDS" in spec:
                flags = " ".join(message.flags)
                envelope = (
                    f'{seq + 1} (UID {uid} FLAGS ({flags}) '
                    f'INTERNALDATE "{internal_date(message.received)}" '
                    f"BODY[HEADER.FIELDS (FROM SUBJECT)] {{{len(message.headers)}}}"
                ).encode()
                data.extend([(envelope, message.headers), b")"])
            else:
                envelope = f"{seq + 1} (UID {uid} BODY[] {{{len(message.raw)}}}".encode()
                data.extend([(envelope, message.raw), b")"])
        return data


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def server() -> FakeImapServer:
    server = FakeImapServer()
    server.add(1, datetime(2024, 1, 13, 8, 0, tzinfo=UTC), subject="Old news")
    server.add(2, datetime(2024, 1, 15, 9, 0, tzinfo=UTC), subject="Can you call me?")
    server.add(3, datetime(2024, 1, 15, 11, 0, tzinfo=UTC), subject="Report")
    return server


@pytest.fixture
def credentials() -> ImapCredentials:
    return ImapCredentials(
        user_id="user-1", host="imap.example.com", username="alice@example.com", password="secret"
    )


def make_provider(store, server, credentials, token_manager=None, connect=None):
    return ImapProvider(
        store,
        "user-1",
        credentials,
        token_manager=token_manager,
        retry_policy=RetryPolicy(max_attempts=2, delays=(0.0,), jitter=0),
        connection_factory=connect or (lambda: server),
        clock=lambda: NOW,
        sleep=SleepRecorder(),
    )


@pytest.fixture
def provider(store: DatabaseStore, server, credentials) -> ImapProvider:
    return make_provider(store, server, credentials)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_parse_cursor(self):
        assert parse_cursor('{"INBOX": "777:42", "Archive": "9:3"}') == {
            "INBOX": ("777", 42),
            "Archive": ("9", 3),
        }
        assert parse_cursor(None) == {}
        assert parse_cursor("garbage") == {}
        assert parse_cursor('["777:42"]') == {}
        assert parse_cursor('{"INBOX": "777:abc"}') == {}

    def test_format_cursor_round_trips(self):
        positions = {"INBOX": ("777", 42), "Work/Projects": ("5", 1)}

        assert parse_cursor(format_cursor(positions)) == positions

    async def test_locate_message_ids(self, provider):
        assert provider.locate("42") == ("INBOX", 42)
        assert provider.locate("Archive:7") == ("Archive", 7)
        assert provider.locate("Work:2024:7") == ("Work:2024", 7)
        assert provider.locate("not-an-id") is None

    async def test_message_id_is_decimal_in_account_folder(self, provider):
        assert provider.message_id("INBOX", 42) == "42"
        assert provider.message_id("Archive", 42) == "Archive:42"

    def test_imap_date_is_english(self):
        assert imap_date(datetime(2024, 3, 5, tzinfo=UTC)) == "05-Mar-2024"

    def test_parse_internal_date_converts_to_utc(self):
        assert parse_internal_date(b"15-Jan-2024 09:00:00 +0100") == datetime(
            2024, 1, 15, 8, 0, tzinfo=UTC
        )
        assert parse_internal_date(" 5-Feb-2024 23:30:00 -0500") == datetime(
            2024, 2, 6, 4, 30, tzinfo=UTC
        )
        assert parse_internal_date("yesterday") is None

    def test_quote_mailbox(self):
        assert quote_mailbox("INBOX") == '"INBOX"'
        assert quote_mailbox('My "Stuff"') == '"My \\"Stuff\\""'

    def test_thread_id_prefers_references_root(self):
        assert (
            thread_id_from_headers("<c@x>", "<b@x>", "<a@x> <b@x>") == "<a@x>"
        )
        assert thread_id_from_headers("<c@x>", "<b@x>", None) == "<b@x>"
        assert thread_id_from_headers("<c@x>", None, None) == "<c@x>"
        assert thread_id_from_headers(None, None, None) is None

    def test_parse_fetch_response_reads_trailing_flags(self):
        data = [
            (b'1 (UID 9 INTERNALDATE "15-Jan-2024 09:00:00 +0000" BODY[HEADER] {5}', b"hdr\r\n"),
            b" FLAGS (\\Seen \\Flagged))",
        ]

        fetched = parse_fetch_response(data)

        assert len(fetched) == 1
        assert fetched[0].uid == 9
        assert fetched[0].flags == ["\\Seen", "\\Flagged"]
        assert fetched[0].header_bytes == b"hdr\r\n"


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListing:
    async def test_first_sync_keeps_only_the_lookback_window(self, provider, server):
        listing = await provider.list_new_messages(None, FetchOptions(), NOW)

        assert [ref.provider_message_id for ref in listing.refs] == ["2", "3"]
        assert listing.cursor == inbox_cursor(3)
        assert ("SEARCH", "SINCE 13-Jan-2024") in server.commands

    async def test_folder_is_opened_read_only(self, provider, server):
        await provider.list_new_messages(None, FetchOptions(), NOW)

        assert server.selected == [('"INBOX"', True)]
        fetch = next(cmd for cmd in server.commands if cmd[0] == "FETCH")
        assert "BODY.PEEK" in fetch[2]
        assert server.logouts == 1

    async def test_metadata_from_headers(self, provider):
        listing = await provider.list_new_messages(None, FetchOptions(), NOW)
        metadata = listing.refs[0].metadata

        assert metadata.provider == "IMAP"
        assert metadata.sender == "alice@example.com"
        assert metadata.subject == "Can you call me?"
        assert metadata.snippet == "Can you call me?"
        assert metadata.received_at == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
        assert metadata.thread_id == "<m2@example.com>"
        assert metadata.labels == []
        assert listing.refs[1].metadata.labels == ["\\Seen"]

    async def test_incremental_search_from_last_uid(self, provider, server):
        server.add(4, datetime(2024, 1, 15, 11, 30, tzinfo=UTC))
        checkpoint = SyncCheckpoint("user-1", "IMAP", since=NOW, cursor=inbox_cursor(3))

        listing = await provider.list_new_messages(checkpoint, FetchOptions(), NOW)

        assert [ref.provider_message_id for ref in listing.refs] == ["4"]
        assert listing.cursor == inbox_cursor(4)
        assert ("SEARCH", "UID 4:*") in server.commands

    async def test_nothing_new_keeps_cursor(self, provider):
        checkpoint = SyncCheckpoint("user-1", "IMAP", since=NOW, cursor=inbox_cursor(3))

        listing = await provider.list_new_messages(checkpoint, FetchOptions(), NOW)

        assert listing.refs == []
        assert listing.cursor == inbox_cursor(3)

    async def test_uidvalidity_change_falls_back_to_time_window(self, provider, server):
        checkpoint = SyncCheckpoint(
            "user-1", "IMAP", since=NOW - timedelta(hours=2), cursor=inbox_cursor(3, "111")
        )

        listing = await provider.list_new_messages(checkpoint, FetchOptions(), NOW)

        assert [ref.provider_message_id for ref in listing.refs] == ["3"]
        assert any(cmd[0] == "SEARCH" and cmd[1].startswith("SINCE") for cmd in server.commands)

    async def test_truncation_keeps_oldest_and_stops_cursor_there(self, provider, server):
        server.add(4, datetime(2024, 1, 15, 11, 30, tzinfo=UTC))
        checkpoint = SyncCheckpoint("user-1", "IMAP", since=NOW, cursor=inbox_cursor(1))

        listing = await provider.list_new_messages(checkpoint, FetchOptions(max_results=2), NOW)

        assert [ref.provider_message_id for ref in listing.refs] == ["2", "3"]
        assert listing.cursor == inbox_cursor(3)
        assert listing.truncated


# ---------------------------------------------------------------------------
# Folders other than the account's own
# ---------------------------------------------------------------------------


@pytest.fixture
def archive(server: FakeImapServer) -> Mailbox:
    server.folders["Archive"] = Mailbox("222")
    server.add(5, NOW - timedelta(hours=1), subject="Archived", folder="Archive")
    return server.folders["Archive"]


class TestFolders:
    async def test_other_folder_ids_are_qualified(self, provider, server, archive):
        listing = await provider.list_new_messages(None, FetchOptions(folder="Archive"), NOW)

        assert [ref.provider_message_id for ref in listing.refs] == ["Archive:5"]
        assert listing.refs[0].metadata.provider_message_id == "Archive:5"
        assert parse_cursor(listing.cursor) == {"Archive": ("222", 5)}
        assert server.selected == [('"Archive"', True)]

    async def test_folder_positions_are_independent(self, store, provider, server, archive):
        await provider.fetch_new_emails()
        archived = await provider.fetch_new_emails(FetchOptions(folder="Archive"))
        server.add(4, datetime(2024, 1, 15, 11, 45, tzinfo=UTC))

        inbox = await provider.fetch_new_emails()

        assert [e.provider_message_id for e in archived] == ["Archive:5"]
        assert [e.provider_message_id for e in inbox] == ["4"]
        assert ("SEARCH", "UID 4:*") in server.commands
        checkpoint = await store.get_checkpoint("user-1", "IMAP")
        assert parse_cursor(checkpoint.cursor) == {
            "INBOX": ("777", 4),
            "Archive": ("222", 5),
        }

    async def test_body_is_read_from_the_listing_folder(self, provider, server, archive):
        await provider.fetch_new_emails(FetchOptions(folder="Archive"))

        body = await provider.get_email_body_for_analysis("Archive:5")

        assert body.strip() == "Body of message 5"
        assert server.selected[-1] == ('"Archive"', True)

    async def test_account_folder_body_after_other_folder_sync(self, provider, server, archive):
        await provider.fetch_new_emails()
        await provider.fetch_new_emails(FetchOptions(folder="Archive"))

        body = await provider.get_email_body_for_analysis("2")

        assert body.strip() == "Body of message 2"
        assert server.selected[-1] == ('"INBOX"', True)

    async def test_unknown_folder_fails_listing(self, provider):
        with pytest.raises(ProviderAPIError, match="Cannot open IMAP folder"):
            await provider.list_new_messages(None, FetchOptions(folder="Nope"), NOW)


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------


class TestBodies:
    async def test_plain_body(self, provider, server):
        server.add(5, NOW, raw=plain_message("Please send the invoice."))

        body = await provider.get_email_body_for_analysis("5")

        assert body.strip() == "Please send the invoice."
        assert ("FETCH", "5", "(BODY.PEEK[])") in server.commands

    async def test_html_body_is_converted(self, provider, server):
        server.add(5, NOW, raw=html_message("<p>Call me tomorrow</p>"))

        assert await provider.get_email_body_for_analysis("5") == "Call me tomorrow"

    async def test_missing_message_is_none(self, provider):
        assert await provider.get_email_body_for_analysis("99") is None

    async def test_changed_uidvalidity_is_none(self, provider, server):
        await provider.fetch_new_emails()
        server.uidvalidity = "888"

        assert await provider.get_email_body_for_analysis("2") is None

    async def test_malformed_id_is_none(self, provider):
        assert await provider.get_email_body_for_analysis("not-an-id") is None


# ---------------------------------------------------------------------------
# Authentication and connection errors
# ---------------------------------------------------------------------------


class TestAuthentication:
    async def test_password_login(self, provider, server):
        await provider.list_new_messages(None, FetchOptions(), NOW)

        assert server.logins == [("alice@example.com", "secret")]

    async def test_rejected_password_requires_reconnect(self, store, server, credentials):
        server.password = "changed"
        provider = make_provider(store, server, credentials)

        with pytest.raises(ReconnectRequiredError):
            await provider.list_new_messages(None, FetchOptions(), NOW)

        assert server.logouts == 1

    async def test_missing_password_requires_reconnect(self, store, server):
        credentials = ImapCredentials(user_id="user-1", host="imap.example.com", username="alice")
        provider = make_provider(store, server, credentials)

        with pytest.raises(ReconnectRequiredError):
            await provider.get_email_body_for_analysis("2")

    async def test_xoauth2_string(self, store, server):
        server.accepted_tokens = {"token-1"}
        credentials = ImapCredentials(
            user_id="user-1",
            host="imap.gmail.com",
            username="alice@gmail.com",
            use_oauth2=True,
            oauth_provider="google",
        )
        manager = MagicMock()
        manager.get_access_token = AsyncMock(return_value="token-1")
        provider = make_provider(store, server, credentials, token_manager=manager)

        await provider.list_new_messages(None, FetchOptions(), NOW)

        sep = chr(1)
        expected = f"user=alice@gmail.com{sep}auth=Bearer token-1{sep}{sep}".encode()
        assert server.auth_strings == [expected]
        assert server.logins == []

    async def test_rejected_token_is_refreshed_once(self, store, server):
        server.accepted_tokens = {"token-2"}
        credentials = ImapCredentials(
            user_id="user-1", host="imap.gmail.com", username="alice@gmail.com", use_oauth2=True
        )
        manager = MagicMock()
        manager.get_access_token = AsyncMock(return_value="token-1")
        manager.force_refresh = AsyncMock(return_value="token-2")
        provider = make_provider(store, server, credentials, token_manager=manager)

        listing = await provider.list_new_messages(None, FetchOptions(), NOW)

        assert len(listing.refs) == 2
        manager.force_refresh.assert_awaited_once()

    async def test_refreshed_token_rejected_requires_reconnect(self, store, server):
        credentials = ImapCredentials(
            user_id="user-1", host="imap.gmail.com", username="alice@gmail.com", use_oauth2=True
        )
        manager = MagicMock()
        manager.get_access_token = AsyncMock(return_value="token-1")
        manager.force_refresh = AsyncMock(return_value="token-2")
        provider = make_provider(store, server, credentials, token_manager=manager)

        with pytest.raises(ReconnectRequiredError):
            await provider.list_new_messages(None, FetchOptions(), NOW)

    async def test_oauth_without_tokens_requires_reconnect(self, store, server):
        credentials = ImapCredentials(
            user_id="user-1", host="imap.gmail.com", username="alice@gmail.com", use_oauth2=True
        )
        provider = make_provider(store, server, credentials)

        with pytest.raises(ReconnectRequiredError):
            await provider.list_new_messages(None, FetchOptions(), NOW)


class TestConnectionErrors:
    async def test_unreachable_server_is_retried_then_transient(self, store, server, credentials):
        connect = MagicMock(side_effect=ConnectionRefusedError("refused"))
        provider = make_provider(store, server, credentials, connect=connect)

        with pytest.raises(TransientNetworkError):
            await provider.list_new_messages(None, FetchOptions(), NOW)

        assert connect.call_count == 2

    async def test_dropped_connection_mid_session_is_transient(self, store, server, credentials):
        server.uid = MagicMock(side_effect=imaplib.IMAP4.abort("socket closed"))
        provider = make_provider(store, server, credentials)

        with pytest.raises(TransientNetworkError):
            await provider.list_new_messages(None, FetchOptions(), NOW)

        assert server.logouts == 2

    async def test_body_fetch_outage_is_none(self, store, server, credentials):
        connect = MagicMock(side_effect=OSError("network down"))
        provider = make_provider(store, server, credentials, connect=connect)

        assert await provider.get_email_body_for_analysis("2") is None


class TestContract:
    async def test_second_pass_only_sees_new_uids(self, store, provider, server):
        first = await provider.fetch_new_emails()
        server.add(4, datetime(2024, 1, 15, 11, 45, tzinfo=UTC))
        second = await provider.fetch_new_emails()

        assert [e.provider_message_id for e in first] == ["2", "3"]
        assert [e.provider_message_id for e in second] == ["4"]
        checkpoint = await store.get_checkpoint("user-1", "IMAP")
        assert checkpoint.cursor == inbox_cursor(4)

    async def test_count_new_emails(self, store, provider, server):
        await provider.fetch_new_emails()
        server.add(4, datetime(2024, 1, 15, 11, 45, tzinfo=UTC))
        server.add(5, datetime(2024, 1, 15, 11, 50, tzinfo=UTC))

        assert await provider.count_new_emails() == 2
