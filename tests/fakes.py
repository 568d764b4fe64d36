"""Test doubles shared across test modules.

InMemoryProvider is a fourth adapter that keeps its mailbox in a list, so the
orchestrators can be exercised without any network.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from inbox_actions.core.errors import BodyUnavailableError
from inbox_actions.db.store import DatabaseStore, EmailMetadata, Provider, SyncCheckpoint
from inbox_actions.providers.base import EmailProvider, FetchOptions, Listing, MessageRef


def make_email(
    message_id: str = "msg-001",
    received_at: datetime | None = None,
    sender: str = "alice@example.com",
    subject: str | None = "Quick question",
    user_id: str = "user-1",
    provider: Provider = "GMAIL",
) -> EmailMetadata:
    """Create an EmailMetadata record for testing."""
    return EmailMetadata(
        user_id=user_id,
        provider=provider,
        provider_message_id=message_id,
        sender=sender,
        received_at=received_at or datetime(2024, 1, 15, 9, 0, tzinfo=UTC),
        thread_id=f"thread-{message_id}",
        subject=subject,
        snippet="Preview text",
        web_link=f"https://mail.example.com/{message_id}",
    )


class InMemoryProvider(EmailProvider):
    """Adapter over an in-memory mailbox.

    Attributes:
        messages: Mailbox content, listed in order (oldest first)
        bodies: Body per message id; an Exception value is raised instead
        cursor: Cursor handed out by the next listing (None keeps the stored one)
        fail_metadata_for: Ids whose metadata fetch raises
    """

    provider: Provider = "GMAIL"

    def __init__(
        self,
        store: DatabaseStore,
        user_id: str = "user-1",
        messages: list[EmailMetadata] | None = None,
        bodies: dict[str, Any] | None = None,
        clock=None,
    ):
        super().__init__(store, user_id, timedelta(hours=24), clock)
        self.messages = messages or []
        self.bodies = bodies or {}
        self.cursor: str | None = None
        self.fail_metadata_for: dict[str, Exception] = {}
        self.listing_error: Exception | None = None
        self.list_calls: list[tuple[SyncCheckpoint | None, FetchOptions, datetime]] = []
        self.metadata_calls: list[str] = []
        self.disconnected = False

    async def list_new_messages(
        self,
        checkpoint: SyncCheckpoint | None,
        options: FetchOptions,
        started_at: datetime,
    ) -> Listing:
        self.list_calls.append((checkpoint, options, started_at))
        if self.listing_error is not None:
            raise self.listing_error

        since = self.resolve_since(checkpoint, started_at)
        refs = [
            MessageRef(message.provider_message_id, metadata=message)
            for message in self.messages
            if message.received_at >= since
        ]
        truncated = False
        if options.max_results is not None and len(refs) > options.max_results:
            refs = refs[: options.max_results]
            truncated = True
        return Listing(refs=refs, cursor=self.cursor, truncated=truncated)

    async def fetch_metadata(self, ref: MessageRef) -> EmailMetadata | None:
        self.metadata_calls.append(ref.provider_message_id)
        error = self.fail_metadata_for.get(ref.provider_message_id)
        if error is not None:
            raise error
        return ref.metadata

    async def fetch_body(self, provider_message_id: str) -> str:
        body = self.bodies.get(provider_message_id)
        if isinstance(body, Exception):
            raise body
        if body is None:
            raise BodyUnavailableError("Not in mailbox", message_id=provider_message_id)
        return body

    async def list_candidate_ids(self, checkpoint: SyncCheckpoint | None) -> list[str]:
        since = self.resolve_since(checkpoint, self.clock())
        return [m.provider_message_id for m in self.messages if m.received_at >= since]

    async def disconnect(self) -> None:
        self.disconnected = True


class MutableClock:
    """Clock the test can move forward."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)
