"""The provider contract every mailbox backend implements.

Orchestrators only ever see EmailProvider. A concrete adapter supplies four
hooks (listing, metadata, body, candidate ids) and inherits the contract
operations, which are identical for every backend:

- fetch_new_emails: sync new metadata-only records (via SyncOrchestrator)
- get_email_body_for_analysis: transient body fetch, None when unavailable
- get_extracted_emails / mark_email_as_analyzed: EXTRACTED -> ANALYZED
- count_new_emails: read-only count for badges and polling
- get_status / disconnect

Adapters are async context managers; leaving the block always disconnects:

    async with await create_provider(store, "user-1", "IMAP", config) as provider:
        created = await provider.fetch_new_emails(FetchOptions(max_results=100))
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import ClassVar

from inbox_actions.core.errors import (
    BodyUnavailableError,
    ProviderAPIError,
    RateLimitExceeded,
    TransientNetworkError,
)
from inbox_actions.core.logging import get_logger, short_id
from inbox_actions.db.store import (
    DatabaseStore,
    EmailMetadata,
    Provider,
    SyncCheckpoint,
)
from inbox_actions.engine.sync import SyncOrchestrator

logger = get_logger(__name__)

DEFAULT_FIRST_SYNC_LOOKBACK = timedelta(hours=24)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class FetchOptions:
    """Listing options for one sync pass.

    Attributes:
        max_results: Cap on messages listed, oldest first; None drains every page
        folder: Backend folder/label; None uses the adapter default
    """

    max_results: int | None = None
    folder: str | None = None


@dataclass(frozen=True)
class MessageRef:
    """A listed message, with its metadata when the listing already carried it."""

    provider_message_id: str
    metadata: EmailMetadata | None = None


@dataclass
class Listing:
    """Result of one listing pass.

    Attributes:
        refs: Messages in backend order
        cursor: New delta cursor / IMAP folder positions, None to keep the stored one
        truncated: True when max_results cut the listing short; refs then
            hold the oldest messages of the window
    """

    refs: list[MessageRef] = field(default_factory=list)
    cursor: str | None = None
    truncated: bool = False


@dataclass(frozen=True)
class ProviderStatus:
    is_connected: bool
    last_sync: datetime | None = None
    last_error: str | None = None


class EmailProvider(ABC):
    """Base class for mailbox adapters.

    Attributes:
        provider: Backend identifier stored with every record
        store: Persistent store shared with the orchestrators
        user_id: Owner of the mailbox
    """

    provider: ClassVar[Provider]

    def __init__(
        self,
        store: DatabaseStore,
        user_id: str,
        first_sync_lookback: timedelta = DEFAULT_FIRST_SYNC_LOOKBACK,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.user_id = user_id
        self.first_sync_lookback = first_sync_lookback
        self.clock = clock or utc_now

    async def __aenter__(self) -> "EmailProvider":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # =========================================================================
    # Contract
    # =========================================================================

    async def fetch_new_emails(self, options: FetchOptions | None = None) -> list[EmailMetadata]:
        """List and persist new messages; returns only the newly created records."""
        result = await SyncOrchestrator(self.store, clock=self.clock).sync(
            self, options or FetchOptions()
        )
        return result.created

    async def get_email_body_for_analysis(self, provider_message_id: str) -> str | None:
        """Fetch a body for one analysis pass. The caller must not store it.

        Returns:
            Plain-text body, or None if it is empty or can't be fetched

        Raises:
            ReconnectRequiredError, ProviderUnavailableError: The account itself is unusable
        """
        try:
            body = await self.fetch_body(provider_message_id)
        except (
            BodyUnavailableError,
            ProviderAPIError,
            RateLimitExceeded,
            TransientNetworkError,
        ) as e:
            logger.warning(
                "email_body_unavailable",
                provider=self.provider,
                message_id=short_id(provider_message_id),
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            return None

        if not body or not body.strip():
            return None
        return body

    async def get_extracted_emails(self, limit: int | None = None) -> list[EmailMetadata]:
        return await self.store.get_extracted_emails(self.user_id, self.provider, limit)

    async def mark_email_as_analyzed(self, provider_message_id: str) -> None:
        await self.store.mark_email_analyzed(self.user_id, self.provider, provider_message_id)

    async def count_new_emails(self) -> int:
        """How many listed messages aren't stored yet. Writes nothing."""
        checkpoint = await self.store.get_checkpoint(self.user_id, self.provider)
        candidate_ids = list(dict.fromkeys(await self.list_candidate_ids(checkpoint)))
        existing = await self.store.count_existing(self.user_id, self.provider, candidate_ids)
        return len(candidate_ids) - existing

    async def get_status(self) -> ProviderStatus:
        connection = await self.store.get_connection(self.user_id, self.provider)
        if connection is None:
            return ProviderStatus(is_connected=False)
        return ProviderStatus(
            is_connected=connection.is_connected,
            last_sync=connection.last_sync_at,
            last_error=connection.last_error,
        )

    async def disconnect(self) -> None:
        """Release backend resources. Safe to call more than once."""

    # =========================================================================
    # Adapter hooks
    # =========================================================================

    def resolve_since(self, checkpoint: SyncCheckpoint | None, now: datetime) -> datetime:
        """Lower bound of a time-based listing."""
        if checkpoint is not None and checkpoint.since is not None:
            return checkpoint.since
        return now - self.first_sync_lookback

    @abstractmethod
    async def list_new_messages(
        self,
        checkpoint: SyncCheckpoint | None,
        options: FetchOptions,
        started_at: datetime,
    ) -> Listing:
        """List messages newer than the checkpoint, in backend order.

        A capped listing must keep the oldest messages and drop the newest.
        """

    async def fetch_metadata(self, ref: MessageRef) -> EmailMetadata | None:
        """Metadata for a listed message; None if it vanished in the meantime."""
        return ref.metadata

    @abstractmethod
    async def fetch_body(self, provider_message_id: str) -> str:
        """Plain-text body. Raises BodyUnavailableError when it can't be read."""

    @abstractmethod
    async def list_candidate_ids(self, checkpoint: SyncCheckpoint | None) -> list[str]:
        """Ids a sync would list now, without consuming any cursor."""
