"""Sync orchestrator: bring a mailbox's metadata up to date.

One pass for one (user, provider):

1. Read the checkpoint
2. Ask the adapter for messages newer than it
3. Per message, in backend order: skip known ids, fetch metadata, insert
4. Only when the whole listing was processed, advance the checkpoint

Each insert is its own write, so a failure mid-listing keeps what was stored
and the retried pass creates no duplicates. A failed pass leaves the
checkpoint untouched and re-raises.

The since-timestamp is refreshed to the start of every successful pass, even
one that found nothing. A pass whose listing was capped by max_results only
moves it up to the newest message it handled (adapters keep the oldest ones),
so the rest of the window is listed again next time. The delta cursor / last
UID only changes when the backend hands out a new one.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inbox_actions.core.errors import (
    DatabaseError,
    ProviderUnavailableError,
    ReconnectRequiredError,
)
from inbox_actions.core.logging import get_logger, short_id
from inbox_actions.db.store import DatabaseStore, EmailMetadata, Provider, SyncCheckpoint

if TYPE_CHECKING:
    from inbox_actions.providers.base import EmailProvider, FetchOptions

logger = get_logger(__name__)

# Gmail's after: predicate is second-granular
RESUME_SLACK = timedelta(seconds=1)


@dataclass
class SyncResult:
    """Outcome of one sync pass."""

    provider: Provider
    started_at: datetime
    listed: int = 0
    created: list[EmailMetadata] = field(default_factory=list)
    skipped_existing: int = 0
    skipped_missing: int = 0
    truncated: bool = False

    @property
    def created_count(self) -> int:
        return len(self.created)


class SyncOrchestrator:
    """Runs sync passes against any EmailProvider."""

    def __init__(self, store: DatabaseStore, clock: Callable[[], datetime] | None = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def sync(self, provider: "EmailProvider", options: "FetchOptions") -> SyncResult:
        """Run one pass.

        Returns:
            SyncResult listing only the records created by this pass

        Raises:
            Whatever the adapter raised; the checkpoint is not advanced
        """
        user_id = provider.user_id
        name = provider.provider
        started_at = self._clock()

        checkpoint = await self.store.get_checkpoint(user_id, name)
        result = SyncResult(provider=name, started_at=started_at)

        logger.info(
            "sync_pass_started",
            provider=name,
            first_sync=checkpoint is None,
            max_results=options.max_results,
        )

        try:
            listing = await provider.list_new_messages(checkpoint, options, started_at)
            result.listed = len(listing.refs)
            result.truncated = listing.truncated
            handled: list[datetime] = []

            for ref in listing.refs:
                message_id = ref.provider_message_id
                if await self.store.email_exists(user_id, name, message_id):
                    result.skipped_existing += 1
                    if listing.truncated:
                        stored = await self.store.get_email(user_id, name, message_id)
                        if stored is not None:
                            handled.append(stored.received_at)
                    continue

                metadata = await provider.fetch_metadata(ref)
                if metadata is None:
                    logger.debug("listed_message_missing", message_id=short_id(message_id))
                    result.skipped_missing += 1
                    continue

                created = await self.store.insert_email_metadata(metadata)
                handled.append(metadata.received_at)
                if created is None:
                    result.skipped_existing += 1
                else:
                    result.created.append(created)

        except (ReconnectRequiredError, ProviderUnavailableError) as e:
            await self._record_failure(user_id, name, e, disconnect=True)
            raise
        except Exception as e:
            await self._record_failure(user_id, name, e, disconnect=False)
            raise

        cursor = listing.cursor
        if cursor is None and checkpoint is not None:
            cursor = checkpoint.cursor
        since = started_at
        if listing.truncated:
            since = self._resume_point(provider, checkpoint, started_at, handled)
        await self.store.save_checkpoint(user_id, name, since=since, cursor=cursor)
        await self.store.record_sync_success(user_id, name, started_at)

        if result.truncated:
            logger.warning(
                "listing_truncated",
                provider=name,
                max_results=options.max_results,
                resume_from=since.isoformat(),
            )

        logger.info(
            "sync_pass_complete",
            provider=name,
            listed=result.listed,
            created=result.created_count,
            skipped_existing=result.skipped_existing,
            skipped_missing=result.skipped_missing,
        )
        return result

    async def _record_failure(
        self, user_id: str, provider: Provider, error: Exception, disconnect: bool
    ) -> None:
        logger.error(
            "sync_pass_failed",
            provider=provider,
            error_type=type(error).__name__,
            error=str(error)[:200],
            disconnect=disconnect,
        )
        try:
            await self.store.record_provider_error(
                user_id, provider, f"{type(error).__name__}: {error}", disconnect=disconnect
            )
        except DatabaseError as db_error:
            # The original error is re-raised by the caller
            logger.error("Failed to record sync failure", error=str(db_error))

    @staticmethod
    def _resume_point(
        provider: "EmailProvider",
        checkpoint: SyncCheckpoint | None,
        started_at: datetime,
        handled: list[datetime],
    ) -> datetime:
        """Since-timestamp after a capped pass.

        The newest message handled, never earlier than the window just listed.
        """
        window_start = provider.resolve_since(checkpoint, started_at)
        if not handled:
            return window_start
        return max(window_start, max(handled) - RESUME_SLACK)
