"""Microsoft Graph adapter (Outlook / Microsoft 365 mail).

Listing has two modes:

- With a stored deltaLink, follow it page by page until a new deltaLink
  comes back. Removed items ("@removed") are ignored.
- Without one (first sync, or the token expired with a 410), list messages
  received since the checkpoint with a $filter, then initialize a delta
  stream so later passes are incremental. A listing cut short by
  max_results keeps the oldest messages and starts no delta stream; the
  next pass lists again from the checkpoint.

Delta pages are capped at DELTA_MAX_PAGES. A stream that runs past the cap
keeps the previous cursor so the next pass starts over from the same point.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from inbox_actions.core.errors import (
    BodyUnavailableError,
    DeltaTokenExpiredError,
    ProviderAPIError,
)
from inbox_actions.core.logging import get_logger
from inbox_actions.core.text import html_to_text, make_snippet
from inbox_actions.db.store import DatabaseStore, EmailMetadata, Provider, SyncCheckpoint
from inbox_actions.providers.base import (
    DEFAULT_FIRST_SYNC_LOOKBACK,
    EmailProvider,
    FetchOptions,
    Listing,
    MessageRef,
)
from inbox_actions.providers.http import ApiClient

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

MESSAGE_FIELDS = "id,conversationId,subject,bodyPreview,from,receivedDateTime,categories,webLink"

# Ask Graph to render bodies as plain text; HTML is still converted if it comes back
TEXT_BODY_HEADERS = {"Prefer": 'outlook.body-content-type="text"'}

# Safety limit against runaway pagination on corrupted delta streams
DELTA_MAX_PAGES = 100

# Graph caps $top on message listings at 1000; 50 keeps pages small
PAGE_SIZE = 50
CANDIDATE_LIMIT = 500

DELTA_EXPIRED_CODES = {"SyncStateNotFound", "resyncRequired", "syncStateNotFound"}

WELL_KNOWN_FOLDERS = {
    "inbox": "inbox",
    "sentitems": "sentitems",
    "sent items": "sentitems",
    "drafts": "drafts",
    "archive": "archive",
    "junkemail": "junkemail",
    "junk email": "junkemail",
}


def folder_endpoint(folder: str) -> str:
    """Well-known folder name, or the folder id unchanged."""
    return WELL_KNOWN_FOLDERS.get(folder.lower(), folder)


def parse_graph_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_graph_datetime(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class GraphProvider(EmailProvider):
    """Outlook mailbox over Microsoft Graph."""

    provider: Provider = "MICROSOFT_GRAPH"

    def __init__(
        self,
        store: DatabaseStore,
        user_id: str,
        client: ApiClient,
        default_folder: str = "INBOX",
        first_sync_lookback: timedelta = DEFAULT_FIRST_SYNC_LOOKBACK,
        clock: Callable[[], datetime] | None = None,
        delta_max_pages: int = DELTA_MAX_PAGES,
    ):
        super().__init__(store, user_id, first_sync_lookback, clock)
        self.client = client
        self.default_folder = default_folder
        self.delta_max_pages = delta_max_pages

    async def list_new_messages(
        self,
        checkpoint: SyncCheckpoint | None,
        options: FetchOptions,
        started_at: datetime,
    ) -> Listing:
        folder = folder_endpoint(options.folder or self.default_folder)

        if checkpoint is not None and checkpoint.cursor:
            try:
                messages, delta_link = await self._follow_delta(checkpoint.cursor, folder)
            except DeltaTokenExpiredError:
                logger.warning("delta_token_expired", folder=folder)
            else:
                return Listing(
                    refs=[self._to_ref(message) for message in messages],
                    cursor=delta_link,
                )

        since = self.resolve_since(checkpoint, started_at)
        messages, truncated = await self._list_since(folder, since, options.max_results)
        # A delta stream started now would skip the messages left behind
        delta_link = None
        if not truncated:
            _, delta_link = await self._follow_delta(None, folder)

        return Listing(
            refs=[self._to_ref(message) for message in messages],
            cursor=delta_link,
            truncated=truncated,
        )

    async def _list_since(
        self, folder: str, since: datetime, max_results: int | None
    ) -> tuple[list[dict[str, Any]], bool]:
        """Messages received since `since`, oldest first."""
        params: dict[str, Any] | None = {
            "$select": MESSAGE_FIELDS,
            "$filter": f"receivedDateTime ge {format_graph_datetime(since)}",
            "$orderby": "receivedDateTime asc",
            "$top": min(max_results or PAGE_SIZE, PAGE_SIZE),
        }
        endpoint = f"/me/mailFolders/{folder}/messages"
        messages: list[dict[str, Any]] = []

        while True:
            page = await self.client.get(endpoint, params=params)
            messages.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")

            if max_results is not None and len(messages) >= max_results:
                truncated = len(messages) > max_results or bool(next_link)
                return messages[:max_results], truncated
            if not next_link:
                return messages, False
            # nextLink already carries the query
            endpoint, params = next_link, None

    async def _follow_delta(
        self, delta_link: str | None, folder: str
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Drain a delta stream.

        Returns:
            Tuple of (changed messages, new deltaLink). The deltaLink is None
            when the page cap was reached first.

        Raises:
            DeltaTokenExpiredError: If Graph no longer knows the sync state
        """
        if delta_link:
            next_url = delta_link
            params: dict[str, Any] | None = None
        else:
            next_url = f"/me/mailFolders/{folder}/messages/delta"
            params = {"$select": MESSAGE_FIELDS}

        messages: list[dict[str, Any]] = []
        new_delta_link: str | None = None
        page_count = 0

        while True:
            if page_count >= self.delta_max_pages:
                logger.warning(
                    "delta_query_page_limit_reached",
                    pages=page_count,
                    items=len(messages),
                    folder=folder,
                )
                break

            try:
                response = await self.client.get(next_url, params=params)
            except ProviderAPIError as e:
                if e.status_code == 410 or e.error_code in DELTA_EXPIRED_CODES:
                    raise DeltaTokenExpiredError(
                        f"Delta token expired for folder '{folder}'. "
                        "Falling back to a time-filtered listing.",
                        folder=folder,
                    ) from e
                raise

            page_count += 1
            messages.extend(item for item in response.get("value", []) if "@removed" not in item)

            next_link = response.get("@odata.nextLink")
            if next_link:
                next_url, params = next_link, None
                continue
            new_delta_link = response.get("@odata.deltaLink")
            break

        logger.info(
            "delta_query_complete",
            folder=folder,
            pages=page_count,
            messages=len(messages),
            has_token=new_delta_link is not None,
            was_incremental=delta_link is not None,
        )
        return messages, new_delta_link

    def _to_ref(self, message: dict[str, Any]) -> MessageRef:
        return MessageRef(message["id"], metadata=self._to_metadata(message))

    def _to_metadata(self, message: dict[str, Any]) -> EmailMetadata:
        sender = (message.get("from") or {}).get("emailAddress", {}).get("address", "")
        received_at = parse_graph_datetime(message.get("receivedDateTime")) or self.clock()

        return EmailMetadata(
            user_id=self.user_id,
            provider=self.provider,
            provider_message_id=message["id"],
            sender=sender,
            received_at=received_at,
            thread_id=message.get("conversationId"),
            subject=message.get("subject"),
            snippet=make_snippet(message.get("bodyPreview")),
            labels=list(message.get("categories") or []),
            web_link=message.get("webLink"),
        )

    async def fetch_body(self, provider_message_id: str) -> str:
        try:
            message = await self.client.get(
                f"/me/messages/{provider_message_id}", params={"$select": "body"}
            )
        except ProviderAPIError as e:
            if e.status_code == 404:
                raise BodyUnavailableError(
                    "Message no longer exists", message_id=provider_message_id
                ) from e
            raise

        body = message.get("body") or {}
        content = body.get("content") or ""
        if body.get("contentType", "").lower() == "html":
            return html_to_text(content)
        return content

    async def list_candidate_ids(self, checkpoint: SyncCheckpoint | None) -> list[str]:
        since = self.resolve_since(checkpoint, self.clock())
        messages, _ = await self._list_since(
            folder_endpoint(self.default_folder), since, CANDIDATE_LIMIT
        )
        return [message["id"] for message in messages]

    async def disconnect(self) -> None:
        self.client.close()
