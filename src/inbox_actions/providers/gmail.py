"""Gmail adapter (Gmail REST API v1).

Listing uses a time-window search, `after:<epoch seconds>`, restricted to one
label. Gmail has no delta cursor, so the checkpoint's since-timestamp is the
whole watermark; messages already stored are skipped by the orchestrator.

Message JSON shapes used here:
    list:     {"messages": [{"id", "threadId"}], "nextPageToken"}
    metadata: {"id", "threadId", "labelIds", "snippet", "internalDate",
               "payload": {"headers": [{"name", "value"}]}}
    full:     payload parts with base64url "body.data"
"""

import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

from inbox_actions.core.errors import BodyUnavailableError, ProviderAPIError
from inbox_actions.core.logging import get_logger, short_id
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

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_WEB_LINK = "https://mail.google.com/mail/u/0/#all/{message_id}"

# Gmail caps messages.list pages at 500
MAX_PAGE_SIZE = 500

METADATA_HEADERS = ["From", "Subject", "Date"]


def _header(headers: list[dict[str, str]], name: str) -> str | None:
    lowered = name.lower()
    for header in headers:
        if header.get("name", "").lower() == lowered:
            return header.get("value")
    return None


def _decode_part_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_body_text(payload: dict[str, Any]) -> str:
    """Plain text of a `format=full` payload.

    text/plain parts win over text/html; attachments are skipped.
    """
    plain: list[str] = []
    html: list[str] = []
    stack = [payload]
    while stack:
        part = stack.pop(0)
        if part.get("parts"):
            stack[0:0] = part["parts"]
            continue
        if part.get("filename"):
            continue
        data = part.get("body", {}).get("data")
        if not data:
            continue
        mime_type = part.get("mimeType", "")
        if mime_type == "text/plain":
            plain.append(_decode_part_data(data))
        elif mime_type == "text/html":
            html.append(_decode_part_data(data))

    if plain:
        return "\n".join(plain)
    return "\n".join(html_to_text(markup) for markup in html)


class GmailProvider(EmailProvider):
    """Gmail mailbox over the REST API."""

    provider: Provider = "GMAIL"

    def __init__(
        self,
        store: DatabaseStore,
        user_id: str,
        client: ApiClient,
        default_folder: str = "INBOX",
        first_sync_lookback: timedelta = DEFAULT_FIRST_SYNC_LOOKBACK,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(store, user_id, first_sync_lookback, clock)
        self.client = client
        self.default_folder = default_folder

    def _list_params(self, since: datetime, label: str, page_size: int) -> dict[str, Any]:
        return {
            "q": f"after:{int(since.timestamp())}",
            "labelIds": label,
            "maxResults": page_size,
        }

    async def list_new_messages(
        self,
        checkpoint: SyncCheckpoint | None,
        options: FetchOptions,
        started_at: datetime,
    ) -> Listing:
        since = self.resolve_since(checkpoint, started_at)
        label = options.folder or self.default_folder
        params = self._list_params(since, label, MAX_PAGE_SIZE)

        refs: list[MessageRef] = []
        while True:
            page = await self.client.get("/messages", params=params)
            refs.extend(MessageRef(item["id"]) for item in page.get("messages", []))
            next_token = page.get("nextPageToken")
            if not next_token:
                break
            params = {**params, "pageToken": next_token}

        truncated = False
        if options.max_results is not None:
            # Gmail lists newest first; a capped pass keeps the oldest ids so
            # the checkpoint can resume right after them
            refs.reverse()
            truncated = len(refs) > options.max_results
            refs = refs[: options.max_results]

        logger.debug("gmail_listing", label=label, since=since.isoformat(), count=len(refs))
        return Listing(refs=refs, truncated=truncated)

    async def fetch_metadata(self, ref: MessageRef) -> EmailMetadata | None:
        message_id = ref.provider_message_id
        try:
            data = await self.client.get(
                f"/messages/{message_id}",
                params={"format": "metadata", "metadataHeaders": METADATA_HEADERS},
            )
        except ProviderAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return self._to_metadata(data)

    def _to_metadata(self, data: dict[str, Any]) -> EmailMetadata:
        headers = data.get("payload", {}).get("headers", [])
        raw_from = _header(headers, "From") or ""
        sender = parseaddr(raw_from)[1] or raw_from

        return EmailMetadata(
            user_id=self.user_id,
            provider=self.provider,
            provider_message_id=data["id"],
            sender=sender,
            received_at=self._received_at(data, headers),
            thread_id=data.get("threadId"),
            subject=_header(headers, "Subject"),
            snippet=make_snippet(data.get("snippet")),
            labels=list(data.get("labelIds", [])),
            web_link=GMAIL_WEB_LINK.format(message_id=data["id"]),
        )

    def _received_at(self, data: dict[str, Any], headers: list[dict[str, str]]) -> datetime:
        internal_date = data.get("internalDate")
        if internal_date:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)

        date_header = _header(headers, "Date")
        if date_header:
            try:
                received = parsedate_to_datetime(date_header)
            except (TypeError, ValueError):
                received = None
            if received is not None:
                if received.tzinfo is None:
                    received = received.replace(tzinfo=UTC)
                return received.astimezone(UTC)

        return self.clock()

    async def fetch_body(self, provider_message_id: str) -> str:
        try:
            data = await self.client.get(
                f"/messages/{provider_message_id}", params={"format": "full"}
            )
        except ProviderAPIError as e:
            if e.status_code == 404:
                raise BodyUnavailableError(
                    "Message no longer exists", message_id=provider_message_id
                ) from e
            raise

        try:
            return extract_body_text(data.get("payload", {}))
        except (binascii.Error, ValueError) as e:
            logger.warning("gmail_body_undecodable", message_id=short_id(provider_message_id))
            raise BodyUnavailableError(
                "Message body could not be decoded", message_id=provider_message_id
            ) from e

    async def list_candidate_ids(self, checkpoint: SyncCheckpoint | None) -> list[str]:
        since = self.resolve_since(checkpoint, self.clock())
        page = await self.client.get(
            "/messages", params=self._list_params(since, self.default_folder, MAX_PAGE_SIZE)
        )
        return [item["id"] for item in page.get("messages", [])]

    async def disconnect(self) -> None:
        self.client.close()
