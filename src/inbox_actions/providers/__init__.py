"""Mailbox adapters behind one contract.

Usage:
    from inbox_actions.providers import FetchOptions, create_provider

    async with await create_provider(store, "user-1", "GMAIL", config) as provider:
        created = await provider.fetch_new_emails(FetchOptions(max_results=100))
        body = await provider.get_email_body_for_analysis(created[0].provider_message_id)
"""

from inbox_actions.providers.base import (
    EmailProvider,
    FetchOptions,
    Listing,
    MessageRef,
    ProviderStatus,
)
from inbox_actions.providers.factory import create_provider
from inbox_actions.providers.gmail import GmailProvider
from inbox_actions.providers.graph import GraphProvider
from inbox_actions.providers.http import ApiClient
from inbox_actions.providers.imap import ImapProvider

__all__ = [
    "ApiClient",
    "EmailProvider",
    "FetchOptions",
    "GmailProvider",
    "GraphProvider",
    "ImapProvider",
    "Listing",
    "MessageRef",
    "ProviderStatus",
    "create_provider",
]
