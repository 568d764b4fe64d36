"""Tests for adapter construction from stored accounts."""

from datetime import UTC, datetime, timedelta

import pytest

from inbox_actions.auth.oauth import GoogleTokenRefresher, MicrosoftTokenRefresher
from inbox_actions.core.errors import ProviderUnavailableError
from inbox_actions.db.store import ImapCredentials, OAuthCredentials
from inbox_actions.providers import GmailProvider, GraphProvider, ImapProvider, create_provider
from inbox_actions.providers.factory import MICROSOFT_IMAP_SCOPES

EXPIRES = datetime(2024, 1, 15, 13, 0, tzinfo=UTC)


async def test_unknown_provider(store, sample_config):
    with pytest.raises(ProviderUnavailableError, match="Unknown provider"):
        await create_provider(store, "user-1", "POP3", sample_config)


@pytest.mark.parametrize("provider", ["GMAIL", "MICROSOFT_GRAPH", "IMAP"])
async def test_missing_credentials(store, sample_config, provider):
    with pytest.raises(ProviderUnavailableError):
        await create_provider(store, "user-1", provider, sample_config)


async def test_gmail(store, sample_config):
    await store.save_oauth_credentials(
        OAuthCredentials("user-1", "GMAIL", "token", "refresh", EXPIRES)
    )

    adapter = await create_provider(store, "user-1", "GMAIL", sample_config)

    assert isinstance(adapter, GmailProvider)
    assert adapter.default_folder == "INBOX"
    assert adapter.first_sync_lookback == timedelta(hours=24)
    assert isinstance(adapter.client.token_manager.refresher, GoogleTokenRefresher)
    await adapter.disconnect()


async def test_graph(store, sample_config):
    await store.save_oauth_credentials(
        OAuthCredentials("user-1", "MICROSOFT_GRAPH", "token", "refresh", EXPIRES)
    )

    adapter = await create_provider(store, "user-1", "MICROSOFT_GRAPH", sample_config)

    assert isinstance(adapter, GraphProvider)
    refresher = adapter.client.token_manager.refresher
    assert isinstance(refresher, MicrosoftTokenRefresher)
    assert refresher.tenant_id == "test-tenant"
    await adapter.disconnect()


async def test_imap_with_password(store, sample_config):
    await store.save_imap_credentials(
        ImapCredentials(
            user_id="user-1", host="imap.example.com", username="alice", password="secret"
        )
    )

    adapter = await create_provider(store, "user-1", "IMAP", sample_config)

    assert isinstance(adapter, ImapProvider)
    assert adapter.token_manager is None
    assert adapter.credentials.host == "imap.example.com"


async def test_imap_with_microsoft_oauth(store, sample_config):
    await store.save_imap_credentials(
        ImapCredentials(
            user_id="user-1",
            host="outlook.office365.com",
            username="alice@contoso.com",
            use_oauth2=True,
            oauth_provider="microsoft",
        )
    )

    adapter = await create_provider(store, "user-1", "IMAP", sample_config)

    refresher = adapter.token_manager.refresher
    assert isinstance(refresher, MicrosoftTokenRefresher)
    assert refresher.scopes == MICROSOFT_IMAP_SCOPES
    assert adapter.token_manager.provider == "IMAP"


async def test_graph_asks_for_text_bodies(store, sample_config):
    await store.save_oauth_credentials(
        OAuthCredentials("user-1", "MICROSOFT_GRAPH", "token", "refresh", EXPIRES)
    )

    adapter = await create_provider(store, "user-1", "MICROSOFT_GRAPH", sample_config)

    assert adapter.client.default_headers == {"Prefer": 'outlook.body-content-type="text"'}
    assert adapter.client._headers("token")["Prefer"] == 'outlook.body-content-type="text"'
    await adapter.disconnect()


async def test_gmail_sends_no_extra_headers(store, sample_config):
    await store.save_oauth_credentials(
        OAuthCredentials("user-1", "GMAIL", "token", "refresh", EXPIRES)
    )

    adapter = await create_provider(store, "user-1", "GMAIL", sample_config)

    assert "Prefer" not in adapter.client._headers("token")
    await adapter.disconnect()
