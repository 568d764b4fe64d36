"""Build a ready-to-use adapter for a stored (user, provider) account."""

import os
from collections.abc import Callable
from datetime import datetime, timedelta

from inbox_actions.auth.oauth import GoogleTokenRefresher, MicrosoftTokenRefresher, TokenManager
from inbox_actions.config_schema import AppConfig
from inbox_actions.core.errors import ProviderUnavailableError
from inbox_actions.core.rate_limiter import TokenBucket
from inbox_actions.core.retry import RetryPolicy
from inbox_actions.db.store import PROVIDERS, DatabaseStore, Provider
from inbox_actions.providers.base import EmailProvider
from inbox_actions.providers.gmail import GMAIL_BASE_URL, GmailProvider
from inbox_actions.providers.graph import GRAPH_BASE_URL, TEXT_BODY_HEADERS, GraphProvider
from inbox_actions.providers.http import ApiClient
from inbox_actions.providers.imap import ImapProvider

MICROSOFT_IMAP_SCOPES = ["https://outlook.office.com/IMAP.AccessAsUser.All"]


def _secret(env_var: str) -> str | None:
    return os.environ.get(env_var) or None


def google_refresher(config: AppConfig) -> GoogleTokenRefresher:
    google = config.oauth.google
    return GoogleTokenRefresher(
        google.client_id,
        _secret(google.client_secret_env),
        token_url=google.token_url,
    )


def microsoft_refresher(
    config: AppConfig, scopes: list[str] | None = None
) -> MicrosoftTokenRefresher:
    microsoft = config.oauth.microsoft
    return MicrosoftTokenRefresher(
        microsoft.client_id,
        _secret(microsoft.client_secret_env),
        tenant_id=microsoft.tenant_id,
        scopes=scopes or microsoft.scopes,
    )


async def create_provider(
    store: DatabaseStore,
    user_id: str,
    provider: Provider,
    config: AppConfig,
    clock: Callable[[], datetime] | None = None,
) -> EmailProvider:
    """Create the adapter for one account.

    Raises:
        ProviderUnavailableError: If the provider is unknown or no credentials are stored
    """
    if provider not in PROVIDERS:
        raise ProviderUnavailableError(f"Unknown provider '{provider}'", provider=provider)

    lookback = timedelta(hours=config.sync.first_sync_lookback_hours)
    refresh_margin = timedelta(seconds=config.oauth.refresh_margin_seconds)
    retry_policy = RetryPolicy.from_config(config.retry)

    if provider == "IMAP":
        credentials = await store.get_imap_credentials(user_id)
        if credentials is None:
            raise ProviderUnavailableError(
                f"No IMAP account stored for user '{user_id}'", provider=provider
            )

        token_manager = None
        if credentials.use_oauth2:
            if credentials.oauth_provider == "microsoft":
                refresher = microsoft_refresher(config, MICROSOFT_IMAP_SCOPES)
            else:
                refresher = google_refresher(config)
            token_manager = TokenManager(
                store, user_id, "IMAP", refresher, refresh_margin=refresh_margin
            )

        return ImapProvider(
            store,
            user_id,
            credentials,
            token_manager=token_manager,
            retry_policy=retry_policy,
            timeout=config.imap.timeout_seconds,
            fetch_batch_size=config.imap.fetch_batch_size,
            first_sync_lookback=lookback,
            clock=clock,
        )

    if await store.get_oauth_credentials(user_id, provider) is None:
        raise ProviderUnavailableError(
            f"No {provider} grant stored for user '{user_id}'", provider=provider
        )

    rate = config.rate_limit
    if provider == "GMAIL":
        token_manager = TokenManager(
            store, user_id, provider, google_refresher(config), refresh_margin=refresh_margin
        )
        client = ApiClient(
            GMAIL_BASE_URL,
            token_manager,
            provider,
            retry_policy=retry_policy,
            rate_bucket=TokenBucket(rate=rate.gmail_rate, capacity=rate.gmail_capacity),
        )
        return GmailProvider(
            store,
            user_id,
            client,
            default_folder=config.sync.default_folder,
            first_sync_lookback=lookback,
            clock=clock,
        )

    token_manager = TokenManager(
        store, user_id, provider, microsoft_refresher(config), refresh_margin=refresh_margin
    )
    client = ApiClient(
        GRAPH_BASE_URL,
        token_manager,
        provider,
        retry_policy=retry_policy,
        rate_bucket=TokenBucket(rate=rate.graph_rate, capacity=rate.graph_capacity),
        default_headers=TEXT_BODY_HEADERS,
    )
    return GraphProvider(
        store,
        user_id,
        client,
        default_folder=config.sync.default_folder,
        first_sync_lookback=lookback,
        clock=clock,
    )
