"""OAuth access-token lifecycle for Gmail, Microsoft Graph and IMAP XOAUTH2.

Grants are created by the external consent flow and stored in the database.
This module only keeps them fresh:

- Proactively: a token expiring within the refresh margin is refreshed before use
- Reactively: callers that get a 401 ask for a forced refresh and retry once

A missing refresh token or a refresh the identity provider rejects raises
ReconnectRequiredError; the user has to connect the mailbox again.

Usage:
    from inbox_actions.auth import GoogleTokenRefresher, TokenManager

    manager = TokenManager(store, "user-1", "GMAIL", GoogleTokenRefresher(client_id, secret))
    token = await manager.get_access_token()
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import msal
import requests

from inbox_actions.core.errors import (
    ProviderUnavailableError,
    ReconnectRequiredError,
    TransientNetworkError,
)
from inbox_actions.core.logging import get_logger
from inbox_actions.db.store import DatabaseStore, OAuthCredentials, Provider

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_AUTHORITY = "https://login.microsoftonline.com/{tenant_id}"

# Used when the token endpoint omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RefreshedToken:
    """Result of a refresh_token grant."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


class GoogleTokenRefresher:
    """Refreshes Google access tokens against the OAuth token endpoint."""

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        token_url: str = GOOGLE_TOKEN_URL,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def refresh(self, refresh_token: str) -> RefreshedToken:
        """Exchange a refresh token for a new access token (blocking).

        Raises:
            ReconnectRequiredError: If the grant was rejected
            TransientNetworkError: If the token endpoint could not be reached
        """
        if not self.client_id:
            raise ReconnectRequiredError(
                "Google OAuth client is not configured. "
                "Set oauth.google.client_id in config.yaml.",
                provider="GMAIL",
            )

        try:
            response = self.session.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret or "",
                },
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientNetworkError(f"Google token endpoint unreachable: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Google token endpoint returned {response.status_code}"
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError:
            data = {}

        if response.status_code != 200 or "access_token" not in data:
            reason = data.get("error_description") or data.get("error") or response.text[:200]
            raise ReconnectRequiredError(
                f"Google refused to refresh the access token: {reason}. "
                "Reconnect the Gmail account.",
                provider="GMAIL",
            )

        expires_in = int(data.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
        return RefreshedToken(
            access_token=data["access_token"],
            expires_at=_utc_now() + timedelta(seconds=expires_in),
            refresh_token=data.get("refresh_token"),
        )


class MicrosoftTokenRefresher:
    """Refreshes Microsoft identity platform tokens via MSAL."""

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        tenant_id: str = "common",
        scopes: list[str] | None = None,
        app: msal.ClientApplication | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_id = tenant_id
        self.scopes = scopes or ["Mail.Read"]
        self._app = app

    @property
    def app(self) -> msal.ClientApplication:
        if self._app is None:
            if not self.client_id:
                raise ReconnectRequiredError(
                    "Microsoft OAuth client is not configured. "
                    "Set oauth.microsoft.client_id in config.yaml.",
                    provider="MICROSOFT_GRAPH",
                )
            authority = MICROSOFT_AUTHORITY.format(tenant_id=self.tenant_id)
            if self.client_secret:
                self._app = msal.ConfidentialClientApplication(
                    self.client_id,
                    authority=authority,
                    client_credential=self.client_secret,
                )
            else:
                self._app = msal.PublicClientApplication(self.client_id, authority=authority)
        return self._app

    def refresh(self, refresh_token: str) -> RefreshedToken:
        """Exchange a refresh token for a new access token (blocking).

        Raises:
            ReconnectRequiredError: If the grant was rejected
            TransientNetworkError: If the authority could not be reached
        """
        try:
            result = self.app.acquire_token_by_refresh_token(refresh_token, scopes=self.scopes)
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(f"Microsoft identity platform unreachable: {e}") from e

        if not result or "access_token" not in result:
            reason = (result or {}).get("error_description") or (result or {}).get("error")
            raise ReconnectRequiredError(
                f"Microsoft refused to refresh the access token: {reason}. "
                "Reconnect the Microsoft account.",
                provider="MICROSOFT_GRAPH",
            )

        expires_in = int(result.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
        return RefreshedToken(
            access_token=result["access_token"],
            expires_at=_utc_now() + timedelta(seconds=expires_in),
            refresh_token=result.get("refresh_token"),
        )


class TokenManager:
    """Hands out valid access tokens for one (user, provider) grant.

    Refreshed tokens are persisted before they are returned, so a crash right
    after a refresh never loses a rotated refresh token.
    """

    def __init__(
        self,
        store: DatabaseStore,
        user_id: str,
        provider: Provider,
        refresher: GoogleTokenRefresher | MicrosoftTokenRefresher,
        refresh_margin: timedelta = timedelta(seconds=300),
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.user_id = user_id
        self.provider = provider
        self.refresher = refresher
        self.refresh_margin = refresh_margin
        self._clock = clock or _utc_now
        self._lock = asyncio.Lock()

    async def get_access_token(self) -> str:
        """A token valid for at least the refresh margin."""
        async with self._lock:
            credentials = await self._load()
            if credentials.access_token and not self._expiring(credentials.expires_at):
                return credentials.access_token
            logger.debug("access_token_expiring", provider=self.provider)
            return await self._refresh(credentials)

    async def force_refresh(self) -> str:
        """Refresh regardless of the stored expiry (after a 401)."""
        async with self._lock:
            credentials = await self._load()
            return await self._refresh(credentials)

    def _expiring(self, expires_at: datetime | None) -> bool:
        if expires_at is None:
            return False
        return expires_at - self.refresh_margin <= self._clock()

    async def _load(self) -> OAuthCredentials:
        credentials = await self.store.get_oauth_credentials(self.user_id, self.provider)
        if credentials is None:
            raise ProviderUnavailableError(
                f"No OAuth credentials stored for {self.provider}. Connect the account first.",
                provider=self.provider,
            )
        return credentials

    async def _refresh(self, credentials: OAuthCredentials) -> str:
        if not credentials.refresh_token:
            raise ReconnectRequiredError(
                f"No refresh token stored for {self.provider}; the access token cannot be "
                "renewed. Reconnect the account.",
                provider=self.provider,
            )

        try:
            token = await asyncio.to_thread(self.refresher.refresh, credentials.refresh_token)
        except ReconnectRequiredError:
            logger.warning("token_refresh_rejected", provider=self.provider)
            raise

        await self.store.update_access_token(
            self.user_id,
            self.provider,
            token.access_token,
            token.expires_at,
            refresh_token=token.refresh_token,
        )
        logger.info(
            "access_token_refreshed",
            provider=self.provider,
            expires_at=token.expires_at.isoformat(),
            rotated_refresh_token=token.refresh_token is not None,
        )
        return token.access_token
