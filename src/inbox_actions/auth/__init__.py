"""OAuth token refresh for mailbox backends.

Usage:
    from inbox_actions.auth import MicrosoftTokenRefresher, TokenManager

    refresher = MicrosoftTokenRefresher(client_id, client_secret, tenant_id="common")
    manager = TokenManager(store, "user-1", "MICROSOFT_GRAPH", refresher)

    token = await manager.get_access_token()
"""

from inbox_actions.auth.oauth import (
    GoogleTokenRefresher,
    MicrosoftTokenRefresher,
    RefreshedToken,
    TokenManager,
)

__all__ = [
    "GoogleTokenRefresher",
    "MicrosoftTokenRefresher",
    "RefreshedToken",
    "TokenManager",
]
