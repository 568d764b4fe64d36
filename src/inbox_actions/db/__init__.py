"""Database layer for inbox-actions.

SQLite access with async operations. Metadata, actions, checkpoints,
credentials and connection state all live in one database file.

Usage:
    from inbox_actions.db import DatabaseStore, EmailMetadata

    store = DatabaseStore("data/inbox_actions.db")
    await store.initialize()

    created = await store.insert_email_metadata(
        EmailMetadata(
            user_id="user-1",
            provider="GMAIL",
            provider_message_id="18c2f0a",
            sender="alice@example.com",
            received_at=received_at,
        )
    )
"""

from inbox_actions.db.models import SCHEMA_VERSION, init_database, verify_schema
from inbox_actions.db.store import (
    PROVIDERS,
    Action,
    DatabaseStore,
    EmailMetadata,
    ImapCredentials,
    OAuthCredentials,
    Provider,
    ProviderConnection,
    SyncCheckpoint,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "PROVIDERS",
    "Provider",
    # Dataclasses
    "Action",
    "EmailMetadata",
    "ImapCredentials",
    "OAuthCredentials",
    "ProviderConnection",
    "SyncCheckpoint",
]
