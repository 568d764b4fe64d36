"""Custom exception types for inbox-actions.

Messages follow one rule: say what failed, why, and how to fix it.

Adapters raise these typed errors and orchestrators decide what to do with
them. Sync aborts the user's pass, analysis isolates the single message.
"""


class InboxActionsError(Exception):
    """Base exception for all inbox-actions errors."""

    pass


class ConfigValidationError(InboxActionsError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(InboxActionsError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class ProviderUnavailableError(InboxActionsError):
    """Raised when a mailbox has no usable credentials or configuration."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ReconnectRequiredError(InboxActionsError):
    """Raised when the stored grant can no longer be used.

    Covers a missing refresh token, a rejected refresh, and credentials the
    mailbox server refuses. The user has to reconnect the account.
    """

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ProviderAPIError(InboxActionsError):
    """Raised when a mailbox API returns a non-retryable error.

    Attributes:
        status_code: HTTP status code from the API (None for non-HTTP backends)
        error_code: Error code from the response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class DeltaTokenExpiredError(ProviderAPIError):
    """Raised when a stored delta cursor is rejected (410 Gone)."""

    def __init__(self, message: str, folder: str | None = None):
        super().__init__(message, status_code=410, error_code="SyncStateNotFound")
        self.folder = folder


class RateLimitExceeded(InboxActionsError):
    """Raised when a backend throttles us or the local bucket would wait too long.

    Attributes:
        retry_after: Seconds the server asked us to wait, if it said so
    """

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetworkError(InboxActionsError):
    """Raised for timeouts, dropped connections and 5xx responses."""

    pass


class BodyUnavailableError(InboxActionsError):
    """Raised when a message body cannot be fetched or decoded.

    Non-fatal: the provider contract turns this into a missing body.
    """

    def __init__(self, message: str, message_id: str | None = None):
        super().__init__(message)
        self.message_id = message_id


class DatabaseError(InboxActionsError):
    """Raised when SQLite operations fail."""

    pass


class RunInProgressError(InboxActionsError):
    """Raised when a run is requested for a user who already has one going."""

    def __init__(self, message: str, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id
