"""Shared HTTP client for the Gmail and Microsoft Graph adapters.

Wraps a requests Session with:
- Bearer tokens from a TokenManager, refreshed and retried once on a 401
- A client-side token bucket per client instance
- Bounded retry (core.retry) for 429 and transient failures
- One place where HTTP errors become typed exceptions

requests is blocking, so every call runs in a worker thread.

Usage:
    from inbox_actions.providers.http import ApiClient

    client = ApiClient(GMAIL_BASE_URL, token_manager, provider="GMAIL")
    page = await client.get("/messages", params={"q": "after:1705276800"})
    client.close()
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import requests

from inbox_actions.auth.oauth import TokenManager
from inbox_actions.core.errors import (
    ProviderAPIError,
    RateLimitExceeded,
    ReconnectRequiredError,
    TransientNetworkError,
)
from inbox_actions.core.logging import get_logger
from inbox_actions.core.rate_limiter import TokenBucket
from inbox_actions.core.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After header as seconds (delta-seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


class ApiClient:
    """JSON-over-HTTPS client for one mailbox.

    Attributes:
        base_url: API root; endpoints are joined onto it
        provider: Provider label used in errors and logs
    """

    def __init__(
        self,
        base_url: str,
        token_manager: TokenManager,
        provider: str,
        retry_policy: RetryPolicy | None = None,
        rate_bucket: TokenBucket | None = None,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        default_headers: dict[str, str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_manager = token_manager
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_bucket = rate_bucket or TokenBucket(rate=10.0, capacity=10)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.default_headers = dict(default_headers or {})
        self._sleep = sleep

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint  # Already a full URL (nextLink / deltaLink)
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            **self.default_headers,
        }

    async def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a request with token refresh, rate limiting and retries.

        Returns:
            Parsed JSON body ({} for 204 responses)

        Raises:
            ReconnectRequiredError: If the token is rejected even after a refresh
            RateLimitExceeded: If still throttled after the last attempt
            TransientNetworkError: If still failing after the last attempt
            ProviderAPIError: For other 4xx responses
        """
        url = self._make_url(endpoint)
        return await call_with_retry(
            lambda: self._send_once(method, url, endpoint, params, json),
            self.retry_policy,
            operation_name=f"{self.provider} {method} {endpoint[:80]}",
            sleep=self._sleep,
        )

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("GET", endpoint, params=params)

    async def _send_once(
        self,
        method: str,
        url: str,
        endpoint: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        await self.rate_bucket.consume()

        token = await self.token_manager.get_access_token()
        response = await self._send(method, url, token, params, json)

        if response.status_code == 401:
            logger.info("access_token_rejected", provider=self.provider, endpoint=endpoint[:80])
            token = await self.token_manager.force_refresh()
            response = await self._send(method, url, token, params, json)
            if response.status_code == 401:
                raise ReconnectRequiredError(
                    f"{self.provider} rejected a freshly refreshed access token. "
                    "Reconnect the account.",
                    provider=self.provider,
                )

        return self._parse_response(response, method, endpoint)

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> requests.Response:
        logger.debug(
            "API request",
            provider=self.provider,
            method=method,
            params=list(params.keys()) if params else None,
        )
        try:
            return await asyncio.to_thread(
                self.session.request,
                method=method,
                url=url,
                headers=self._headers(token),
                params=params,
                json=json,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(
                f"{self.provider} request timed out after {self.timeout}s"
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientNetworkError(f"Connection to {self.provider} failed: {e}") from e

    def _parse_response(
        self, response: requests.Response, method: str, endpoint: str
    ) -> dict[str, Any]:
        status = response.status_code

        if status < 400:
            if status == 204 or not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise TransientNetworkError(
                    f"{self.provider} returned a malformed JSON body for {endpoint[:80]}"
                ) from e

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitExceeded(
                f"{self.provider} rate limit exceeded (429). Retry after: {retry_after} seconds.",
                retry_after=retry_after,
            )

        if status >= 500:
            raise TransientNetworkError(f"{self.provider} server error ({status})")

        self._raise_for_error(response, method, endpoint)
        return {}

    def _raise_for_error(self, response: requests.Response, method: str, endpoint: str) -> None:
        """Raise ProviderAPIError with details from the error body.

        Both Graph and Google wrap errors as {"error": {"code": ..., "message": ...}}.
        """
        try:
            error_info = response.json().get("error", {})
            if isinstance(error_info, dict):
                error_code = str(error_info.get("code") or error_info.get("status") or "unknown")
                error_message = error_info.get("message") or response.text
            else:
                error_code = str(error_info)
                error_message = response.text
        except (ValueError, AttributeError):
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.warning(
            "API error",
            provider=self.provider,
            method=method,
            endpoint=endpoint[:80],
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 403:
            message = (
                f"Permission denied (403): {error_message}. "
                "Check that the account granted read access to mail."
            )
        elif response.status_code == 404:
            message = f"Resource not found (404): {error_message}."
        else:
            message = f"{self.provider} API error ({response.status_code}): {error_message}"

        raise ProviderAPIError(message, status_code=response.status_code, error_code=error_code)

    def close(self) -> None:
        self.session.close()
