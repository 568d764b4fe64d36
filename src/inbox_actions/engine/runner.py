"""Run coordinator: one sync + analysis pass per connected account.

Each run gets a UUID4 run_id, set as the logging correlation id, so every
line logged by the adapters and orchestrators during that run can be grouped.

At most one run per user is active at a time. A second request for a user
whose run is in progress raises RunInProgressError instead of waiting.

Usage:
    from inbox_actions.engine.runner import RunCoordinator

    coordinator = RunCoordinator(store, config)
    result = await coordinator.run_for_user("user-1", "GMAIL")
    batch = await coordinator.run_all()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from inbox_actions.core.errors import RunInProgressError
from inbox_actions.core.logging import get_logger, set_correlation_id
from inbox_actions.engine.analysis import AnalysisOrchestrator
from inbox_actions.extraction.engine import ActionExtractor
from inbox_actions.providers.base import EmailProvider, FetchOptions
from inbox_actions.providers.factory import create_provider

if TYPE_CHECKING:
    from inbox_actions.config_schema import AppConfig
    from inbox_actions.db.store import DatabaseStore, Provider

logger = get_logger(__name__)

# Users processed concurrently by run_all
MAX_CONCURRENT_USERS = 4

ProviderFactory = Callable[..., Awaitable[EmailProvider]]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class UserRunResult:
    """Result of one run for one (user, provider)."""

    run_id: str
    user_id: str
    provider: Provider
    duration_ms: int = 0
    synced_emails: int = 0
    processed_emails: int = 0
    extracted_actions: int = 0
    skipped_emails: int = 0


@dataclass
class BatchRunResult:
    """Result of a run over every connected account."""

    results: list[UserRunResult] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def accounts_processed(self) -> int:
        return len(self.results)

    @property
    def extracted_actions(self) -> int:
        return sum(result.extracted_actions for result in self.results)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class RunCoordinator:
    """Runs sync then analysis for stored accounts.

    Attributes:
        store: Shared persistent store
        config: Application configuration
    """

    def __init__(
        self,
        store: DatabaseStore,
        config: AppConfig,
        provider_factory: ProviderFactory = create_provider,
        extractor: ActionExtractor | None = None,
        clock: Callable[[], datetime] | None = None,
        max_concurrent_users: int = MAX_CONCURRENT_USERS,
    ):
        self.store = store
        self.config = config
        self._provider_factory = provider_factory
        self._extractor = extractor or ActionExtractor.from_config(config)
        self._clock = clock
        self._max_concurrent_users = max_concurrent_users
        self._user_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    def _forget_lock(self, user_id: str, lock: asyncio.Lock) -> None:
        # Concurrent runs are rejected rather than queued, so nothing waits on it
        if not lock.locked() and self._user_locks.get(user_id) is lock:
            del self._user_locks[user_id]

    async def run_for_user(self, user_id: str, provider: Provider) -> UserRunResult:
        """Sync new metadata, then analyze pending records, for one account.

        Raises:
            RunInProgressError: If a run for this user is already active
            ReconnectRequiredError, ProviderUnavailableError: If the account is unusable
        """
        lock = self._lock_for(user_id)
        if lock.locked():
            raise RunInProgressError(
                f"A run for user '{user_id}' is already in progress", user_id=user_id
            )

        await lock.acquire()
        try:
            run_id = str(uuid.uuid4())
            set_correlation_id(run_id)
            start_time = time.monotonic()
            result = UserRunResult(run_id=run_id, user_id=user_id, provider=provider)

            logger.info("run_started", user_id=user_id, provider=provider)
            try:
                adapter = await self._provider_factory(
                    self.store, user_id, provider, self.config, clock=self._clock
                )
                async with adapter:
                    created = await adapter.fetch_new_emails(
                        FetchOptions(max_results=self.config.sync.max_emails_to_sync)
                    )
                    result.synced_emails = len(created)

                    analysis = await AnalysisOrchestrator(
                        self.store,
                        self._extractor,
                        max_emails=self.config.sync.max_emails_to_analyze,
                    ).analyze(adapter)
                    result.processed_emails = analysis.processed_emails
                    result.extracted_actions = analysis.extracted_actions
                    result.skipped_emails = analysis.skipped_emails
            finally:
                result.duration_ms = int((time.monotonic() - start_time) * 1000)
                set_correlation_id(None)

            logger.info(
                "run_complete",
                run_id=run_id,
                user_id=user_id,
                provider=provider,
                duration_ms=result.duration_ms,
                synced=result.synced_emails,
                processed=result.processed_emails,
                actions=result.extracted_actions,
                skipped=result.skipped_emails,
            )
            return result
        finally:
            lock.release()
            self._forget_lock(user_id, lock)

    async def run_all(self) -> BatchRunResult:
        """Run every connected account. A failing account never stops the others.

        Accounts of the same user run one after another; different users run
        concurrently, up to max_concurrent_users at a time.
        """
        accounts = await self.store.list_connected_accounts()
        by_user: dict[str, list[Provider]] = {}
        for user_id, provider in accounts:
            by_user.setdefault(user_id, []).append(provider)

        batch = BatchRunResult()
        semaphore = asyncio.Semaphore(self._max_concurrent_users)

        async def run_user(user_id: str, providers: list[Provider]) -> None:
            async with semaphore:
                for provider in providers:
                    key = f"{user_id}:{provider}"
                    try:
                        batch.results.append(await self.run_for_user(user_id, provider))
                    except Exception as e:
                        batch.failures[key] = f"{type(e).__name__}: {e}"
                        logger.error(
                            "run_failed",
                            user_id=user_id,
                            provider=provider,
                            error_type=type(e).__name__,
                            error=str(e)[:200],
                        )

        await asyncio.gather(*(run_user(user, providers) for user, providers in by_user.items()))

        logger.info(
            "batch_run_complete",
            accounts=len(accounts),
            succeeded=batch.accounts_processed,
            failed=len(batch.failures),
            actions=batch.extracted_actions,
        )
        return batch
