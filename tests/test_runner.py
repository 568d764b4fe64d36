"""Tests for the run coordinator."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from fakes import InMemoryProvider, MutableClock, make_email
from inbox_actions.core.errors import (
    ProviderUnavailableError,
    ReconnectRequiredError,
    RunInProgressError,
)
from inbox_actions.core.logging import get_correlation_id
from inbox_actions.db.store import ImapCredentials, OAuthCredentials
from inbox_actions.engine.runner import RunCoordinator

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
REQUEST = "Could you call me back tomorrow? Thanks."


class FakeFactory:
    """Stands in for create_provider and records what it built."""

    def __init__(self, store):
        self.store = store
        self.errors: dict[tuple[str, str], Exception] = {}
        self.gate: asyncio.Event | None = None
        self.built: list[InMemoryProvider] = []
        self.correlation_ids: list[str | None] = []

    async def __call__(self, store, user_id, provider, config, clock=None):
        self.correlation_ids.append(get_correlation_id())
        if self.gate is not None:
            await self.gate.wait()
        error = self.errors.get((user_id, provider))
        if error is not None:
            raise error

        message = make_email(
            f"{user_id}-{provider}-1",
            received_at=NOW - timedelta(hours=1),
            user_id=user_id,
            provider=provider,
        )
        adapter = InMemoryProvider(
            store,
            user_id=user_id,
            messages=[message],
            bodies={message.provider_message_id: REQUEST},
            clock=clock,
        )
        adapter.provider = provider
        self.built.append(adapter)
        return adapter


@pytest.fixture
def factory(store) -> FakeFactory:
    return FakeFactory(store)


@pytest.fixture
def coordinator(store, sample_config, factory) -> RunCoordinator:
    return RunCoordinator(store, sample_config, provider_factory=factory, clock=MutableClock(NOW))


class TestRunForUser:
    async def test_sync_then_analysis(self, coordinator, store):
        result = await coordinator.run_for_user("user-1", "GMAIL")

        assert result.user_id == "user-1"
        assert result.synced_emails == 1
        assert result.processed_emails == 1
        assert result.extracted_actions == 1
        assert result.duration_ms >= 0
        actions = await store.get_actions("user-1")
        assert [a.title for a in actions] == ["Call back"]

    async def test_run_id_is_the_correlation_id(self, coordinator, factory):
        result = await coordinator.run_for_user("user-1", "GMAIL")

        assert factory.correlation_ids == [result.run_id]
        assert get_correlation_id() is None

    async def test_adapter_is_disconnected(self, coordinator, factory):
        await coordinator.run_for_user("user-1", "GMAIL")

        assert factory.built[0].disconnected

    async def test_second_run_for_same_user_is_rejected(self, coordinator, factory):
        factory.gate = asyncio.Event()
        first = asyncio.create_task(coordinator.run_for_user("user-1", "GMAIL"))
        while not factory.correlation_ids:
            await asyncio.sleep(0)

        with pytest.raises(RunInProgressError):
            await coordinator.run_for_user("user-1", "IMAP")

        factory.gate.set()
        result = await first
        assert result.synced_emails == 1

    async def test_other_users_are_not_blocked(self, coordinator, factory):
        factory.gate = asyncio.Event()
        first = asyncio.create_task(coordinator.run_for_user("user-1", "GMAIL"))
        second = asyncio.create_task(coordinator.run_for_user("user-2", "GMAIL"))
        while len(factory.correlation_ids) < 2:
            await asyncio.sleep(0)

        factory.gate.set()
        results = await asyncio.gather(first, second)

        assert {r.user_id for r in results} == {"user-1", "user-2"}
        assert results[0].run_id != results[1].run_id

    async def test_factory_errors_propagate(self, coordinator, factory):
        factory.errors[("user-1", "GMAIL")] = ProviderUnavailableError("no credentials")

        with pytest.raises(ProviderUnavailableError):
            await coordinator.run_for_user("user-1", "GMAIL")

        # The lock is released after a failure
        factory.errors.clear()
        result = await coordinator.run_for_user("user-1", "GMAIL")
        assert result.synced_emails == 1

    async def test_lock_registry_does_not_grow(self, coordinator):
        for user_id in ("user-1", "user-2", "user-3"):
            await coordinator.run_for_user(user_id, "GMAIL")

        assert coordinator._user_locks == {}

    async def test_lock_is_kept_while_run_is_active(self, coordinator, factory):
        factory.gate = asyncio.Event()
        first = asyncio.create_task(coordinator.run_for_user("user-1", "GMAIL"))
        while not factory.correlation_ids:
            await asyncio.sleep(0)

        with pytest.raises(RunInProgressError):
            await coordinator.run_for_user("user-1", "IMAP")
        assert "user-1" in coordinator._user_locks

        factory.gate.set()
        await first
        assert coordinator._user_locks == {}

    async def test_lock_is_dropped_after_failure(self, coordinator, factory):
        factory.errors[("user-1", "GMAIL")] = ProviderUnavailableError("no credentials")

        with pytest.raises(ProviderUnavailableError):
            await coordinator.run_for_user("user-1", "GMAIL")

        assert coordinator._user_locks == {}


class TestRunAll:
    async def _connect(self, store, user_id: str, provider: str) -> None:
        if provider == "IMAP":
            await store.save_imap_credentials(
                ImapCredentials(user_id=user_id, host="imap.example.com", username=user_id)
            )
        else:
            await store.save_oauth_credentials(
                OAuthCredentials(user_id, provider, "token", "refresh", NOW + timedelta(hours=1))
            )

    async def test_every_connected_account_runs(self, coordinator, store):
        await self._connect(store, "user-1", "GMAIL")
        await self._connect(store, "user-1", "IMAP")
        await self._connect(store, "user-2", "MICROSOFT_GRAPH")

        batch = await coordinator.run_all()

        assert batch.failures == {}
        assert sorted((r.user_id, r.provider) for r in batch.results) == [
            ("user-1", "GMAIL"),
            ("user-1", "IMAP"),
            ("user-2", "MICROSOFT_GRAPH"),
        ]
        assert batch.accounts_processed == 3
        assert batch.extracted_actions == 3

    async def test_failing_account_does_not_stop_others(self, coordinator, store, factory):
        await self._connect(store, "user-1", "GMAIL")
        await self._connect(store, "user-1", "IMAP")
        await self._connect(store, "user-2", "GMAIL")
        factory.errors[("user-1", "GMAIL")] = ReconnectRequiredError("token revoked")

        batch = await coordinator.run_all()

        assert list(batch.failures) == ["user-1:GMAIL"]
        assert "ReconnectRequiredError: token revoked" == batch.failures["user-1:GMAIL"]
        assert sorted((r.user_id, r.provider) for r in batch.results) == [
            ("user-1", "IMAP"),
            ("user-2", "GMAIL"),
        ]

    async def test_disconnected_accounts_are_skipped(self, coordinator, store):
        await self._connect(store, "user-1", "GMAIL")
        await store.record_provider_error("user-1", "GMAIL", "revoked", disconnect=True)

        batch = await coordinator.run_all()

        assert batch.results == []
        assert batch.failures == {}

    async def test_nothing_connected(self, coordinator):
        batch = await coordinator.run_all()

        assert batch.accounts_processed == 0
