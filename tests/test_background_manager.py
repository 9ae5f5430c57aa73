"""Tests for background sync scheduling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from sermonsync.background.manager import (
    BackgroundSyncManager,
    BackgroundWindow,
    FixedWindowProvider,
    SyncPreferences,
)
from sermonsync.background.network import NetworkMonitor, NetworkStatus, PathSnapshot
from sermonsync.config import Settings
from sermonsync.protocols import NetworkError, SubscriptionRequiredError
from sermonsync.types import SyncResult

CONNECTED = PathSnapshot(reachable=True)
METERED = PathSnapshot(reachable=True, expensive=True)
OFFLINE = PathSnapshot(reachable=False)


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.sync_all = AsyncMock(return_value=SyncResult(pushed=1))
    return mock


@pytest.fixture
def monitor(clock):
    return NetworkMonitor(clock=clock)


@pytest.fixture
def preferences(store):
    return SyncPreferences(store)


@pytest.fixture
def provider():
    return FixedWindowProvider(seconds=30)


@pytest.fixture
def manager(orchestrator, monitor, preferences, clock, provider):
    manager = BackgroundSyncManager(orchestrator, monitor, preferences, clock, provider)
    yield manager
    manager.close()


async def go_online(manager, monitor, orchestrator, snapshot=CONNECTED):
    """Apply a snapshot and forget the sync it triggers."""
    monitor.update(snapshot)
    await manager.wait_idle()
    orchestrator.sync_all.reset_mock()


class TestConfiguration:
    def test_interval_and_window_from_settings(self, orchestrator, monitor, preferences, clock):
        settings = Settings(sync_interval_seconds=120, background_window_seconds=10)

        manager = BackgroundSyncManager(orchestrator, monitor, preferences, clock, settings=settings)
        try:
            assert manager.sync_interval == 120
            assert manager.window_provider.seconds == 10
        finally:
            manager.close()


class TestPreferences:
    def test_defaults(self, preferences):
        assert preferences.background_sync_enabled is True
        assert preferences.sync_on_metered is False

    def test_persisted(self, store, preferences):
        preferences.background_sync_enabled = False
        preferences.sync_on_metered = True

        reloaded = SyncPreferences(store)
        assert reloaded.background_sync_enabled is False
        assert reloaded.sync_on_metered is True


class TestCanSyncNow:
    @pytest.mark.parametrize(
        "snapshot, metered_allowed, expected",
        [
            (None, False, False),
            (CONNECTED, False, True),
            (OFFLINE, False, False),
            (METERED, False, False),
            (METERED, True, True),
        ],
    )
    @pytest.mark.asyncio
    async def test_policy(self, manager, monitor, preferences, snapshot, metered_allowed, expected):
        preferences.sync_on_metered = metered_allowed
        if snapshot is not None:
            monitor.update(snapshot)
            await manager.wait_idle()

        assert manager.can_sync_now() is expected


class TestNetworkTriggers:
    @pytest.mark.asyncio
    async def test_connect_triggers_sync(self, manager, monitor, orchestrator):
        monitor.update(CONNECTED)
        await manager.wait_idle()

        orchestrator.sync_all.assert_awaited_once_with(deadline=None)

    @pytest.mark.asyncio
    async def test_same_status_does_not_retrigger(self, manager, monitor, orchestrator):
        monitor.update(CONNECTED)
        monitor.update(CONNECTED)
        await manager.wait_idle()

        assert orchestrator.sync_all.await_count == 1

    @pytest.mark.asyncio
    async def test_reconnect_after_outage(self, manager, monitor, orchestrator):
        monitor.update(CONNECTED)
        monitor.update(OFFLINE)
        monitor.update(CONNECTED)
        await manager.wait_idle()

        assert orchestrator.sync_all.await_count == 2

    @pytest.mark.asyncio
    async def test_metered_link_needs_permission(self, manager, monitor, orchestrator):
        monitor.update(METERED)
        await manager.wait_idle()
        orchestrator.sync_all.assert_not_awaited()

        manager.set_sync_on_metered(True)
        monitor.update(OFFLINE)
        monitor.update(METERED)
        await manager.wait_idle()
        orchestrator.sync_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_errors_are_contained(self, manager, monitor, orchestrator):
        orchestrator.sync_all.side_effect = NetworkError("flaky")

        monitor.update(CONNECTED)
        await manager.wait_idle()

        orchestrator.sync_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_subscription_required_is_contained(self, manager, monitor, orchestrator):
        orchestrator.sync_all.side_effect = SubscriptionRequiredError()

        monitor.update(CONNECTED)
        task = manager.schedule_immediate_sync()

        assert await task is None
        await manager.wait_idle()


class TestPeriodicTimer:
    @pytest.mark.asyncio
    async def test_syncs_every_interval(self, manager, monitor, orchestrator, clock):
        await go_online(manager, monitor, orchestrator)
        manager.start()

        clock.advance(299)
        await manager.wait_idle()
        orchestrator.sync_all.assert_not_awaited()

        clock.advance(1)
        await manager.wait_idle()
        assert orchestrator.sync_all.await_count == 1

        clock.advance(300)
        await manager.wait_idle()
        assert orchestrator.sync_all.await_count == 2
        assert manager.timer_active

    @pytest.mark.asyncio
    async def test_skips_when_disabled_or_offline(self, manager, monitor, orchestrator, clock):
        manager.start()
        clock.advance(300)
        await manager.wait_idle()
        orchestrator.sync_all.assert_not_awaited()

        await go_online(manager, monitor, orchestrator)
        manager.disable_background_sync()
        clock.advance(300)
        await manager.wait_idle()
        orchestrator.sync_all.assert_not_awaited()
        assert manager.timer_active

        manager.enable_background_sync()
        clock.advance(300)
        await manager.wait_idle()
        orchestrator.sync_all.assert_awaited_once()


class TestBackgroundWindow:
    @pytest.mark.asyncio
    async def test_enter_background_syncs_within_window(
        self, manager, monitor, orchestrator, clock, provider
    ):
        await go_online(manager, monitor, orchestrator)
        manager.start()

        result = await manager.enter_background()

        assert result.pushed == 1
        orchestrator.sync_all.assert_awaited_once_with(deadline=clock.monotonic() + 30)
        assert provider.active == set()
        assert manager.window is None
        assert not manager.timer_active
        assert not manager.in_foreground

    @pytest.mark.asyncio
    async def test_window_released_when_sync_fails(self, manager, monitor, orchestrator, provider):
        await go_online(manager, monitor, orchestrator)
        orchestrator.sync_all.side_effect = NetworkError("dropped")

        assert await manager.enter_background() is None
        assert provider.active == set()

    @pytest.mark.asyncio
    async def test_no_window_when_offline_or_disabled(self, manager, monitor, orchestrator, provider):
        assert await manager.enter_background() is None

        await go_online(manager, monitor, orchestrator)
        manager.disable_background_sync()
        assert await manager.enter_background() is None

        orchestrator.sync_all.assert_not_awaited()
        assert provider.active == set()

    @pytest.mark.asyncio
    async def test_foreground_ends_window_and_syncs(self, manager, monitor, orchestrator, provider, clock):
        await go_online(manager, monitor, orchestrator)
        release = asyncio.Event()

        async def slow_sync(deadline=None):
            await release.wait()
            return SyncResult()

        orchestrator.sync_all.side_effect = slow_sync
        background = asyncio.create_task(manager.enter_background())
        while not provider.active:
            await asyncio.sleep(0)

        manager.enter_foreground()

        assert provider.active == set()
        assert manager.in_foreground
        assert manager.timer_active
        release.set()
        await background
        await manager.wait_idle()
        assert orchestrator.sync_all.await_count == 2

    @pytest.mark.asyncio
    async def test_second_background_request_is_ignored(self, manager, monitor, orchestrator, provider):
        await go_online(manager, monitor, orchestrator)
        release = asyncio.Event()

        async def slow_sync(deadline=None):
            await release.wait()
            return SyncResult()

        orchestrator.sync_all.side_effect = slow_sync
        first = asyncio.create_task(manager.enter_background())
        while not provider.active:
            await asyncio.sleep(0)

        assert await manager.enter_background() is None
        assert len(provider.active) == 1

        release.set()
        await first

    @pytest.mark.asyncio
    async def test_terminate_and_disable_end_window(self, manager, monitor, orchestrator, provider):
        await go_online(manager, monitor, orchestrator)
        release = asyncio.Event()

        async def slow_sync(deadline=None):
            await release.wait()
            return SyncResult()

        orchestrator.sync_all.side_effect = slow_sync
        background = asyncio.create_task(manager.enter_background())
        while not provider.active:
            await asyncio.sleep(0)

        manager.disable_background_sync()
        assert provider.active == set()

        release.set()
        await background
        manager.terminate()
        assert not manager.timer_active


class TestBackgroundWindowContext:
    @pytest.mark.asyncio
    async def test_deadline_and_release(self, clock, provider):
        async with BackgroundWindow(provider, clock) as window:
            assert window.active
            assert window.deadline == clock.monotonic() + 30
            clock.advance(10)
            assert window.remaining() == 20
            assert len(provider.active) == 1

        assert not window.active
        assert provider.active == set()
        window.end()

    @pytest.mark.asyncio
    async def test_released_on_exception(self, clock, provider):
        with pytest.raises(RuntimeError):
            async with BackgroundWindow(provider, clock):
                raise RuntimeError("boom")

        assert provider.active == set()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_unsubscribes_from_monitor(self, orchestrator, monitor, preferences, clock):
        manager = BackgroundSyncManager(orchestrator, monitor, preferences, clock)
        manager.start()

        manager.close()
        monitor.update(CONNECTED)
        await manager.wait_idle()

        orchestrator.sync_all.assert_not_awaited()
        assert not manager.timer_active
        assert monitor.status == NetworkStatus.CONNECTED
