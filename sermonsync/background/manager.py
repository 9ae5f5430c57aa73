"""Background sync scheduling.

BackgroundSyncManager decides *when* to call SyncOrchestrator.sync_all:
on network recovery, on a periodic timer while the app is in the
foreground, and once inside the finite window the OS grants when the app
is backgrounded. It never retries on its own; a failed sync waits for the
next opportunity.
"""

import asyncio
import logging
from typing import Callable, Optional, Set

from sermonsync.clock import SystemClock
from sermonsync.config import Settings, get_settings
from sermonsync.protocols import Clock, SubscriptionRequiredError, WindowProvider
from sermonsync.storage.sqlite import SQLiteStore
from sermonsync.storage.sync_engine import SyncOrchestrator
from sermonsync.types import SyncResult, new_id

from .network import NetworkMonitor, NetworkStatus

logger = logging.getLogger(__name__)

BACKGROUND_SYNC_ENABLED_KEY = "background_sync_enabled"
SYNC_ON_METERED_KEY = "sync_on_metered"

DEFAULT_WINDOW_SECONDS = 30.0


class SyncPreferences:
    """User sync preferences, persisted in the local store."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    @property
    def background_sync_enabled(self) -> bool:
        return bool(self.store.kv_get(BACKGROUND_SYNC_ENABLED_KEY, True))

    @background_sync_enabled.setter
    def background_sync_enabled(self, value: bool) -> None:
        self.store.kv_set(BACKGROUND_SYNC_ENABLED_KEY, bool(value))

    @property
    def sync_on_metered(self) -> bool:
        return bool(self.store.kv_get(SYNC_ON_METERED_KEY, False))

    @sync_on_metered.setter
    def sync_on_metered(self, value: bool) -> None:
        self.store.kv_set(SYNC_ON_METERED_KEY, bool(value))


class FixedWindowProvider:
    """WindowProvider that grants a fixed number of seconds per request."""

    def __init__(self, seconds: float = DEFAULT_WINDOW_SECONDS):
        self.seconds = seconds
        self.active: Set[str] = set()

    def begin(self, name: str) -> tuple[str, float]:
        token = f"{name}-{new_id()}"
        self.active.add(token)
        return token, self.seconds

    def end(self, token: str) -> None:
        self.active.discard(token)


class BackgroundWindow:
    """A granted background execution window, released on every exit path.

    Usage::

        async with BackgroundWindow(provider, clock) as window:
            await orchestrator.sync_all(deadline=window.deadline)
    """

    def __init__(self, provider: WindowProvider, clock: Clock, name: str = "SyncData"):
        self.provider = provider
        self.clock = clock
        self.name = name
        self.token: Optional[str] = None
        self.deadline: Optional[float] = None

    async def __aenter__(self) -> "BackgroundWindow":
        self.token, seconds = self.provider.begin(self.name)
        self.deadline = self.clock.monotonic() + seconds
        logger.debug(f"Background window {self.token} opened for {seconds:.0f}s")
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.end()

    def end(self) -> None:
        """Release the window. Safe to call more than once."""
        if self.token is None:
            return
        token, self.token = self.token, None
        self.provider.end(token)
        logger.debug(f"Background window {token} ended")

    @property
    def active(self) -> bool:
        return self.token is not None

    def remaining(self) -> float:
        if self.deadline is None:
            return 0.0
        return max(self.deadline - self.clock.monotonic(), 0.0)


class BackgroundSyncManager:
    """Triggers syncs on connectivity changes, on a timer and on backgrounding."""

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        monitor: NetworkMonitor,
        preferences: SyncPreferences,
        clock: Optional[Clock] = None,
        window_provider: Optional[WindowProvider] = None,
        *,
        sync_interval: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.orchestrator = orchestrator
        self.monitor = monitor
        self.preferences = preferences
        self.clock = clock or SystemClock()
        self.window_provider = window_provider or FixedWindowProvider(
            settings.background_window_seconds
        )
        self.sync_interval = (
            settings.sync_interval_seconds if sync_interval is None else sync_interval
        )

        self._in_foreground = True
        self._timer = None
        self._window: Optional[BackgroundWindow] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] = monitor.subscribe(self._on_network_change)

    # === Policy ===

    def can_sync_now(self) -> bool:
        status = self.monitor.status
        if status == NetworkStatus.CONNECTED:
            return True
        if status == NetworkStatus.EXPENSIVE:
            return self.preferences.sync_on_metered
        return False

    @property
    def in_foreground(self) -> bool:
        return self._in_foreground

    @property
    def window(self) -> Optional[BackgroundWindow]:
        return self._window

    # === Triggers ===

    def _on_network_change(self, status: NetworkStatus) -> None:
        if status == NetworkStatus.CONNECTED or (
            status == NetworkStatus.EXPENSIVE and self.preferences.sync_on_metered
        ):
            self.schedule_immediate_sync()

    def schedule_immediate_sync(self) -> Optional[asyncio.Task]:
        """Start a sync now if the network allows it."""
        if not self.can_sync_now():
            return None
        return self._spawn(self._sync())

    def start(self) -> None:
        """Start the periodic foreground timer."""
        self._in_foreground = True
        self._schedule_tick()

    def _schedule_tick(self) -> None:
        self._cancel_timer()
        self._timer = self.clock.call_later(self.sync_interval, self._tick)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        self._timer = None
        if not self._in_foreground:
            return
        self._schedule_tick()
        if self.preferences.background_sync_enabled and self.can_sync_now():
            logger.debug("Periodic sync")
            self._spawn(self._sync())

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    # === Lifecycle ===

    async def enter_background(self) -> Optional[SyncResult]:
        """Use the OS-granted window for one best-effort sync."""
        self._in_foreground = False
        self._cancel_timer()
        if self._window is not None:
            return None
        if not self.preferences.background_sync_enabled or not self.can_sync_now():
            return None

        async with BackgroundWindow(self.window_provider, self.clock) as window:
            self._window = window
            try:
                return await self._sync(deadline=window.deadline)
            finally:
                self._window = None

    def enter_foreground(self) -> Optional[asyncio.Task]:
        self._in_foreground = True
        self._end_window()
        self._schedule_tick()
        return self.schedule_immediate_sync()

    def terminate(self) -> None:
        self._in_foreground = False
        self._end_window()
        self._cancel_timer()

    def _end_window(self) -> None:
        if self._window is not None:
            self._window.end()

    # === Preferences ===

    def enable_background_sync(self) -> None:
        self.preferences.background_sync_enabled = True

    def disable_background_sync(self) -> None:
        self.preferences.background_sync_enabled = False
        self._end_window()

    def set_sync_on_metered(self, enabled: bool) -> None:
        self.preferences.sync_on_metered = enabled

    # === Running Syncs ===

    async def _sync(self, deadline: Optional[float] = None) -> Optional[SyncResult]:
        try:
            return await self.orchestrator.sync_all(deadline=deadline)
        except SubscriptionRequiredError as e:
            logger.info(f"Sync skipped: {e}")
        except Exception as e:
            logger.warning(f"Sync failed, will retry at next opportunity: {e}", exc_info=True)
        return None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every sync this manager started."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        self.terminate()
        self._unsubscribe()
