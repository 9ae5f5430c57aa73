"""Network reachability monitoring.

NetworkMonitor turns raw path observations into a NetworkStatus and tells
listeners only when that status changes. Observations come from a probe,
by default an HTTP health check against the sermon API.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import httpx

from sermonsync.clock import SystemClock
from sermonsync.config import Settings, get_settings
from sermonsync.protocols import Clock

logger = logging.getLogger(__name__)


class NetworkStatus(str, Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPENSIVE = "expensive"  # reachable over a metered link


@dataclass(frozen=True)
class PathSnapshot:
    """One observation of the network path."""

    reachable: bool
    expensive: bool = False


Probe = Callable[[], Awaitable[PathSnapshot]]
NetworkListener = Callable[[NetworkStatus], None]


def classify(snapshot: PathSnapshot) -> NetworkStatus:
    if not snapshot.reachable:
        return NetworkStatus.DISCONNECTED
    if snapshot.expensive:
        return NetworkStatus.EXPENSIVE
    return NetworkStatus.CONNECTED


class HealthCheckProbe:
    """Probe that GETs ``<api_base_url>/health``.

    Whether the link is metered cannot be seen from here, so it is taken
    from configuration.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        metered: Optional[bool] = None,
    ):
        self.settings = settings or get_settings()
        self.metered = self.settings.metered_network if metered is None else metered
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url, timeout=self.settings.health_timeout
        )

    async def __call__(self) -> PathSnapshot:
        try:
            response = await self._client.get("/health")
            reachable = response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            reachable = False
        return PathSnapshot(reachable=reachable, expensive=self.metered)

    async def aclose(self) -> None:
        await self._client.aclose()


class NetworkMonitor:
    """Publishes NetworkStatus transitions to subscribed listeners."""

    def __init__(
        self,
        probe: Optional[Probe] = None,
        *,
        poll_interval: Optional[float] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.probe = probe
        if poll_interval is None:
            poll_interval = (settings or get_settings()).network_poll_interval
        self.poll_interval = poll_interval
        self.clock = clock or SystemClock()
        self._status = NetworkStatus.UNKNOWN
        self._listeners: List[NetworkListener] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> NetworkStatus:
        return self._status

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        """Register for status transitions. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, snapshot: PathSnapshot) -> bool:
        """Apply an observation. Returns True if the status changed."""
        new_status = classify(snapshot)
        if new_status == self._status:
            return False
        logger.info(f"Network status changed: {self._status.value} -> {new_status.value}")
        self._status = new_status
        for listener in list(self._listeners):
            try:
                listener(new_status)
            except Exception as e:
                logger.warning(f"Network listener failed: {e}", exc_info=True)
        return True

    async def check(self) -> NetworkStatus:
        """Probe once and apply the result."""
        if self.probe is None:
            raise RuntimeError("NetworkMonitor has no probe configured")
        self.update(await self.probe())
        return self._status

    def start(self) -> None:
        """Start polling the probe on its own task."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._poll())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _poll(self) -> None:
        while True:
            try:
                await self.check()
            except Exception as e:
                logger.warning(f"Network probe failed: {e}")
                self.update(PathSnapshot(reachable=False))
            await self.clock.sleep(self.poll_interval)
