"""Real-time Clock backed by asyncio."""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable

from sermonsync.types import utc_now


class SystemClock:
    """Clock implementation for production use.

    ``call_later`` needs a running event loop.
    """

    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, seconds: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(seconds, 0.0), callback)
