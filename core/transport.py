from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Union

from core.events import SubscriberList

logger = logging.getLogger(__name__)

TimeSource = Callable[[], Union[Optional[float], Awaitable[Optional[float]]]]
UpdateCallback = Callable[[float], None]


class TransportClock:
    """
    Latest observed transport position.

    Matching always uses the most recent observation; nothing here waits for
    a fresher sample.
    """

    def __init__(self, *, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._time = 0.0
        self._observed_at = monotonic()
        self._playing = False
        self.updates: SubscriberList[UpdateCallback] = SubscriberList("transport.updates")

    @property
    def playing(self) -> bool:
        return self._playing

    def current(self) -> float:
        return self._time

    def update(self, seconds: float, *, playing: bool = True) -> None:
        self._time = max(0.0, float(seconds))
        self._observed_at = self._monotonic()
        self._playing = bool(playing)
        self.updates.emit(self._time)

    def project(self, monotonic_ts: float) -> float:
        """Transport time at a monotonic instant, extrapolated from the last sample while playing."""
        if not self._playing:
            return self._time
        return max(0.0, self._time + (monotonic_ts - self._observed_at))


class TransportPoller:
    """
    Polls a time source on the event loop and feeds a TransportClock.

    The source may be sync or async and may return None (no position yet).
    Errors from the source are logged and polling continues.
    """

    def __init__(
        self,
        source: TimeSource,
        clock: TransportClock,
        *,
        interval_ms: int = 100,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be > 0")
        self._source = source
        self.clock = clock
        self.interval_s = interval_ms / 1000.0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def poll_once(self) -> Optional[float]:
        value = self._source()
        if inspect.isawaitable(value):
            value = await value
        if value is None:
            return None
        self.clock.update(float(value), playing=True)
        return float(value)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Transport source failed: %s", e)
            await asyncio.sleep(self.interval_s)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
