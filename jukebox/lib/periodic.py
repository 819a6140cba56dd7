"""Cancellable periodic task for asyncio services.

One active handle per instance: start() always cancels the previous loop
before creating a new one, so reconnect flows never stack timers.

Each tick runs as its own task.  A tick that hangs (slow network call) does
not hold up the next one, and stopping the loop leaves an in-flight tick to
finish on its own.

Usage:
    from jukebox.lib.periodic import PeriodicTask

    task = PeriodicTask("status", self._tick, interval=60)
    task.start()
    ...
    task.stop()
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run an async callback every *interval* seconds until stopped."""

    def __init__(self, name: str, callback, interval: float):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, immediate: bool = False):
        """(Re)start the loop.  Cancels any previously running loop first."""
        self.stop()
        self._task = asyncio.create_task(self._loop(immediate))
        logger.info("Started %s loop (interval=%ss)", self.name, self.interval)

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Stopped %s loop", self.name)

    async def _loop(self, immediate: bool):
        try:
            if immediate:
                self._spawn_tick()
            while True:
                await asyncio.sleep(self.interval)
                self._spawn_tick()
        except asyncio.CancelledError:
            return

    def _spawn_tick(self):
        tick = asyncio.create_task(self._run_tick())
        self._ticks.add(tick)
        tick.add_done_callback(self._ticks.discard)

    async def _run_tick(self):
        try:
            await self._callback()
        except Exception:
            logger.exception("%s tick failed", self.name)
