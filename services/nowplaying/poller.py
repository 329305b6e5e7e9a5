"""
Periodic driver that never overlaps itself.

A ``PollingLoop`` runs ``cycle()`` every ``interval`` seconds, measured from
the end of the previous cycle, so a slow cycle delays the next one instead
of stacking on top of it.  Out-of-band requests (``request()``) join the
cycle already in flight, if any, rather than starting a second one.

Usage:
    poll = PollingLoop("metadata", 1.0, aggregator.poll_cycle)
    poll.start()
    poll.request_later(0.1)   # e.g. after a PlayPause
    await poll.stop()
"""

import asyncio
import logging

logger = logging.getLogger("nowplaying.poller")


class PollingLoop:

    def __init__(self, name: str, interval: float, cycle):
        self.name = name
        self.interval = interval
        self._cycle = cycle
        self._inflight: asyncio.Task | None = None
        self._task: asyncio.Task | None = None
        self._timers: set[asyncio.TimerHandle] = set()
        self.running = False
        self.cycles = 0

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def request(self) -> asyncio.Task:
        """Start a cycle now, or return the one already running."""
        if not self.busy:
            self._inflight = asyncio.ensure_future(self._run_cycle())
        return self._inflight

    async def trigger(self):
        """Run (or join) a cycle and wait for it to finish."""
        return await asyncio.shield(self.request())

    def request_later(self, delay: float):
        loop = asyncio.get_running_loop()
        handle = None

        def fire():
            self._timers.discard(handle)
            self.request()

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    async def _run_cycle(self):
        try:
            return await self._cycle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("%s poll cycle failed: %s", self.name, e)
            return None
        finally:
            self.cycles += 1

    async def run(self):
        self.running = True
        logger.info("%s poll started (every %.2fs)", self.name, self.interval)
        while self.running:
            await self.trigger()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        self._task = asyncio.ensure_future(self.run())
        return self._task

    async def stop(self):
        self.running = False
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for task in (self._task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._inflight = None
