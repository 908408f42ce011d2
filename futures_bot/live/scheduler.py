"""
Fixed-interval signal-check scheduler. At most one cycle in flight: a tick
that finds the previous cycle still running is skipped, not queued.
"""

from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from futures_bot.core.logger import current_cycle

logger = logging.getLogger("futures_bot.live.scheduler")


class Scheduler:
    def __init__(
        self,
        interval_s: Callable[[], float],
        cycle: Callable[[int], Awaitable[None]],
    ):
        # interval is read on every tick so settings updates apply without restart
        self._interval_s = interval_s
        self._cycle = cycle
        self._inflight: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self.cycle_id = 0
        self.cycles = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def tick(self) -> bool:
        """Launch a cycle unless one is still running. Returns True if launched."""
        if self.busy:
            self.skipped += 1
            logger.warning("Cycle %d still running, skipping tick (%d skipped so far)", self.cycle_id, self.skipped)
            return False
        self.cycle_id += 1
        self._inflight = asyncio.create_task(self._run_cycle(self.cycle_id), name=f"cycle-{self.cycle_id}")
        return True

    async def _run_cycle(self, cycle_id: int) -> None:
        current_cycle.set(str(cycle_id))
        try:
            await self._cycle(cycle_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            # a failed cycle must not stop the schedule
            logger.exception("Cycle %d failed", cycle_id)
        finally:
            self.cycles += 1

    async def run(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(max(0.0, float(self._interval_s())))

    def start(self) -> asyncio.Task:
        if not self.running:
            self._loop_task = asyncio.create_task(self.run(), name="scheduler")
        return self._loop_task

    async def stop(self) -> None:
        """Stop ticking and wait for the in-flight cycle to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.drain()

    async def drain(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})
