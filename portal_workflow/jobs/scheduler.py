"""
In-process ticker for the automation engine.

One loop, one timer. ``stop()`` sets the stop token and waits for the loop
to exit; a tick already in progress finishes first.
"""

import asyncio
import logging

from ..services.automation_engine import AutomationEngine, TickReport

logger = logging.getLogger(__name__)


class AutomationScheduler:
    def __init__(
        self,
        engine: AutomationEngine,
        interval_seconds: float | None = None,
        run_immediately: bool = True,
    ):
        self._engine = engine
        self._interval = interval_seconds or engine.config.tick_seconds
        self._run_immediately = run_immediately
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.last_report: TickReport | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        await self._engine.start()
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="automation-scheduler")
        logger.info(f"Automation scheduler started (every {self._interval:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Automation scheduler stopped")

    async def run_once(self) -> TickReport:
        """Run a single tick now, outside the timer."""
        report = await self._engine.run_tick()
        self.last_report = report
        self.ticks += 1
        return report

    async def _loop(self) -> None:
        if not self._run_immediately and await self._wait_interval():
            return

        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                # The tick isolates per-project errors; this is catalog or rule loading
                logger.error(f"Automation tick failed: {e}", exc_info=True)

            if await self._wait_interval():
                return

    async def _wait_interval(self) -> bool:
        """Sleep one interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            return True
        except asyncio.TimeoutError:
            return False
