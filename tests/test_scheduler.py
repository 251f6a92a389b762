"""Tests for the in-process automation scheduler."""

import asyncio

from portal_workflow.jobs.scheduler import AutomationScheduler


async def wait_for_ticks(scheduler: AutomationScheduler, count: int, timeout: float = 5.0):
    async def poll():
        while scheduler.ticks < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestAutomationScheduler:
    async def test_run_once(self, engine, make_project):
        await make_project()
        scheduler = AutomationScheduler(engine)

        report = await scheduler.run_once()

        assert report.projects_evaluated == 1
        assert scheduler.ticks == 1
        assert scheduler.last_report is report

    async def test_start_ticks_until_stopped(self, engine):
        scheduler = AutomationScheduler(engine, interval_seconds=0.05)

        await scheduler.start()
        assert scheduler.running

        await wait_for_ticks(scheduler, 2)
        await scheduler.stop()

        assert not scheduler.running
        ticks = scheduler.ticks
        await asyncio.sleep(0.1)
        assert scheduler.ticks == ticks

    async def test_stop_interrupts_the_wait(self, engine):
        scheduler = AutomationScheduler(engine, interval_seconds=3600, run_immediately=False)

        await scheduler.start()
        await asyncio.wait_for(scheduler.stop(), timeout=1.0)

        assert scheduler.ticks == 0
        assert not scheduler.running

    async def test_start_twice_keeps_one_loop(self, engine):
        scheduler = AutomationScheduler(engine, interval_seconds=3600)

        await scheduler.start()
        await scheduler.start()
        await wait_for_ticks(scheduler, 1)
        await scheduler.stop()

        assert scheduler.ticks == 1

    async def test_stop_without_start(self, engine):
        scheduler = AutomationScheduler(engine)

        await scheduler.stop()

        assert not scheduler.running

    async def test_interval_defaults_to_engine_config(self, engine):
        assert AutomationScheduler(engine)._interval == engine.config.tick_seconds
