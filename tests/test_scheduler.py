"""Tests for the engine scheduler."""
import asyncio

from core.scheduler import EngineScheduler


class CountingJob:
    def __init__(self):
        self.calls = 0

    async def tick(self):
        self.calls += 1


async def test_jobs_run_at_start():
    dispatcher = CountingJob()
    refresher = CountingJob()
    scheduler = EngineScheduler(dispatcher, refresher, reminder_interval=600, rate_interval=300)

    await scheduler.start()
    try:
        assert sorted(scheduler.job_ids()) == ['exchange_rates', 'renewal_reminders']
        for _ in range(50):
            if dispatcher.calls and refresher.calls:
                break
            await asyncio.sleep(0.05)
    finally:
        await scheduler.stop()

    assert dispatcher.calls == 1
    assert refresher.calls == 1
    assert scheduler.job_ids() == []
