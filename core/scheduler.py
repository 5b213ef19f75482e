"""Task scheduler for the periodic engine jobs."""
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.dispatcher import ReminderDispatcher
from services.exchange_rate import ExchangeRateRefresher

logger = logging.getLogger(__name__)


class EngineScheduler:
    """Runs reminder dispatch and exchange rate refresh on intervals."""

    def __init__(
        self,
        dispatcher: ReminderDispatcher,
        refresher: ExchangeRateRefresher,
        reminder_interval: int = 600,
        rate_interval: int = 300
    ):
        """
        Initialize scheduler.

        Args:
            dispatcher: Reminder dispatcher of the tenant
            refresher: Exchange rate refresher of the tenant
            reminder_interval: Seconds between reminder scans
            rate_interval: Seconds between exchange rate checks
        """
        self.dispatcher = dispatcher
        self.refresher = refresher
        self.reminder_interval = reminder_interval
        self.rate_interval = rate_interval
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def start(self):
        """Start the scheduler; both jobs also run once right away."""
        if self.scheduler is not None:
            logger.warning("Scheduler already started")
            return

        self.scheduler = AsyncIOScheduler()
        now = datetime.now()

        self.scheduler.add_job(
            self.dispatcher.tick,
            IntervalTrigger(seconds=self.reminder_interval),
            id='renewal_reminders',
            name=f'Renewal reminders (every {self.reminder_interval}s)',
            next_run_time=now,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            self.refresher.tick,
            IntervalTrigger(seconds=self.rate_interval),
            id='exchange_rates',
            name=f'Exchange rate refresh (every {self.rate_interval}s)',
            next_run_time=now,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.start()
        logger.info("Scheduler started")

    async def stop(self):
        """Stop the scheduler, letting running ticks finish."""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Scheduler stopped")

    def job_ids(self):
        """Ids of the scheduled jobs."""
        if self.scheduler is None:
            return []
        return [job.id for job in self.scheduler.get_jobs()]
