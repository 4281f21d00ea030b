"""Background scheduler for the daily renewal sweep.

Wraps an APScheduler AsyncIOScheduler with one cron job that runs
RenewalSweeper.run() once a day (default 06:00).
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.membership_sync.membership.sweeper import RenewalSweeper

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "membership_daily_renewal_sweep"


class SweepScheduler:
    """Daily cron trigger for the renewal sweep.

    Args:
        sweeper: RenewalSweeper to run.
        hour: Hour of day (server local time).
        minute: Minute of the hour.
    """

    def __init__(self, sweeper: RenewalSweeper, hour: int = 6, minute: int = 0) -> None:
        self._sweeper = sweeper
        self._hour = hour
        self._minute = minute
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if the job could not be registered."""
        try:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self._run_daily_sweep,
                trigger=CronTrigger(hour=self._hour, minute=self._minute),
                id=SWEEP_JOB_ID,
                name="Daily membership renewal sweep",
                misfire_grace_time=3600,
                coalesce=True,
                max_instances=1,
            )
            self._scheduler.start()
            self._started = True
            logger.info(
                "sweep_scheduler.started",
                schedule=f"Daily {self._hour:02d}:{self._minute:02d}",
            )
            return True
        except Exception as exc:
            logger.warning("sweep_scheduler.start_failed", error=str(exc))
            return False

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("sweep_scheduler.stopped")

    async def _run_daily_sweep(self) -> None:
        """Run one sweep. A failure is logged; the next day's run is unaffected."""
        logger.info("sweep_scheduler.sweep_triggered")
        try:
            report = await self._sweeper.run()
        except Exception as exc:
            logger.error("sweep_scheduler.sweep_failed", error=str(exc))
            return
        logger.info("sweep_scheduler.sweep_complete", **report.as_dict())


__all__ = ["SweepScheduler"]
