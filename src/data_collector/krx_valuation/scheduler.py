"""
Recurring triggers for the valuation service (market timezone).

    directory refresh     hh:00 every hour, skipped during trading hours
    fundamentals refresh  hh:30 every 3 hours
    full valuation sweep  17:10 Mon-Fri, after the close

The jobs share one lock; a run that finds it held waits for it (see JobLock).
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.data_collector.config import KrxValuationConfig, krx_config
from src.data_collector.krx_valuation.data_models import JobSummary
from src.data_collector.krx_valuation.directory_sync import is_outside_trading_hours
from src.data_collector.krx_valuation.service import ValuationService
from src.utils.logger import get_logger

logger = get_logger(__name__, utility="scheduler")

DIRECTORY_JOB_ID = "krx_directory_refresh"
FUNDAMENTALS_JOB_ID = "krx_fundamentals_refresh"
SWEEP_JOB_ID = "krx_valuation_sweep"


class ScheduleTrigger:
    def __init__(
        self,
        service: ValuationService,
        config: Optional[KrxValuationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.service = service
        self.config = config or krx_config
        self.tz = ZoneInfo(self.config.MARKET_TIMEZONE)
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._scheduler = AsyncIOScheduler(timezone=self.tz)
        self._started = False

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def register_jobs(self) -> None:
        job_defaults = {"max_instances": 1, "coalesce": True, "replace_existing": True}
        self._scheduler.add_job(
            self.run_directory_refresh,
            CronTrigger(minute=self.config.DIRECTORY_CRON_MINUTE, timezone=self.tz),
            id=DIRECTORY_JOB_ID,
            **job_defaults,
        )
        self._scheduler.add_job(
            self.run_fundamentals_refresh,
            CronTrigger(hour="*/3", minute=self.config.FUNDAMENTALS_CRON_MINUTE, timezone=self.tz),
            id=FUNDAMENTALS_JOB_ID,
            **job_defaults,
        )
        self._scheduler.add_job(
            self.run_valuation_sweep,
            CronTrigger(
                day_of_week="mon-fri",
                hour=self.config.SWEEP_CRON_HOUR,
                minute=self.config.SWEEP_CRON_MINUTE,
                timezone=self.tz,
            ),
            id=SWEEP_JOB_ID,
            **job_defaults,
        )
        logger.info(f"Registered {len(self._scheduler.get_jobs())} KRX jobs ({self.config.MARKET_TIMEZONE})")

    def start(self) -> None:
        if not self._started:
            self.register_jobs()
            self._scheduler.start()
            self._started = True

    def stop(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def _log_summary(self, summary: JobSummary) -> None:
        logger.info(
            f"{summary.job}: {summary.status} "
            f"(success={summary.success_count}, failure={summary.failure_count})"
            + (f" - {summary.detail}" if summary.detail else "")
        )

    async def run_directory_refresh(self) -> Optional[JobSummary]:
        now = self._clock()
        if not is_outside_trading_hours(
            now, self.config.TRADING_OPEN_HOUR, self.config.TRADING_CLOSE_HOUR
        ):
            logger.debug(f"Directory refresh skipped during trading hours ({now:%H:%M})")
            return None
        summary = await self.service.refresh_directory_now()
        self._log_summary(summary)
        return summary

    async def run_fundamentals_refresh(self) -> JobSummary:
        summary = await self.service.refresh_fundamentals_now()
        self._log_summary(summary)
        return summary

    async def run_valuation_sweep(self) -> JobSummary:
        logger.info(f"Daily valuation sweep at {self._clock():%Y-%m-%d %H:%M %Z}")
        summary = await self.service.run_full_valuation_sweep_now()
        self._log_summary(summary)
        return summary
