from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from src.data_collector.config import KrxValuationConfig, krx_config
from src.data_collector.krx_valuation.batch_job import FundamentalsBatchJob
from src.data_collector.krx_valuation.data_models import JobSummary, ValuationResult
from src.data_collector.krx_valuation.directory_sync import InstrumentDirectorySync
from src.data_collector.krx_valuation.errors import KrxValuationError
from src.data_collector.krx_valuation.job_lock import JobLock
from src.data_collector.krx_valuation.page_fetcher import PageFetcher
from src.data_collector.krx_valuation.repository import InstrumentRepository
from src.data_collector.krx_valuation.snapshot_store import ResultSnapshotStore
from src.utils.logger import get_logger


logger = get_logger(__name__)


class ValuationService:
    """
    Trigger and query surface: directory refresh, fundamentals refresh and full
    sweep (each under the shared job lock), plus snapshot reads.
    """

    def __init__(
        self,
        config: Optional[KrxValuationConfig] = None,
        repo: Optional[InstrumentRepository] = None,
        snapshot_store: Optional[ResultSnapshotStore] = None,
        fetcher_factory: Optional[Callable[[], PageFetcher]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or krx_config
        self.repo = repo or InstrumentRepository(statement_timeout=self.config.OPERATION_TIMEOUT)
        self.snapshot_store = snapshot_store or ResultSnapshotStore(config=self.config)
        self._fetcher_factory = fetcher_factory or (lambda: PageFetcher(self.config))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._schema_ready = False

    def _lock(self) -> JobLock:
        return JobLock(
            self.repo,
            self.config.JOB_LOCK_NAME,
            self.config.JOB_LOCK_TTL_SECONDS,
            wait_seconds=self.config.JOB_LOCK_WAIT_SECONDS,
            poll_seconds=self.config.JOB_LOCK_POLL_SECONDS,
        )

    async def _ensure_schema(self) -> None:
        if not self._schema_ready:
            await asyncio.to_thread(self.repo.ensure_schema)
            self._schema_ready = True

    def _summary(self, job: str, started_at: datetime, status: str, **kwargs) -> JobSummary:
        return JobSummary(
            job=job, status=status, started_at=started_at, finished_at=self._clock(), **kwargs
        )

    async def refresh_directory_now(self, full_resync: bool = False) -> JobSummary:
        job = "directory_refresh"
        started_at = self._clock()
        await self._ensure_schema()
        async with self._lock() as lock:
            if not lock.acquired:
                return self._summary(job, started_at, "skipped", detail="another job is running")
            try:
                async with self._fetcher_factory() as fetcher:
                    sync = InstrumentDirectorySync(fetcher, repo=self.repo, config=self.config)
                    report = await sync.refresh_directory(full_resync=full_resync)
            except KrxValuationError as e:
                logger.error(f"Directory refresh failed: {e}")
                return self._summary(job, started_at, "failed", detail=str(e))

        dropped = sum(report.dropped_rows.values())
        return self._summary(
            job,
            started_at,
            "completed",
            success_count=report.total,
            failure_count=dropped,
            detail=f"trade date {report.trade_date}, {report.treasury_enriched} treasury-enriched",
        )

    async def _sweep(self, job: str, codes: Optional[Iterable[str]], save_snapshot: bool) -> JobSummary:
        started_at = self._clock()
        await self._ensure_schema()
        async with self._lock() as lock:
            if not lock.acquired:
                return self._summary(job, started_at, "skipped", detail="another job is running")

            instruments = await asyncio.to_thread(self.repo.fetch_instruments, codes)
            if not instruments:
                logger.warning(f"{job}: no instruments to process")
                return self._summary(job, started_at, "completed", detail="no instruments")

            async with self._fetcher_factory() as fetcher:
                batch = FundamentalsBatchJob(fetcher, repo=self.repo, config=self.config)
                run = await batch.run(instruments, persist=True, heartbeat=lock.renew)

        detail = f"{run.valued_count} valued, {run.no_valuation_count} without valuation"
        if run.all_failed:
            logger.error(f"{job}: every item failed; snapshot left untouched")
            return self._summary(
                job,
                started_at,
                "failed",
                success_count=run.success_count,
                failure_count=run.failure_count,
                detail=detail,
            )

        if save_snapshot:
            await asyncio.to_thread(self.snapshot_store.save, run.results)
            positive = [r for r in run.results if r.safety_margin is not None and r.safety_margin > 0]
            if positive:
                logger.info(f"Top safety margin: {positive[0].name} ({positive[0].safety_margin:.2f}%)")

        return self._summary(
            job,
            started_at,
            "completed",
            success_count=run.success_count,
            failure_count=run.failure_count,
            detail=detail,
        )

    async def refresh_fundamentals_now(self, codes: Optional[Iterable[str]] = None) -> JobSummary:
        """Scrape and store fundamentals without replacing the snapshot."""
        return await self._sweep("fundamentals_refresh", codes, save_snapshot=False)

    async def run_full_valuation_sweep_now(self, codes: Optional[Iterable[str]] = None) -> JobSummary:
        """Sweep and store; the snapshot is replaced only for an untargeted sweep."""
        return await self._sweep("valuation_sweep", codes, save_snapshot=codes is None)

    def get_latest_snapshot(self) -> List[ValuationResult]:
        return self.snapshot_store.load()

    def get_top_positive(self, n: Optional[int] = None) -> List[ValuationResult]:
        return self.snapshot_store.top_positive(n)
