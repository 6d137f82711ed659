from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from src.data_collector.config import KrxValuationConfig, krx_config
from src.data_collector.krx_valuation.data_models import (
    BatchRunResult,
    FundamentalInputs,
    FundamentalSnapshot,
    Instrument,
    ItemOutcome,
    ItemStatus,
    ValuationResult,
)
from src.data_collector.krx_valuation.errors import FetchError, PersistenceError
from src.data_collector.krx_valuation.extractor import FieldExtractor, PageTemplate
from src.data_collector.krx_valuation.page_fetcher import PageFetcher
from src.data_collector.krx_valuation.repository import InstrumentRepository
from src.data_collector.krx_valuation.valuation_engine import (
    NoValuation,
    derive_ratios,
    evaluate,
)
from src.data_collector.krx_valuation.worker_pool import WindowedWorkerPool
from src.utils.logger import get_logger


logger = get_logger(__name__)


def sort_by_safety_margin(results: Sequence[ValuationResult]) -> List[ValuationResult]:
    """Descending safety margin, entries without one last; stable for ties."""
    return sorted(
        results,
        key=lambda r: (r.safety_margin is None, -(r.safety_margin or 0.0)),
    )


class FundamentalsBatchJob:
    """
    Sweeps instruments in paced windows: fetch pages → extract → value → (persist).

    Per-item failures are recorded on the item and never abort the window.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        repo: Optional[InstrumentRepository] = None,
        extractor: Optional[FieldExtractor] = None,
        config: Optional[KrxValuationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.fetcher = fetcher
        self.repo = repo
        self.extractor = extractor or FieldExtractor()
        self.config = config or krx_config
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch_pages(self, code: str) -> Dict[PageTemplate, str]:
        """Investor metrics page is required; a failed company overview degrades to absent."""
        metrics_page, overview_page = await asyncio.gather(
            self.fetcher.get_text(self.config.investor_metrics_url(code)),
            self.fetcher.get_text(self.config.company_overview_url(code)),
            return_exceptions=True,
        )
        if isinstance(metrics_page, BaseException):
            raise metrics_page

        pages: Dict[PageTemplate, str] = {PageTemplate.INVESTOR_METRICS: metrics_page}
        if isinstance(overview_page, FetchError):
            logger.warning(f"{code}: company overview unavailable ({overview_page.kind})")
        elif isinstance(overview_page, BaseException):
            raise overview_page
        else:
            pages[PageTemplate.COMPANY_OVERVIEW] = overview_page
        return pages

    async def _with_market_summary(
        self, code: str, pages: Dict[PageTemplate, str], inputs: FundamentalInputs
    ) -> FundamentalInputs:
        if inputs.eps_samples and inputs.bps is not None:
            return inputs
        try:
            pages[PageTemplate.MARKET_SUMMARY] = await self.fetcher.get_text(
                self.config.market_summary_url(code),
                encoding=self.config.MARKET_SUMMARY_ENCODING,
            )
        except FetchError as e:
            logger.warning(f"{code}: market summary fallback unavailable ({e.kind})")
            return inputs
        return self.extractor.extract_fundamentals(pages)

    async def _persist(
        self,
        code: str,
        snapshot: FundamentalSnapshot,
        result: ValuationResult,
        status: ItemStatus,
    ) -> None:
        if self.repo is None:
            raise PersistenceError(code, "no repository configured")
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.repo.upsert_fundamentals, code, snapshot, result, status),
                timeout=self.config.OPERATION_TIMEOUT,
            )
        except asyncio.TimeoutError as e:
            raise PersistenceError(code, f"timed out after {self.config.OPERATION_TIMEOUT}s") from e
        except Exception as e:  # noqa: BLE001
            raise PersistenceError(code, str(e)) from e

    def _failed(self, instrument: Instrument, as_of: datetime, reason: str) -> ItemOutcome:
        return ItemOutcome(
            code=instrument.code,
            status=ItemStatus.FAILED,
            reason=reason,
            result=ValuationResult(
                code=instrument.code,
                name=instrument.name,
                current_price=instrument.current_price,
                last_updated=as_of,
            ),
        )

    async def process_instrument(
        self, instrument: Instrument, as_of: datetime, persist: bool = False
    ) -> ItemOutcome:
        code = instrument.code
        try:
            pages = await self.fetch_pages(code)
        except FetchError as e:
            logger.warning(f"{code}: transport failure ({e.kind}): {e}")
            return self._failed(instrument, as_of, e.kind)

        inputs = self.extractor.extract_fundamentals(pages)
        inputs = await self._with_market_summary(code, pages, inputs)

        price = instrument.current_price
        # Overview page first, then the KRX holdings stored by the directory refresh
        treasury_ratio = inputs.treasury_ratio
        treasury_shares = inputs.treasury_shares
        if treasury_ratio is None:
            treasury_ratio = instrument.fundamentals.treasury_ratio
            if treasury_shares is None:
                treasury_shares = instrument.fundamentals.treasury_shares
        computation = evaluate(inputs.eps_samples, inputs.bps, treasury_ratio, price)
        ratios = derive_ratios(inputs.latest_eps, inputs.bps, price)
        snapshot = FundamentalSnapshot(
            eps=inputs.latest_eps,
            bps=inputs.bps,
            roe=ratios.roe,
            per=ratios.per if ratios.per is not None else inputs.per,
            pbr=ratios.pbr if ratios.pbr is not None else inputs.pbr,
            dividend_yield=inputs.dividend_yield,
            treasury_shares=treasury_shares,
            treasury_ratio=treasury_ratio,
        )
        result = ValuationResult(
            code=code,
            name=instrument.name,
            current_price=price,
            treasury_ratio=treasury_ratio or 0.0,
            dividend_yield=inputs.dividend_yield,
            last_updated=as_of,
        )

        if isinstance(computation, NoValuation):
            reason = "no_fundamentals" if inputs.missing_required() else computation.reason
            logger.info(f"{code}: no valuation ({reason})")
            outcome = ItemOutcome(
                code=code, status=ItemStatus.NO_VALUATION, reason=reason, result=result
            )
        else:
            result.intrinsic_value = computation.intrinsic_value
            result.safety_margin = computation.safety_margin
            outcome = ItemOutcome(
                code=code,
                status=ItemStatus.VALUED,
                recommendation=computation.recommendation,
                result=result,
            )

        if persist:
            try:
                await self._persist(code, snapshot, result, outcome.status)
            except PersistenceError as e:
                logger.error(str(e))
                return ItemOutcome(
                    code=code,
                    status=ItemStatus.FAILED,
                    reason="persistence",
                    result=result,
                )
        return outcome

    async def run(
        self,
        instruments: Sequence[Instrument],
        concurrency_window: Optional[int] = None,
        inter_batch_delay: Optional[float] = None,
        persist: bool = False,
        as_of: Optional[datetime] = None,
        heartbeat: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> BatchRunResult:
        """Value every instrument; exactly one result per input instrument.

        `heartbeat` is awaited after every window (the service renews its job
        lock there).
        """
        as_of = as_of or self._clock()
        pool = WindowedWorkerPool(
            window=concurrency_window or self.config.CONCURRENCY_WINDOW,
            delay=self.config.INTER_WINDOW_DELAY if inter_batch_delay is None else inter_batch_delay,
        )
        logger.info(
            f"Sweep started: {len(instruments)} instruments, window={pool.window}, delay={pool.delay}s"
        )

        raw = await pool.run(
            instruments,
            lambda inst: self.process_instrument(inst, as_of, persist=persist),
            on_window=heartbeat,
        )

        outcomes: List[ItemOutcome] = []
        for instrument, item in zip(instruments, raw):
            if isinstance(item, ItemOutcome):
                outcomes.append(item)
            else:
                logger.error(f"{instrument.code}: unexpected failure: {type(item).__name__}: {item}")
                outcomes.append(self._failed(instrument, as_of, type(item).__name__))

        failure_count = sum(1 for o in outcomes if o.status == ItemStatus.FAILED)
        run_result = BatchRunResult(
            as_of=as_of,
            results=sort_by_safety_margin([o.result for o in outcomes]),
            outcomes=outcomes,
            success_count=len(outcomes) - failure_count,
            failure_count=failure_count,
        )
        logger.info(
            f"Sweep done: {run_result.valued_count} valued, "
            f"{run_result.no_valuation_count} without valuation, {failure_count} failed"
        )
        return run_result
