"""
KRX instrument directory sync.

One bulk listing call per market segment, rows mapped into Instrument
records, best-effort treasury-share enrichment, then a plausibility check
before anything is written.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from src.data_collector.config import KrxValuationConfig, krx_config
from src.data_collector.krx_valuation.data_models import (
    DirectorySyncReport,
    FundamentalSnapshot,
    Instrument,
    MarketSegment,
)
from src.data_collector.krx_valuation.errors import (
    DirectorySyncError,
    FetchError,
    SystemicFailureError,
)
from src.data_collector.krx_valuation.extractor import FieldExtractor, Metric, PageTemplate
from src.data_collector.krx_valuation.numeric import parse_int
from src.data_collector.krx_valuation.page_fetcher import PageFetcher
from src.data_collector.krx_valuation.repository import InstrumentRepository
from src.utils.core.retry import DIRECTORY_RETRY_CONFIG, RetryError, async_retry
from src.utils.logger import get_logger

logger = get_logger(__name__)

TreasuryMap = Dict[str, Tuple[int, float]]


def last_business_day(now: datetime, cutoff_hour: int = 16) -> date:
    """Trading date whose closing data is complete at `now`.

    Before the cutoff hour the previous day is used; weekends roll back to Friday.
    """
    day = now.date()
    if now.hour < cutoff_hour:
        day -= timedelta(days=1)
    if day.weekday() == 6:
        day -= timedelta(days=2)
    elif day.weekday() == 5:
        day -= timedelta(days=1)
    return day


def format_trade_date(day: date) -> str:
    return day.strftime("%Y%m%d")


def is_outside_trading_hours(now: datetime, open_hour: int = 9, close_hour: int = 17) -> bool:
    return now.weekday() >= 5 or now.hour < open_hour or now.hour >= close_hour


def change_code(changes: Optional[float]) -> str:
    """1 up, 2 down, 3 flat"""
    if changes is not None and changes > 0:
        return "1"
    if changes is not None and changes < 0:
        return "2"
    return "3"


class InstrumentDirectorySync:
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
        self._clock = clock or (lambda: datetime.now(ZoneInfo(self.config.MARKET_TIMEZONE)))

    def trade_date(self) -> date:
        return last_business_day(self._clock(), self.config.BUSINESS_DAY_CUTOFF_HOUR)

    @async_retry(DIRECTORY_RETRY_CONFIG)
    async def _post_krx(self, form: Dict[str, str]) -> List[dict]:
        data = await self.fetcher.post_json(
            self.config.KRX_DATA_URL, form, headers={"Referer": self.config.KRX_REFERER}
        )
        if not isinstance(data, dict):
            raise FetchError(self.config.KRX_DATA_URL, "decode", detail="expected a JSON object")
        return data.get("OutBlock_1") or []

    def map_row(self, row: dict, segment: MarketSegment, data_date: date) -> Instrument:
        """Map one listing row; raises ValueError when code or name is unusable."""
        strategy = self.extractor.strategy_for(PageTemplate.LISTING_ROW)
        doc = strategy.prepare(row)

        def field(metric: Metric):
            return strategy.extract(doc, metric)

        code = field(Metric.CODE)
        name = field(Metric.NAME)
        if not code or not name:
            raise ValueError(f"Listing row without code or name: {row!r}")

        changes = field(Metric.CHANGES)
        return Instrument(
            code=code,
            name=name,
            market=segment,
            isu_cd=field(Metric.LISTING_ID),
            dept=field(Metric.DEPT),
            close=field(Metric.CLOSE),
            change_code=change_code(changes),
            changes=changes,
            change_ratio=field(Metric.CHANGE_RATIO),
            open=field(Metric.OPEN),
            high=field(Metric.HIGH),
            low=field(Metric.LOW),
            volume=field(Metric.VOLUME),
            amount=field(Metric.AMOUNT),
            marcap=field(Metric.MARKET_CAP),
            shares_outstanding=field(Metric.SHARES_OUTSTANDING),
            data_date=data_date,
        )

    async def _sync_segment(
        self, segment: MarketSegment, trade_day: date
    ) -> Tuple[List[Instrument], int]:
        form = {
            "bld": self.config.KRX_LISTING_BLD,
            "locale": "ko_KR",
            "mktId": segment.value,
            "trdDd": format_trade_date(trade_day),
            "share": "1",
            "money": "1",
            "csvxls_isNo": "false",
        }
        rows = await self._post_krx(form)
        logger.info(f"{segment.label}: {len(rows)} listing rows for {form['trdDd']}")

        instruments: List[Instrument] = []
        dropped = 0
        for row in rows:
            try:
                instruments.append(self.map_row(row, segment, trade_day))
            except (ValueError, ValidationError) as e:
                dropped += 1
                logger.debug(f"{segment.label}: dropped listing row ({e})")

        if dropped:
            logger.warning(f"{segment.label}: dropped {dropped} unmappable rows")
        if not instruments:
            raise DirectorySyncError(segment.label, "no listing rows could be mapped")
        return instruments, dropped

    async def sync_market(self, segment: MarketSegment) -> List[Instrument]:
        """Fetch and map the full listing for one segment (fundamentals left absent)."""
        instruments, _ = await self._sync_segment(segment, self.trade_date())
        return instruments

    async def fetch_treasury_holdings(self, segment: MarketSegment, trade_day: date) -> TreasuryMap:
        form = {
            "bld": self.config.KRX_TREASURY_BLD,
            "locale": "ko_KR",
            "mktId": segment.value,
            "strtDd": format_trade_date(trade_day - timedelta(days=365)),
            "endDd": format_trade_date(trade_day),
            "csvxls_isNo": "false",
        }
        rows = await self._post_krx(form)
        holdings: TreasuryMap = {}
        for row in rows:
            code = str(row.get("ISU_SRT_CD") or "").strip()
            shares = parse_int(row.get("TREAS_SHR") or row.get("HOLD_QTY") or row.get("ACQ_QTY"))
            listed = parse_int(row.get("LIST_SHRS"))
            if not code or not shares or shares <= 0:
                continue
            ratio = round(shares / listed * 100, 2) if listed and listed > 0 else 0.0
            holdings[code] = (shares, ratio)
        return holdings

    async def _enrich_treasury(self, instruments: List[Instrument], trade_day: date) -> int:
        holdings: TreasuryMap = {}
        for segment in MarketSegment:
            try:
                holdings.update(await self.fetch_treasury_holdings(segment, trade_day))
            except (FetchError, RetryError) as e:
                logger.warning(f"{segment.label}: treasury holdings unavailable, skipping ({e})")

        enriched = 0
        for instrument in instruments:
            if instrument.code in holdings:
                shares, ratio = holdings[instrument.code]
                instrument.fundamentals = FundamentalSnapshot(treasury_shares=shares, treasury_ratio=ratio)
                enriched += 1
        logger.info(f"Treasury holdings applied to {enriched} instruments")
        return enriched

    async def refresh_directory(self, full_resync: bool = False) -> DirectorySyncReport:
        """Sync both segments and persist baseline fields.

        Raises SystemicFailureError, leaving the stored directory untouched, when
        the combined listing is below the plausible minimum.
        """
        trade_day = self.trade_date()
        report = DirectorySyncReport(trade_date=format_trade_date(trade_day), full_resync=full_resync)
        logger.info(f"Directory refresh started (trade date {report.trade_date})")

        instruments: List[Instrument] = []
        for segment in MarketSegment:
            try:
                mapped, dropped = await self._sync_segment(segment, trade_day)
            except (DirectorySyncError, FetchError, RetryError) as e:
                logger.error(f"{segment.label}: listing failed: {e}")
                mapped, dropped = [], 0
            report.segment_counts[segment.label] = len(mapped)
            report.dropped_rows[segment.label] = dropped
            instruments.extend(mapped)

        report.total = len(instruments)
        if report.total < self.config.MIN_PLAUSIBLE_INSTRUMENTS:
            logger.error(
                f"Systemic failure: {report.total} instruments "
                f"(minimum {self.config.MIN_PLAUSIBLE_INSTRUMENTS}); stored directory kept"
            )
            raise SystemicFailureError(report.total, self.config.MIN_PLAUSIBLE_INSTRUMENTS)

        empty = [label for label, n in report.segment_counts.items() if n == 0]
        if full_resync and empty:
            # A clear-and-reload would wipe every stored row of the empty segment
            logger.error(f"Full resync refused: no rows for {', '.join(empty)}; stored directory kept")
            raise SystemicFailureError(
                report.total,
                self.config.MIN_PLAUSIBLE_INSTRUMENTS,
                detail=f"segment(s) {', '.join(empty)} returned no rows; full resync refused",
            )

        if self.config.ENRICH_TREASURY:
            report.treasury_enriched = await self._enrich_treasury(instruments, trade_day)

        instruments.sort(key=lambda i: i.name)

        if self.repo is not None:
            if full_resync:
                report.persisted = await asyncio.to_thread(self.repo.replace_directory, instruments)
            else:
                report.persisted = await asyncio.to_thread(self.repo.upsert_instruments, instruments)

        logger.info(
            f"Directory refresh done: {report.total} instruments "
            + ", ".join(f"{k}={v}" for k, v in report.segment_counts.items())
        )
        return report
