"""
Field extraction from scraped pages.

One parser strategy per known page template, chosen by explicit dispatch on
the template. A metric the strategy does not support, a label that is not on
the page, or a value that does not parse all come back as None (absent).
"""

import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from bs4 import BeautifulSoup

from src.data_collector.krx_valuation.data_models import FundamentalInputs
from src.data_collector.krx_valuation.numeric import parse_int, parse_number
from src.utils.logger import get_logger

logger = get_logger(__name__)


class PageTemplate(str, Enum):
    INVESTOR_METRICS = "investor_metrics"  # wisereport c1030001
    COMPANY_OVERVIEW = "company_overview"  # wisereport c1010001
    MARKET_SUMMARY = "market_summary"  # naver item/main
    LISTING_ROW = "listing_row"  # one KRX OutBlock_1 row


class Metric(str, Enum):
    EPS_HISTORY = "eps_history"
    BPS = "bps"
    TREASURY_RATIO = "treasury_ratio"
    TREASURY_SHARES = "treasury_shares"
    DIVIDEND_YIELD = "dividend_yield"
    PER = "per"
    PBR = "pbr"

    # Listing row fields
    CODE = "code"
    LISTING_ID = "listing_id"
    NAME = "name"
    DEPT = "dept"
    CLOSE = "close"
    CHANGES = "changes"
    CHANGE_RATIO = "change_ratio"
    OPEN = "open"
    HIGH = "high"
    LOW = "low"
    VOLUME = "volume"
    AMOUNT = "amount"
    MARKET_CAP = "market_cap"
    SHARES_OUTSTANDING = "shares_outstanding"


# First template that yields a value wins
EXTRACTION_ORDER: Dict[Metric, tuple] = {
    Metric.EPS_HISTORY: (
        PageTemplate.COMPANY_OVERVIEW,
        PageTemplate.INVESTOR_METRICS,
        PageTemplate.MARKET_SUMMARY,
    ),
    Metric.BPS: (
        PageTemplate.INVESTOR_METRICS,
        PageTemplate.COMPANY_OVERVIEW,
        PageTemplate.MARKET_SUMMARY,
    ),
    Metric.TREASURY_RATIO: (PageTemplate.COMPANY_OVERVIEW,),
    Metric.TREASURY_SHARES: (PageTemplate.COMPANY_OVERVIEW,),
    Metric.DIVIDEND_YIELD: (PageTemplate.INVESTOR_METRICS, PageTemplate.MARKET_SUMMARY),
    Metric.PER: (PageTemplate.MARKET_SUMMARY,),
    Metric.PBR: (PageTemplate.MARKET_SUMMARY,),
}

_WHITESPACE = re.compile(r"\s+")


def _clean_text(text: str) -> str:
    return _WHITESPACE.sub("", text.replace("\xa0", ""))


def _find_label_cell(soup: BeautifulSoup, label: "re.Pattern[str]"):
    """First th/td whose own text starts with the label; container cells are skipped."""
    for cell in soup.find_all(["th", "td"]):
        if cell.find("table") is not None:
            continue
        if label.match(_clean_text(cell.get_text())):
            return cell
    return None


def _cells_after(label_cell, num_class_only: bool = False) -> List[str]:
    row = label_cell.find_parent("tr")
    if row is None:
        return []
    cells = row.find_all(["th", "td"])
    start = next((i for i, c in enumerate(cells) if c is label_cell), None)
    if start is None:
        return []
    values = []
    for cell in cells[start + 1:]:
        if cell.name != "td":
            continue
        if num_class_only and "num" not in (cell.get("class") or []):
            continue
        values.append(cell.get_text())
    return values


def _first_number_after(soup: BeautifulSoup, label: "re.Pattern[str]") -> Optional[float]:
    cell = _find_label_cell(soup, label)
    if cell is None:
        return None
    for text in _cells_after(cell):
        value = parse_number(text)
        if value is not None:
            return value
    return None


class PageStrategy:
    """Base class: prepare a page once, then answer metric queries against it."""

    template: PageTemplate
    supports: frozenset = frozenset()

    def prepare(self, page: Any) -> Any:
        return BeautifulSoup(page, "html.parser")

    def extract(self, doc: Any, metric: Metric) -> Any:
        if metric not in self.supports:
            return None
        handler = getattr(self, f"_extract_{metric.value}")
        try:
            return handler(doc)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"{self.template.value}: {metric.value} did not parse ({e})")
            return None


class InvestorMetricsStrategy(PageStrategy):
    """Investor metrics page: single current EPS, BPS and cash dividend yield."""

    template = PageTemplate.INVESTOR_METRICS
    supports = frozenset({Metric.EPS_HISTORY, Metric.BPS, Metric.DIVIDEND_YIELD})

    _EPS = re.compile(r"^EPS(?![A-Za-z가-힣])")
    _BPS = re.compile(r"^BPS(?![A-Za-z가-힣])")
    _DIVIDEND = re.compile(r"^현금배당수익률")

    def _extract_eps_history(self, soup: BeautifulSoup) -> Optional[List[float]]:
        eps = _first_number_after(soup, self._EPS)
        return [eps] if eps is not None else None

    def _extract_bps(self, soup: BeautifulSoup) -> Optional[float]:
        return _first_number_after(soup, self._BPS)

    def _extract_dividend_yield(self, soup: BeautifulSoup) -> Optional[float]:
        return _first_number_after(soup, self._DIVIDEND)


class CompanyOverviewStrategy(PageStrategy):
    """Company overview page: annual EPS/BPS rows and the treasury-share holder row."""

    template = PageTemplate.COMPANY_OVERVIEW
    supports = frozenset(
        {Metric.EPS_HISTORY, Metric.BPS, Metric.TREASURY_RATIO, Metric.TREASURY_SHARES}
    )

    ANNUAL_COLUMNS = 3
    _EPS_ROW = re.compile(r"^EPS\(원\)")
    _BPS_ROW = re.compile(r"^BPS\(원\)")
    _TREASURY_ROW = re.compile(r"^자사주")

    def _annual_values(self, soup: BeautifulSoup, label: "re.Pattern[str]") -> List[float]:
        cell = _find_label_cell(soup, label)
        if cell is None:
            return []
        columns = _cells_after(cell, num_class_only=True)[: self.ANNUAL_COLUMNS]
        return [v for v in (parse_number(text) for text in columns) if v is not None]

    def _treasury_cells(self, soup: BeautifulSoup) -> List[str]:
        cell = _find_label_cell(soup, self._TREASURY_ROW)
        return _cells_after(cell) if cell is not None else []

    def _extract_eps_history(self, soup: BeautifulSoup) -> Optional[List[float]]:
        values = self._annual_values(soup, self._EPS_ROW)
        return values or None

    def _extract_bps(self, soup: BeautifulSoup) -> Optional[float]:
        values = self._annual_values(soup, self._BPS_ROW)
        return values[-1] if values else None

    def _extract_treasury_shares(self, soup: BeautifulSoup) -> Optional[int]:
        cells = self._treasury_cells(soup)
        return parse_int(cells[0]) if cells else None

    def _extract_treasury_ratio(self, soup: BeautifulSoup) -> Optional[float]:
        cells = self._treasury_cells(soup)
        return parse_number(cells[1]) if len(cells) > 1 else None


class MarketSummaryStrategy(PageStrategy):
    """Market summary page: element ids for EPS/PER/PBR plus the PBR|BPS row."""

    template = PageTemplate.MARKET_SUMMARY
    supports = frozenset(
        {Metric.EPS_HISTORY, Metric.BPS, Metric.PER, Metric.PBR, Metric.DIVIDEND_YIELD}
    )

    _PBR_BPS_HEADER = re.compile(r"PBR.{0,3}BPS")

    def _by_id(self, soup: BeautifulSoup, element_id: str) -> Optional[float]:
        node = soup.find(id=element_id)
        return parse_number(node.get_text()) if node is not None else None

    def _extract_eps_history(self, soup: BeautifulSoup) -> Optional[List[float]]:
        eps = self._by_id(soup, "_eps")
        if eps is None:
            return None
        # consensus estimate, when published, is the most recent sample
        consensus = self._by_id(soup, "_cns_eps")
        return [eps, consensus] if consensus is not None else [eps]

    def _extract_bps(self, soup: BeautifulSoup) -> Optional[float]:
        for header in soup.find_all("th"):
            if not self._PBR_BPS_HEADER.search(_clean_text(header.get_text())):
                continue
            row = header.find_parent("tr")
            if row is None:
                continue
            for em in reversed(row.find_all("em")):
                if em.get("id"):
                    continue
                value = parse_number(em.get_text())
                if value is not None:
                    return value
        return None

    def _extract_per(self, soup: BeautifulSoup) -> Optional[float]:
        return self._by_id(soup, "_per")

    def _extract_pbr(self, soup: BeautifulSoup) -> Optional[float]:
        return self._by_id(soup, "_pbr")

    def _extract_dividend_yield(self, soup: BeautifulSoup) -> Optional[float]:
        return self._by_id(soup, "_dvr")


class ListingRowStrategy(PageStrategy):
    """One row of the KRX bulk listing JSON (already decoded)."""

    template = PageTemplate.LISTING_ROW

    TEXT_FIELDS = {
        Metric.CODE: "ISU_SRT_CD",
        Metric.LISTING_ID: "ISU_CD",
        Metric.NAME: "ISU_ABBRV",
        Metric.DEPT: "MKT_NM",
    }
    NUMBER_FIELDS = {
        Metric.CLOSE: "TDD_CLSPRC",
        Metric.CHANGES: "CMPPREVDD_PRC",
        Metric.CHANGE_RATIO: "FLUC_RT",
        Metric.OPEN: "TDD_OPNPRC",
        Metric.HIGH: "TDD_HGPRC",
        Metric.LOW: "TDD_LWPRC",
    }
    INT_FIELDS = {
        Metric.VOLUME: "ACC_TRDVOL",
        Metric.AMOUNT: "ACC_TRDVAL",
        Metric.MARKET_CAP: "MKTCAP",
        Metric.SHARES_OUTSTANDING: "LIST_SHRS",
    }
    supports = frozenset(TEXT_FIELDS) | frozenset(NUMBER_FIELDS) | frozenset(INT_FIELDS)

    def prepare(self, page: Any) -> Mapping[str, Any]:
        if not isinstance(page, Mapping):
            raise TypeError("Listing rows must be mappings")
        return page

    def extract(self, doc: Mapping[str, Any], metric: Metric) -> Any:
        if metric in self.TEXT_FIELDS:
            raw = doc.get(self.TEXT_FIELDS[metric])
            if raw is None:
                return None
            text = str(raw).strip()
            return text or None
        if metric in self.NUMBER_FIELDS:
            return parse_number(doc.get(self.NUMBER_FIELDS[metric]))
        if metric in self.INT_FIELDS:
            return parse_int(doc.get(self.INT_FIELDS[metric]))
        return None


class FieldExtractor:
    """Dispatches metric extraction to the strategy for each page template."""

    def __init__(self) -> None:
        self._strategies: Dict[PageTemplate, PageStrategy] = {
            PageTemplate.INVESTOR_METRICS: InvestorMetricsStrategy(),
            PageTemplate.COMPANY_OVERVIEW: CompanyOverviewStrategy(),
            PageTemplate.MARKET_SUMMARY: MarketSummaryStrategy(),
            PageTemplate.LISTING_ROW: ListingRowStrategy(),
        }

    def strategy_for(self, template: PageTemplate) -> PageStrategy:
        return self._strategies[template]

    def extract(self, template: PageTemplate, page: Any, metric: Metric) -> Any:
        strategy = self._strategies[template]
        if metric not in strategy.supports or page is None:
            return None
        return strategy.extract(strategy.prepare(page), metric)

    def extract_first(self, docs: Mapping[PageTemplate, Any], metric: Metric) -> Any:
        """Apply the ordered rules for a metric against already prepared pages."""
        for template in EXTRACTION_ORDER.get(metric, ()):
            doc = docs.get(template)
            if doc is None:
                continue
            value = self._strategies[template].extract(doc, metric)
            if value is not None:
                return value
        return None

    def prepare_pages(self, pages: Mapping[PageTemplate, Any]) -> Dict[PageTemplate, Any]:
        return {
            template: self._strategies[template].prepare(page)
            for template, page in pages.items()
            if page is not None
        }

    def extract_fundamentals(self, pages: Mapping[PageTemplate, Any]) -> FundamentalInputs:
        """Build the valuation inputs from whichever pages were fetched."""
        docs = self.prepare_pages(pages)
        return FundamentalInputs(
            eps_samples=self.extract_first(docs, Metric.EPS_HISTORY) or [],
            bps=self.extract_first(docs, Metric.BPS),
            treasury_ratio=self.extract_first(docs, Metric.TREASURY_RATIO),
            treasury_shares=self.extract_first(docs, Metric.TREASURY_SHARES),
            dividend_yield=self.extract_first(docs, Metric.DIVIDEND_YIELD),
            per=self.extract_first(docs, Metric.PER),
            pbr=self.extract_first(docs, Metric.PBR),
        )
