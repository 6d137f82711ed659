"""
Pydantic data models for the KRX valuation pipeline

Instrument rows come from the KRX bulk listing endpoint, fundamental inputs
from the scraped company pages, and valuation results are what the sweep
persists and snapshots.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MarketSegment(str, Enum):
    """KRX market segment, valued by its listing-endpoint id"""

    KOSPI = "STK"
    KOSDAQ = "KSQ"

    @property
    def label(self) -> str:
        return self.name

    @classmethod
    def parse(cls, value: str) -> "MarketSegment":
        """Accept either the market id (STK) or the display label (KOSPI)"""
        upper = value.strip().upper()
        for segment in cls:
            if upper in (segment.value, segment.name):
                return segment
        raise ValueError(f"Unknown market segment: {value}")


class Recommendation(str, Enum):
    STRONGLY_UNDERVALUED = "strongly undervalued"
    UNDERVALUED = "undervalued"
    MILDLY_UNDERVALUED = "mildly undervalued"
    NEAR_FAIR_VALUE = "near fair value"
    MILDLY_OVERVALUED = "mildly overvalued"
    OVERVALUED = "overvalued"


class ItemStatus(str, Enum):
    VALUED = "valued"
    NO_VALUATION = "no_valuation"
    FAILED = "failed"


class FundamentalSnapshot(BaseModel):
    """Fundamental columns stored on an instrument; each one independently nullable"""

    eps: Optional[float] = None
    bps: Optional[float] = None
    roe: Optional[float] = None
    per: Optional[float] = None
    pbr: Optional[float] = None
    dividend_yield: Optional[float] = None
    treasury_shares: Optional[int] = None
    treasury_ratio: Optional[float] = None


class Instrument(BaseModel):
    """One listed instrument as mapped from a KRX listing row"""

    code: str = Field(min_length=6, max_length=6)
    name: str = Field(min_length=1)
    market: MarketSegment
    isu_cd: Optional[str] = None
    dept: Optional[str] = None

    close: Optional[float] = None
    change_code: Optional[str] = None
    changes: Optional[float] = None
    change_ratio: Optional[float] = None
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    volume: Optional[int] = None
    amount: Optional[int] = None
    marcap: Optional[int] = None
    shares_outstanding: Optional[int] = None

    fundamentals: FundamentalSnapshot = Field(default_factory=FundamentalSnapshot)

    exclude: bool = False
    favorite: bool = False
    tags: List[str] = Field(default_factory=list)
    data_date: Optional[date] = None

    model_config = ConfigDict(use_enum_values=False)

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        if not v.isalnum():
            raise ValueError(f"Instrument code must be alphanumeric: {v!r}")
        return v

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Instrument name must not be empty")
        return v

    @property
    def current_price(self) -> Optional[float]:
        return self.close


class FundamentalInputs(BaseModel):
    """Everything scraped for one instrument before valuation"""

    eps_samples: List[float] = Field(default_factory=list)  # oldest -> newest
    bps: Optional[float] = None
    treasury_ratio: Optional[float] = None
    treasury_shares: Optional[int] = None
    dividend_yield: Optional[float] = None
    per: Optional[float] = None
    pbr: Optional[float] = None

    @property
    def latest_eps(self) -> Optional[float]:
        return self.eps_samples[-1] if self.eps_samples else None

    def missing_required(self) -> bool:
        return not self.eps_samples and self.bps is None


class ValuationResult(BaseModel):
    """Per-instrument valuation projection; also the snapshot record format"""

    code: str
    name: str
    current_price: Optional[float] = None
    intrinsic_value: Optional[float] = None
    safety_margin: Optional[float] = None
    treasury_ratio: float = 0.0
    dividend_yield: Optional[float] = None
    last_updated: datetime


class ItemOutcome(BaseModel):
    """How a single instrument fared in a sweep"""

    code: str
    status: ItemStatus
    reason: Optional[str] = None
    recommendation: Optional[Recommendation] = None
    result: ValuationResult


class BatchRunResult(BaseModel):
    as_of: datetime
    results: List[ValuationResult] = Field(default_factory=list)
    outcomes: List[ItemOutcome] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0

    @property
    def valued_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ItemStatus.VALUED)

    @property
    def no_valuation_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ItemStatus.NO_VALUATION)

    @property
    def all_failed(self) -> bool:
        return bool(self.outcomes) and self.failure_count == len(self.outcomes)


class DirectorySyncReport(BaseModel):
    trade_date: str
    segment_counts: Dict[str, int] = Field(default_factory=dict)
    dropped_rows: Dict[str, int] = Field(default_factory=dict)
    treasury_enriched: int = 0
    total: int = 0
    persisted: int = 0
    full_resync: bool = False


class JobSummary(BaseModel):
    """Returned by every manual or scheduled trigger"""

    job: str
    status: str  # completed | skipped | failed
    success_count: int = 0
    failure_count: int = 0
    detail: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
