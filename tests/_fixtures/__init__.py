"""Fixtures package for tests.

Re-export commonly used fakes, factories and page captures for convenient
imports from the `tests._fixtures` package.
"""

from .db import (
    CursorFake,
    ConnectionFake,
    PoolFake,
    InstrumentRepositoryFake,
)
from .http import FakeResponse, FakeSession, FakePageFetcher
from .factories import (
    AS_OF,
    InstrumentFactory,
    ValuationResultFactory,
    build_instruments,
    build_result,
    set_factory_seed,
)
from .page_samples import (
    company_overview_page,
    investor_metrics_page,
    listing_row,
    listing_rows,
    market_summary_page,
    treasury_row,
)

__all__ = [
    "CursorFake",
    "ConnectionFake",
    "PoolFake",
    "InstrumentRepositoryFake",
    "FakeResponse",
    "FakeSession",
    "FakePageFetcher",
    "AS_OF",
    "InstrumentFactory",
    "ValuationResultFactory",
    "build_instruments",
    "build_result",
    "set_factory_seed",
    "company_overview_page",
    "investor_metrics_page",
    "listing_row",
    "listing_rows",
    "market_summary_page",
    "treasury_row",
]
