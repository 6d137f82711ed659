from datetime import date, datetime, timezone
from itertools import count
from typing import Any, List

from faker import Faker
from polyfactory import Use
from polyfactory.factories.pydantic_factory import ModelFactory

from src.data_collector.krx_valuation.data_models import (
    FundamentalSnapshot,
    Instrument,
    MarketSegment,
    ValuationResult,
)

# Central Faker instance used by factories (seed via `set_factory_seed`)
faker = Faker("ko_KR")

_codes = count(1)

AS_OF = datetime(2025, 3, 14, 8, 0, tzinfo=timezone.utc)


def set_factory_seed(seed: int = 42) -> None:
    """Seed Faker and polyfactory for deterministic test output."""
    faker.seed_instance(seed)
    ModelFactory.seed_random(seed)


def _next_code() -> str:
    return f"{next(_codes):06d}"


class InstrumentFactory(ModelFactory[Instrument]):
    __model__ = Instrument
    __faker__ = faker

    code = Use(_next_code)
    name = Use(lambda: faker.company())
    market = MarketSegment.KOSPI
    close = Use(lambda: float(faker.random_int(1_000, 500_000)))
    fundamentals = Use(FundamentalSnapshot)
    exclude = False
    favorite = False
    tags = Use(list)
    data_date = date(2025, 3, 14)


class ValuationResultFactory(ModelFactory[ValuationResult]):
    __model__ = ValuationResult
    __faker__ = faker

    code = Use(_next_code)
    name = Use(lambda: faker.company())
    treasury_ratio = 0.0
    last_updated = AS_OF


def build_instruments(n: int, **kwargs: Any) -> List[Instrument]:
    """Instruments with distinct codes and names sortable by position."""
    return [
        InstrumentFactory.build(code=f"{i + 1:06d}", name=f"종목{i:03d}", **kwargs)
        for i in range(n)
    ]


def build_result(code: str, margin: Any, **kwargs: Any) -> ValuationResult:
    return ValuationResultFactory.build(code=code, name=f"종목{code}", safety_margin=margin, **kwargs)
