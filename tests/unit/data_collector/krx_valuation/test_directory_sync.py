import asyncio
import dataclasses
from datetime import date, datetime
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import pytest

from src.data_collector.config import krx_config
from src.data_collector.krx_valuation.data_models import MarketSegment
from src.data_collector.krx_valuation.directory_sync import (
    InstrumentDirectorySync,
    change_code,
    format_trade_date,
    is_outside_trading_hours,
    last_business_day,
)
from src.data_collector.krx_valuation.errors import FetchError, SystemicFailureError
from tests._fixtures import (
    FakePageFetcher,
    InstrumentRepositoryFake,
    build_instruments,
    listing_row,
    listing_rows,
    treasury_row,
)

KST = ZoneInfo("Asia/Seoul")
# Wednesday evening, after the close
NOW = datetime(2025, 3, 12, 18, 30, tzinfo=KST)
CONFIG = dataclasses.replace(krx_config, MIN_PLAUSIBLE_INSTRUMENTS=100, ENRICH_TREASURY=True)


def _run(coro):
    return asyncio.run(coro)


def _krx(listing, treasury=None):
    """KRX stub keyed on (bld, mktId)."""

    def respond(form):
        if form["bld"] == CONFIG.KRX_TREASURY_BLD:
            outcome = (treasury or {}).get(form["mktId"], [])
        else:
            outcome = listing.get(form["mktId"], [])
        if isinstance(outcome, Exception):
            raise outcome
        return {"OutBlock_1": outcome}

    return respond


def _sync(fetcher, repo=None, config=CONFIG):
    return InstrumentDirectorySync(fetcher, repo=repo, config=config, clock=lambda: NOW)


@pytest.mark.unit
@pytest.mark.parametrize(
    "now, expected",
    [
        (datetime(2025, 3, 12, 18, 0), date(2025, 3, 12)),  # Wed after cutoff
        (datetime(2025, 3, 12, 10, 0), date(2025, 3, 11)),  # Wed before cutoff
        (datetime(2025, 3, 10, 9, 0), date(2025, 3, 7)),  # Mon morning -> Fri
        (datetime(2025, 3, 15, 12, 0), date(2025, 3, 14)),  # Sat -> Fri
        (datetime(2025, 3, 16, 20, 0), date(2025, 3, 14)),  # Sun -> Fri
    ],
)
def test_last_business_day(now, expected):
    assert last_business_day(now, cutoff_hour=16) == expected


@pytest.mark.unit
def test_trading_hours_and_helpers():
    assert not is_outside_trading_hours(datetime(2025, 3, 12, 9, 0))
    assert not is_outside_trading_hours(datetime(2025, 3, 12, 16, 59))
    assert is_outside_trading_hours(datetime(2025, 3, 12, 17, 0))
    assert is_outside_trading_hours(datetime(2025, 3, 12, 8, 59))
    assert is_outside_trading_hours(datetime(2025, 3, 15, 11, 0))
    assert format_trade_date(date(2025, 3, 7)) == "20250307"
    assert [change_code(v) for v in (500.0, -500.0, 0.0, None)] == ["1", "2", "3", "3"]


@pytest.mark.unit
def test_map_row_builds_instrument_with_absent_fundamentals():
    sync = _sync(FakePageFetcher())
    inst = sync.map_row(listing_row(), MarketSegment.KOSPI, date(2025, 3, 12))

    assert inst.code == "005930"
    assert inst.name == "삼성전자"
    assert inst.market == MarketSegment.KOSPI
    assert inst.close == 71500.0
    assert inst.change_code == "2"
    assert inst.shares_outstanding == 5969782550
    assert inst.fundamentals.eps is None
    assert inst.fundamentals.treasury_ratio is None
    assert inst.data_date == date(2025, 3, 12)


@pytest.mark.unit
@pytest.mark.parametrize(
    "row",
    [
        listing_row(code=""),
        listing_row(name="   "),
        listing_row(code="5930"),
        listing_row(code="00-593"),
    ],
)
def test_map_row_rejects_unusable_rows(row):
    sync = _sync(FakePageFetcher())
    with pytest.raises(ValueError):
        sync.map_row(row, MarketSegment.KOSPI, date(2025, 3, 12))


@pytest.mark.unit
def test_sync_market_posts_listing_form_and_drops_bad_rows():
    rows = listing_rows(5) + [listing_row(code="", name="")]
    fetcher = FakePageFetcher(krx=_krx({"KSQ": rows}))

    instruments = _run(_sync(fetcher).sync_market(MarketSegment.KOSDAQ))

    assert len(instruments) == 5
    assert all(i.market == MarketSegment.KOSDAQ for i in instruments)
    form = fetcher.forms[0]
    assert form["bld"] == CONFIG.KRX_LISTING_BLD
    assert form["mktId"] == "KSQ"
    assert form["trdDd"] == "20250312"


@pytest.mark.unit
def test_implausibly_small_directory_leaves_store_untouched():
    existing = build_instruments(3)
    repo = InstrumentRepositoryFake(existing)
    fetcher = FakePageFetcher(krx=_krx({"STK": listing_rows(3), "KSQ": []}))

    with pytest.raises(SystemicFailureError) as exc:
        _run(_sync(fetcher, repo=repo).refresh_directory())

    assert exc.value.count == 3
    assert repo.upsert_calls == 0
    assert repo.replace_calls == 0
    assert sorted(repo.instruments) == sorted(i.code for i in existing)


@pytest.mark.unit
def test_refresh_directory_persists_sorted_and_enriched():
    kospi = listing_rows(80, start=100000, prefix="가")
    kosdaq = listing_rows(40, start=200000, prefix="나")
    treasury = {"STK": [treasury_row("100001", "1,000", "100,000"), treasury_row("100002", "0", "1")]}
    fetcher = FakePageFetcher(krx=_krx({"STK": kospi, "KSQ": kosdaq}, treasury))
    repo = InstrumentRepositoryFake()

    report = _run(_sync(fetcher, repo=repo).refresh_directory())

    assert report.total == 120
    assert report.segment_counts == {"KOSPI": 80, "KOSDAQ": 40}
    assert report.persisted == 120
    assert report.treasury_enriched == 1
    assert report.trade_date == "20250312"
    assert repo.upsert_calls == 1
    enriched = repo.instruments["100001"].fundamentals
    assert (enriched.treasury_shares, enriched.treasury_ratio) == (1000, 1.0)
    assert repo.instruments["100002"].fundamentals.treasury_shares is None
    treasury_form = next(f for f in fetcher.forms if f["bld"] == CONFIG.KRX_TREASURY_BLD)
    assert (treasury_form["strtDd"], treasury_form["endDd"]) == ("20240312", "20250312")


@pytest.mark.unit
def test_full_resync_replaces_directory():
    fetcher = FakePageFetcher(krx=_krx({"STK": listing_rows(100), "KSQ": listing_rows(5, start=300000)}))
    repo = InstrumentRepositoryFake(build_instruments(2))

    report = _run(_sync(fetcher, repo=repo).refresh_directory(full_resync=True))

    assert report.full_resync
    assert repo.replace_calls == 1
    assert len(repo.instruments) == 105
    assert "000001" not in repo.instruments


@pytest.mark.unit
def test_one_failed_segment_still_refreshes_when_total_is_plausible():
    url = CONFIG.KRX_DATA_URL
    fetcher = FakePageFetcher(
        krx=_krx({"STK": listing_rows(120), "KSQ": FetchError(url, "http_status", status=403)})
    )
    repo = InstrumentRepositoryFake()

    report = _run(_sync(fetcher, repo=repo).refresh_directory())

    assert report.segment_counts == {"KOSPI": 120, "KOSDAQ": 0}
    assert report.total == 120


@pytest.mark.unit
def test_krx_call_retries_transient_failures():
    url = CONFIG.KRX_DATA_URL
    calls = {"n": 0}

    def flaky(form):
        calls["n"] += 1
        if calls["n"] == 1:
            raise FetchError(url, "network", detail="reset")
        return {"OutBlock_1": listing_rows(2)}

    fetcher = FakePageFetcher(krx=flaky)
    with patch("asyncio.sleep", new=AsyncMock(return_value=None)) as sleep:
        instruments = _run(_sync(fetcher).sync_market(MarketSegment.KOSPI))

    assert len(instruments) == 2
    assert calls["n"] == 2
    assert sleep.await_count == 1


@pytest.mark.unit
def test_treasury_failure_is_best_effort():
    url = CONFIG.KRX_DATA_URL
    treasury = {"STK": FetchError(url, "decode"), "KSQ": FetchError(url, "decode")}
    fetcher = FakePageFetcher(krx=_krx({"STK": listing_rows(100)}, treasury))
    repo = InstrumentRepositoryFake()

    report = _run(_sync(fetcher, repo=repo).refresh_directory())

    assert report.treasury_enriched == 0
    assert report.persisted == 100


@pytest.mark.unit
def test_full_resync_refuses_to_drop_a_failed_segment():
    stored_kosdaq = build_instruments(50, market=MarketSegment.KOSDAQ)
    repo = InstrumentRepositoryFake(stored_kosdaq)
    fetcher = FakePageFetcher(
        krx=_krx(
            {
                "STK": listing_rows(150),
                "KSQ": FetchError(CONFIG.KRX_DATA_URL, "http_status", status=403),
            }
        )
    )

    with pytest.raises(SystemicFailureError) as exc:
        _run(_sync(fetcher, repo=repo).refresh_directory(full_resync=True))

    assert "KOSDAQ" in str(exc.value)
    assert repo.replace_calls == 0
    assert repo.upsert_calls == 0
    assert sorted(repo.instruments) == sorted(i.code for i in stored_kosdaq)


@pytest.mark.unit
def test_undecodable_listing_marks_only_that_segment_failed():
    url = CONFIG.KRX_DATA_URL
    fetcher = FakePageFetcher(
        krx=_krx({"STK": listing_rows(120), "KSQ": FetchError(url, "decode", detail="invalid start byte")})
    )
    repo = InstrumentRepositoryFake()

    report = _run(_sync(fetcher, repo=repo).refresh_directory())

    assert report.segment_counts == {"KOSPI": 120, "KOSDAQ": 0}
    assert repo.upsert_calls == 1
