import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from src.data_collector.krx_valuation.data_models import JobSummary
from src.data_collector.krx_valuation.scheduler import (
    DIRECTORY_JOB_ID,
    FUNDAMENTALS_JOB_ID,
    SWEEP_JOB_ID,
    ScheduleTrigger,
)

KST = ZoneInfo("Asia/Seoul")


def _run(coro):
    return asyncio.run(coro)


def _service():
    service = MagicMock()
    summary = JobSummary(job="x", status="completed", started_at=datetime(2025, 3, 12, tzinfo=KST))
    service.refresh_directory_now = AsyncMock(return_value=summary)
    service.refresh_fundamentals_now = AsyncMock(return_value=summary)
    service.run_full_valuation_sweep_now = AsyncMock(return_value=summary)
    return service


@pytest.mark.unit
def test_register_jobs_uses_market_timezone_crons():
    trigger = ScheduleTrigger(_service())
    trigger.register_jobs()

    jobs = {job.id: job for job in trigger.scheduler.get_jobs()}
    assert set(jobs) == {DIRECTORY_JOB_ID, FUNDAMENTALS_JOB_ID, SWEEP_JOB_ID}

    sweep = str(jobs[SWEEP_JOB_ID].trigger)
    assert "day_of_week='mon-fri'" in sweep
    assert "hour='17'" in sweep
    assert "minute='10'" in sweep
    assert "hour='*/3'" in str(jobs[FUNDAMENTALS_JOB_ID].trigger)
    assert str(jobs[DIRECTORY_JOB_ID].trigger.timezone) == "Asia/Seoul"
    assert all(job.max_instances == 1 for job in jobs.values())


@pytest.mark.unit
@pytest.mark.parametrize(
    "now, runs",
    [
        (datetime(2025, 3, 12, 10, 0, tzinfo=KST), False),  # trading hours
        (datetime(2025, 3, 12, 18, 0, tzinfo=KST), True),  # after close
        (datetime(2025, 3, 12, 7, 0, tzinfo=KST), True),  # before open
        (datetime(2025, 3, 15, 11, 0, tzinfo=KST), True),  # Saturday
    ],
)
def test_directory_refresh_skipped_during_trading_hours(now, runs):
    service = _service()
    trigger = ScheduleTrigger(service, clock=lambda: now)

    summary = _run(trigger.run_directory_refresh())

    assert (summary is not None) == runs
    assert service.refresh_directory_now.await_count == (1 if runs else 0)


@pytest.mark.unit
def test_sweep_and_fundamentals_handlers_delegate():
    service = _service()
    trigger = ScheduleTrigger(service, clock=lambda: datetime(2025, 3, 12, 17, 0, tzinfo=KST))

    _run(trigger.run_valuation_sweep())
    _run(trigger.run_fundamentals_refresh())

    service.run_full_valuation_sweep_now.assert_awaited_once_with()
    service.refresh_fundamentals_now.assert_awaited_once_with()


@pytest.mark.unit
def test_start_and_stop_inside_event_loop():
    trigger = ScheduleTrigger(_service())

    async def scenario():
        trigger.start()
        running = trigger.scheduler.running
        trigger.stop()
        return running

    assert _run(scenario())


def _fire_times(trigger, start, end):
    times = []
    fire = trigger.get_next_fire_time(None, start)
    while fire is not None and fire < end:
        times.append(fire)
        fire = trigger.get_next_fire_time(fire, fire + timedelta(seconds=1))
    return times


@pytest.mark.unit
def test_no_two_jobs_share_a_fire_time():
    trigger = ScheduleTrigger(_service())
    trigger.register_jobs()
    start = datetime(2025, 3, 10, 0, 0, tzinfo=KST)  # Monday
    end = start + timedelta(days=7)

    schedule = {
        job.id: set(_fire_times(job.trigger, start, end)) for job in trigger.scheduler.get_jobs()
    }

    assert len(schedule[DIRECTORY_JOB_ID]) == 7 * 24
    assert len(schedule[FUNDAMENTALS_JOB_ID]) == 7 * 8
    assert sorted(schedule[SWEEP_JOB_ID])[0] == datetime(2025, 3, 10, 17, 10, tzinfo=KST)
    assert len(schedule[SWEEP_JOB_ID]) == 5
    ids = list(schedule)
    for i, first in enumerate(ids):
        for second in ids[i + 1:]:
            assert not schedule[first] & schedule[second], (first, second)
