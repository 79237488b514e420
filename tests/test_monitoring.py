import asyncio
import sys
from datetime import datetime

sys.path.insert(0, '.')

import pytest

from errors import ValidationError
from ingest.rate_limiter import MinIntervalLimiter
from monitoring.async_utils import run_tasks_with_cleanup, sleep_until_stopped
from monitoring.log_reader import extract_recent_logs
from monitoring.logging_utils import log_file_for


NOW = datetime(2025, 3, 14, 12, 30, 0)


def _write_log(log_dir, lines):
    path = log_file_for(log_dir, NOW)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding='utf-8')


def test_recent_logs_filter_by_timestamp(tmp_path):
    _write_log(tmp_path, [
        "2025-03-14 12:10:00 [INFO] main: old cycle",
        "2025-03-14 12:25:30 [INFO] main: analysis cycle",
        "    continuation line without a timestamp",
        "2025-03-14 12:29:59 [WARNING] strategy.execution: retrying",
    ])

    lines = extract_recent_logs(tmp_path, 5, now=NOW)
    assert lines == [
        "2025-03-14 12:25:30 [INFO] main: analysis cycle",
        "2025-03-14 12:29:59 [WARNING] strategy.execution: retrying",
    ]
    assert len(extract_recent_logs(tmp_path, 30, now=NOW)) == 3


def test_recent_logs_missing_file_is_empty(tmp_path):
    assert extract_recent_logs(tmp_path, 1, now=NOW) == []


@pytest.mark.parametrize('minutes', [0, -3, 61])
def test_recent_logs_rejects_out_of_range_minutes(tmp_path, minutes):
    with pytest.raises(ValidationError):
        extract_recent_logs(tmp_path, minutes, now=NOW)


def test_sleep_until_stopped_returns_early_on_stop():
    async def scenario():
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, stop.set)
        return await sleep_until_stopped(stop, 10)

    assert asyncio.run(scenario()) is True


def test_sleep_until_stopped_times_out():
    async def scenario():
        return await sleep_until_stopped(asyncio.Event(), 0.01)

    assert asyncio.run(scenario()) is False


def test_run_tasks_with_cleanup_cancels_siblings():
    cleaned = []

    async def scenario():
        async def finishes():
            return 'done'

        async def forever():
            await asyncio.sleep(60)

        async def cleanup():
            cleaned.append(True)

        async def crashes():
            raise RuntimeError("loop crashed")

        slow = asyncio.create_task(forever())
        tasks = [asyncio.create_task(finishes()), slow, asyncio.create_task(crashes())]
        with pytest.raises(RuntimeError):
            await run_tasks_with_cleanup(tasks, cleanup)
        return slow

    slow = asyncio.run(scenario())
    assert slow.cancelled()
    assert cleaned == [True]


def test_min_interval_limiter_waits_between_calls(monkeypatch):
    clock = [100.0]
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)
        clock[0] += seconds

    monkeypatch.setattr(asyncio, 'sleep', fake_sleep)
    limiter = MinIntervalLimiter(2.0, clock=lambda: clock[0])

    async def scenario():
        await limiter.acquire()
        clock[0] += 0.5
        async with limiter:
            pass
        clock[0] += 5.0
        await limiter.acquire()

    asyncio.run(scenario())
    assert waits == [pytest.approx(1.5)]
