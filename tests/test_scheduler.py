"""Tests for comic_weaver.scheduler: admission limits, retry and backoff."""

import asyncio
import random
import time

import httpx
import pytest
from unittest.mock import MagicMock

from comic_weaver.llm import GenerationError, RateLimitError
from comic_weaver.scheduler import (
    RequestScheduler,
    backoff_delay,
    is_rate_limit_error,
    retry_with_backoff,
)


async def _no_sleep(_: float) -> None:
    return None


def _scheduler(concurrent: int, per_window: int, window: float, retries: int = 3) -> RequestScheduler:
    return RequestScheduler(
        concurrent, per_window, window, retries=retries, base_delay=0.0, max_delay=0.0,
    )


class _Recorder:
    """Wraps tasks to record start times and concurrency."""

    def __init__(self) -> None:
        self.starts: list[float] = []
        self.order: list[int] = []
        self.running = 0
        self.max_running = 0

    def task(self, index: int, duration: float = 0.0):
        async def run() -> int:
            self.starts.append(time.monotonic())
            self.order.append(index)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            try:
                await asyncio.sleep(duration)
            finally:
                self.running -= 1
            return index
        return run


def _assert_window_respected(starts: list[float], per_window: int, window: float) -> None:
    starts = sorted(starts)
    for i in range(len(starts) - per_window):
        assert starts[i + per_window] - starts[i] >= window - 0.02


# ---------------------------------------------------------------------------
# Error classification and backoff
# ---------------------------------------------------------------------------

class TestIsRateLimitError:
    def test_rate_limit_error(self) -> None:
        assert is_rate_limit_error(RateLimitError("slow down", status=429))

    def test_status_attribute(self) -> None:
        assert is_rate_limit_error(GenerationError("failed", status="RESOURCE_EXHAUSTED"))

    def test_message_patterns(self) -> None:
        assert is_rate_limit_error(Exception("Quota exceeded for this project"))
        assert is_rate_limit_error(Exception("Too Many Requests"))
        assert is_rate_limit_error(Exception("upstream said 429"))

    def test_http_status_error(self) -> None:
        resp = MagicMock()
        resp.status_code = 429
        assert is_rate_limit_error(httpx.HTTPStatusError("x", request=MagicMock(), response=resp))
        resp.status_code = 503
        assert not is_rate_limit_error(httpx.HTTPStatusError("x", request=MagicMock(), response=resp))

    def test_other_failures_are_not_retried(self) -> None:
        assert not is_rate_limit_error(GenerationError("Text backend returned HTTP 500", status=500))
        assert not is_rate_limit_error(ValueError("bad json"))
        assert not is_rate_limit_error(Exception("separate concerns"))


def test_backoff_delay_bounds():
    for attempt in range(6):
        floor = min(1.0, 0.25 * (2 ** attempt))
        assert backoff_delay(attempt, 0.25, 1.0, rand=lambda: 0.0) == floor
        high = backoff_delay(attempt, 0.25, 1.0, rand=lambda: 0.999)
        assert floor <= high < floor + 0.25


class TestRetryWithBackoff:
    async def test_retries_rate_limits_then_succeeds(self) -> None:
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RateLimitError("429", status=429)
            return "ok"

        assert await retry_with_backoff(flaky, retries=3, sleep=_no_sleep) == "ok"
        assert len(calls) == 3

    async def test_non_rate_limit_propagates_immediately(self) -> None:
        calls = []

        async def broken():
            calls.append(1)
            raise GenerationError("HTTP 500", status=500)

        with pytest.raises(GenerationError):
            await retry_with_backoff(broken, retries=3, sleep=_no_sleep)
        assert len(calls) == 1

    async def test_gives_up_after_budget(self) -> None:
        calls = []

        async def limited():
            calls.append(1)
            raise RateLimitError("quota", status=429)

        with pytest.raises(RateLimitError):
            await retry_with_backoff(limited, retries=2, sleep=_no_sleep)
        assert len(calls) == 3

    async def test_sleeps_between_attempts(self) -> None:
        delays = []

        async def record(delay: float) -> None:
            delays.append(delay)

        async def limited():
            raise RateLimitError("quota", status=429)

        with pytest.raises(RateLimitError):
            await retry_with_backoff(limited, retries=2, base_delay=0.1, max_delay=1.0, sleep=record)
        assert len(delays) == 2
        assert 0.1 <= delays[0] < 0.2
        assert 0.2 <= delays[1] < 0.3


# ---------------------------------------------------------------------------
# RequestScheduler
# ---------------------------------------------------------------------------

class TestRequestScheduler:
    def test_rejects_bad_limits(self) -> None:
        with pytest.raises(ValueError):
            RequestScheduler(0, 10, 60)
        with pytest.raises(ValueError):
            RequestScheduler(1, 0, 60)
        with pytest.raises(ValueError):
            RequestScheduler(1, 1, 0)

    async def test_returns_result(self) -> None:
        scheduler = _scheduler(2, 10, 60)

        async def work():
            return 42

        assert await scheduler.schedule(work) == 42
        assert scheduler.in_flight == 0
        assert scheduler.recent_starts == 1

    async def test_propagates_failure_to_caller(self) -> None:
        scheduler = _scheduler(2, 10, 60)

        async def broken():
            raise GenerationError("bad request", status=400)

        with pytest.raises(GenerationError, match="bad request"):
            await scheduler.schedule(broken)
        assert scheduler.in_flight == 0

    async def test_retries_rate_limited_task(self) -> None:
        scheduler = _scheduler(1, 10, 60)
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError("429", status=429)
            return "drawn"

        assert await scheduler.schedule(flaky) == "drawn"
        assert len(calls) == 2

    async def test_concurrency_limit(self) -> None:
        scheduler = _scheduler(2, 100, 60)
        gate = asyncio.Event()
        running = []

        def make(i: int):
            async def run():
                running.append(i)
                await gate.wait()
                return i
            return run

        tasks = [asyncio.create_task(scheduler.schedule(make(i))) for i in range(6)]
        await asyncio.sleep(0.01)
        assert scheduler.in_flight == 2
        assert scheduler.queued == 4
        assert running == [0, 1]

        gate.set()
        assert await asyncio.gather(*tasks) == [0, 1, 2, 3, 4, 5]
        assert scheduler.in_flight == 0
        assert scheduler.queued == 0

    async def test_fifo_admission(self) -> None:
        scheduler = _scheduler(1, 100, 60)
        recorder = _Recorder()
        await asyncio.gather(*(scheduler.schedule(recorder.task(i, 0.001)) for i in range(5)))
        assert recorder.order == [0, 1, 2, 3, 4]

    async def test_window_limit_delays_starts(self) -> None:
        scheduler = _scheduler(10, 2, 0.1)
        recorder = _Recorder()
        started = time.monotonic()
        results = await asyncio.gather(*(scheduler.schedule(recorder.task(i)) for i in range(5)))
        assert results == [0, 1, 2, 3, 4]
        assert time.monotonic() - started >= 0.19
        _assert_window_respected(recorder.starts, 2, 0.1)

    async def test_window_full_leaves_tasks_queued(self) -> None:
        scheduler = _scheduler(10, 2, 60)
        recorder = _Recorder()
        tasks = [asyncio.create_task(scheduler.schedule(recorder.task(i))) for i in range(3)]
        await asyncio.sleep(0.02)
        assert len(recorder.starts) == 2
        assert scheduler.queued == 1
        assert scheduler.recent_starts == 2
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def test_cancelled_waiter_is_skipped(self) -> None:
        scheduler = _scheduler(1, 100, 60)
        gate = asyncio.Event()
        ran = []

        def make(i: int):
            async def run():
                ran.append(i)
                await gate.wait()
                return i
            return run

        first = asyncio.create_task(scheduler.schedule(make(0)))
        second = asyncio.create_task(scheduler.schedule(make(1)))
        third = asyncio.create_task(scheduler.schedule(make(2)))
        await asyncio.sleep(0.01)
        second.cancel()
        gate.set()
        assert await first == 0
        assert await third == 2
        assert ran == [0, 2]
        assert scheduler.queued == 0

    async def test_random_workload_respects_both_limits(self) -> None:
        rng = random.Random(1234)
        concurrent, per_window, window = 3, 4, 0.1
        scheduler = _scheduler(concurrent, per_window, window)
        recorder = _Recorder()

        async def submit(i: int) -> int:
            await asyncio.sleep(rng.uniform(0.0, 0.05))
            return await scheduler.schedule(recorder.task(i, rng.uniform(0.0, 0.03)))

        results = await asyncio.gather(*(submit(i) for i in range(14)))
        assert sorted(results) == list(range(14))
        assert recorder.max_running <= concurrent
        _assert_window_respected(recorder.starts, per_window, window)
        assert scheduler.in_flight == 0
