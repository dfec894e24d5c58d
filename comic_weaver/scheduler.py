"""Request scheduler for the quota-constrained image backend.

Admission rule: a queued task starts only while fewer than ``max_concurrent``
tasks are in flight AND fewer than ``max_per_window`` tasks were started in
the trailing ``window_seconds``. Start timestamps live in a monotonic deque
pruned before every admission check. When the window is full a single
re-armable timer wakes the scheduler as the oldest start expires; a
completing task re-runs admission directly. Nothing polls.

Every admitted task runs inside retry_with_backoff: rate-limit-shaped
failures are retried with exponential delay and jitter, anything else
propagates to the caller on the first failure.

All bookkeeping (queue, in-flight counter, start deque, timer) is mutated
synchronously inside scheduler callbacks, so concurrent callers on one event
loop cannot interleave partial updates.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from comic_weaver.llm import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fired slightly after the oldest start leaves the window.
_TIMER_SLACK = 0.005

_RATE_LIMIT_PATTERN = re.compile(
    r"\brate\b|rate[-_ ]?limit|quota|too many requests|\b429\b|resource_exhausted"
)


# ---------------------------------------------------------------------------
# Retry with backoff
# ---------------------------------------------------------------------------

def is_rate_limit_error(exc: BaseException) -> bool:
    """True for explicit too-many-requests / quota-exhausted failures."""
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    status = getattr(exc, "status", None) or getattr(exc, "code", None)
    if status in (429, "429", "RESOURCE_EXHAUSTED"):
        return True
    return bool(_RATE_LIMIT_PATTERN.search(str(exc).lower()))


def backoff_delay(
    attempt: int,
    base_delay: float = 0.25,
    max_delay: float = 1.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential delay capped at max_delay, plus jitter in [0, base_delay)."""
    return min(max_delay, base_delay * (2 ** attempt)) + rand() * base_delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 0.25,
    max_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_rate_limit_error(e) or attempt >= retries:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "rate limited (attempt %d/%d), retrying in %.3fs: %s",
                attempt + 1, retries, delay, e,
            )
            await sleep(delay)
            attempt += 1


# ---------------------------------------------------------------------------
# RequestScheduler
# ---------------------------------------------------------------------------

class RequestScheduler:
    """Concurrency- and rate-bounded FIFO scheduler for async tasks.

    Args:
        max_concurrent:  Tasks allowed in flight at once (C). Defaults to 3.
        max_per_window:  Task starts allowed per window (R). Defaults to 10.
        window_seconds:  Length of the trailing window. Defaults to 60.
        retries:         Retry budget for rate-limit failures. Defaults to 3.
        base_delay:      First backoff delay in seconds. Defaults to 0.25.
        max_delay:       Backoff cap in seconds (before jitter). Defaults to 1.
        clock:           Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        max_per_window: int = 10,
        window_seconds: float = 60.0,
        *,
        retries: int = 3,
        base_delay: float = 0.25,
        max_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1 or max_per_window < 1:
            raise ValueError("Scheduler limits must be at least 1")
        if window_seconds <= 0:
            raise ValueError("Scheduler window must be positive")
        self._max_concurrent = max_concurrent
        self._max_per_window = max_per_window
        self._window = window_seconds
        self._retries = retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock

        self._queue: deque[tuple[Callable[[], Awaitable[Any]], asyncio.Future]] = deque()
        self._starts: deque[float] = deque()
        self._in_flight = 0
        self._timer: asyncio.TimerHandle | None = None
        self._timer_due: float | None = None
        self._runners: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return sum(1 for _, fut in self._queue if not fut.done())

    @property
    def recent_starts(self) -> int:
        self._prune(self._clock())
        return len(self._starts)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue a zero-argument coroutine function; return its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append((task, future))
        self._pump()
        return await future

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _prune(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self._window:
            self._starts.popleft()

    def _can_start(self, now: float) -> bool:
        self._prune(now)
        return (
            self._in_flight < self._max_concurrent
            and len(self._starts) < self._max_per_window
        )

    def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        now = self._clock()
        while self._queue and self._can_start(now):
            task, future = self._queue.popleft()
            if future.done():
                continue  # caller cancelled while queued
            self._in_flight += 1
            self._starts.append(now)
            runner = loop.create_task(self._run(task, future))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)

        while self._queue and self._queue[0][1].done():
            self._queue.popleft()

        if self._queue and len(self._starts) >= self._max_per_window:
            wait = self._window - (now - self._starts[0])
            self._arm_timer(loop, now, wait)
        # Otherwise only concurrency blocks us; a finishing task calls _pump.

    def _arm_timer(self, loop: asyncio.AbstractEventLoop, now: float, wait: float) -> None:
        due = now + max(0.0, wait)
        if self._timer is not None and self._timer_due is not None and self._timer_due <= due:
            return
        if self._timer is not None:
            self._timer.cancel()
        logger.debug("scheduler window full; waking in %.3fs (queued=%d)", wait, len(self._queue))
        self._timer_due = due
        self._timer = loop.call_later(max(0.0, wait) + _TIMER_SLACK, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_due = None
        self._pump()

    async def _run(self, task: Callable[[], Awaitable[Any]], future: asyncio.Future) -> None:
        try:
            result = await retry_with_backoff(
                task,
                retries=self._retries,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
            )
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._in_flight -= 1
            self._pump()
