"""
RateLimiter Tests

Concurrency cap, sliding-window cap, global backoff and cancellation.
Run with: pytest tests/test_rate_limiter.py -v
"""

import asyncio
import logging

import pytest
from unittest.mock import patch

from freshdesk_activity.http_client import HttpFetcher
from freshdesk_activity.rate_limiter import RateLimiter
from tests.helpers import FakeSession, json_response

BASE_URL = "https://test.freshdesk.com/api"

# loop.call_at may fire up to one clock tick early
TOLERANCE = 0.02


class Recorder:
    """Builds tasks that record start/end times and peak concurrency."""

    def __init__(self, duration=0.05):
        self.duration = duration
        self.running = 0
        self.peak = 0
        self.starts = []
        self.order = []

    def task(self, name):
        async def run():
            loop = asyncio.get_running_loop()
            self.starts.append(loop.time())
            self.order.append(name)
            self.running += 1
            self.peak = max(self.peak, self.running)
            try:
                await asyncio.sleep(self.duration)
            finally:
                self.running -= 1
            return name

        return run


class TestScheduling:

    @pytest.mark.asyncio
    async def test_returns_task_result(self):
        limiter = RateLimiter()

        async def task():
            return 42

        assert await limiter.schedule(task) == 42

    @pytest.mark.asyncio
    async def test_propagates_task_exception_unchanged(self):
        limiter = RateLimiter()
        error = KeyError("boom")

        async def task():
            raise error

        with pytest.raises(KeyError) as exc_info:
            await limiter.schedule(task)
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_failure_frees_the_slot(self):
        limiter = RateLimiter(max_concurrent=1, window_ms=1000, max_per_window=100)

        async def failing():
            raise RuntimeError("fail")

        async def ok():
            return "ok"

        with pytest.raises(RuntimeError):
            await limiter.schedule(failing)
        assert await asyncio.wait_for(limiter.schedule(ok), timeout=1) == "ok"
        assert limiter.active_requests == 0

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        limiter = RateLimiter(max_concurrent=1, window_ms=1000, max_per_window=100)
        recorder = Recorder(duration=0.001)

        results = await asyncio.gather(*(limiter.schedule(recorder.task(i)) for i in range(6)))

        assert results == list(range(6))
        assert recorder.order == list(range(6))

    def test_rejects_non_positive_limits(self):
        with pytest.raises(ValueError):
            RateLimiter(max_concurrent=0)
        with pytest.raises(ValueError):
            RateLimiter(max_per_window=0)


class TestLimits:

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        limiter = RateLimiter(max_concurrent=3, window_ms=1000, max_per_window=100)
        recorder = Recorder(duration=0.05)

        await asyncio.gather(*(limiter.schedule(recorder.task(i)) for i in range(10)))

        assert recorder.peak == 3
        assert len(recorder.starts) == 10

    @pytest.mark.asyncio
    async def test_window_cap_two_concurrent_three_per_second(self):
        """N=2, M=3, W=1000ms with 5 simultaneous tasks."""
        limiter = RateLimiter(max_concurrent=2, window_ms=1000, max_per_window=3)
        recorder = Recorder(duration=0.01)

        await asyncio.gather(*(limiter.schedule(recorder.task(i)) for i in range(5)))

        assert recorder.peak <= 2
        starts = sorted(recorder.starts)
        # Any four consecutive starts must span at least one full window
        for i in range(len(starts) - 3):
            assert starts[i + 3] - starts[i] >= 1.0 - TOLERANCE
        # The first three are admitted without waiting for the window
        assert starts[2] - starts[0] < 0.5

    @pytest.mark.asyncio
    async def test_window_wakeup_without_completions(self):
        """Queued work proceeds when the window frees up even if nothing finishes then."""
        limiter = RateLimiter(max_concurrent=10, window_ms=100, max_per_window=2)
        recorder = Recorder(duration=0.0)

        await asyncio.wait_for(
            asyncio.gather(*(limiter.schedule(recorder.task(i)) for i in range(6))),
            timeout=2,
        )

        starts = sorted(recorder.starts)
        assert starts[2] - starts[0] >= 0.1 - TOLERANCE
        assert starts[4] - starts[2] >= 0.1 - TOLERANCE

    @pytest.mark.asyncio
    async def test_update_config_raises_concurrency(self):
        limiter = RateLimiter(max_concurrent=1, window_ms=1000, max_per_window=100)
        release = asyncio.Event()
        started = []

        def blocking(name):
            async def run():
                started.append(name)
                await release.wait()
                return name
            return run

        futures = [asyncio.ensure_future(limiter.schedule(blocking(i))) for i in range(3)]
        await asyncio.sleep(0.01)
        assert started == [0]

        limiter.update_config(max_concurrent=3)
        await asyncio.sleep(0.01)
        assert sorted(started) == [0, 1, 2]

        release.set()
        assert await asyncio.gather(*futures) == [0, 1, 2]

    def test_update_config_ignores_missing_values(self):
        limiter = RateLimiter(max_concurrent=4, window_ms=500, max_per_window=7)
        limiter.update_config(window_ms=2000)
        assert (limiter.max_concurrent, limiter.window_ms, limiter.max_per_window) == (4, 2000, 7)


class TestGlobalBackoff:

    @pytest.mark.asyncio
    async def test_backoff_delays_all_queued_tasks(self):
        limiter = RateLimiter(max_concurrent=5, window_ms=1000, max_per_window=100)
        recorder = Recorder(duration=0.0)
        loop = asyncio.get_running_loop()

        with patch.object(RateLimiter, "BACKOFF_PADDING_SECONDS", 0.0):
            limiter.set_global_backoff(0.2)
            began = loop.time()
            await asyncio.gather(*(limiter.schedule(recorder.task(i)) for i in range(3)))

        assert all(start - began >= 0.2 - TOLERANCE for start in recorder.starts)

    @pytest.mark.asyncio
    async def test_backoff_set_by_running_task_holds_back_queued_tasks(self):
        limiter = RateLimiter(max_concurrent=1, window_ms=1000, max_per_window=100)
        recorder = Recorder(duration=0.0)
        loop = asyncio.get_running_loop()
        deadline = []

        async def rejected():
            limiter.set_global_backoff(0.2)
            deadline.append(loop.time() + 0.2)
            return "rejected"

        with patch.object(RateLimiter, "BACKOFF_PADDING_SECONDS", 0.0):
            first = asyncio.ensure_future(limiter.schedule(rejected))
            queued = [asyncio.ensure_future(limiter.schedule(recorder.task(i))) for i in range(3)]
            await asyncio.sleep(0)
            assert limiter.queued_requests == 3
            await asyncio.gather(first, *queued)

        assert recorder.order == [0, 1, 2]
        assert all(start >= deadline[0] - TOLERANCE for start in recorder.starts)

    @pytest.mark.asyncio
    async def test_backoff_includes_padding(self):
        limiter = RateLimiter()
        loop = asyncio.get_running_loop()
        before = loop.time()

        limiter.set_global_backoff(5)

        assert limiter._backoff_until >= before + 5 + RateLimiter.BACKOFF_PADDING_SECONDS

    @pytest.mark.asyncio
    async def test_backoff_never_shortens(self):
        limiter = RateLimiter()

        limiter.set_global_backoff(30)
        long_deadline = limiter._backoff_until
        limiter.set_global_backoff(1)

        assert limiter._backoff_until == long_deadline

    @pytest.mark.asyncio
    async def test_backoff_logged_as_warning(self, caplog):
        limiter = RateLimiter(logger=logging.getLogger("test.limiter"))

        with caplog.at_level(logging.WARNING, logger="test.limiter"):
            limiter.set_global_backoff(7)

        assert any("RATE LIMIT HIT" in r.getMessage() and "7" in r.getMessage() for r in caplog.records)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_queued_task_never_runs(self):
        limiter = RateLimiter(max_concurrent=1, window_ms=1000, max_per_window=100)
        release = asyncio.Event()
        ran = []

        async def blocker():
            await release.wait()
            return "first"

        async def second():
            ran.append("second")
            return "second"

        first_future = asyncio.ensure_future(limiter.schedule(blocker))
        second_future = asyncio.ensure_future(limiter.schedule(second))
        await asyncio.sleep(0.01)
        assert limiter.queued_requests == 1

        second_future.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await first_future == "first"
        await asyncio.sleep(0.01)
        assert ran == []
        assert limiter.queued_requests == 0
        assert limiter.active_requests == 0

    @pytest.mark.asyncio
    async def test_cancelling_caller_cancels_running_task(self):
        limiter = RateLimiter()
        started = asyncio.Event()
        cancelled = []

        async def slow():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        caller = asyncio.ensure_future(limiter.schedule(slow))
        await started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.sleep(0.01)

        assert cancelled == [True]
        assert limiter.active_requests == 0


@pytest.mark.medium
class TestBackoffThroughFetcher:
    """A 429 seen by one request pauses requests already queued behind it."""

    @pytest.mark.asyncio
    async def test_429_pauses_queued_requests(self):
        loop = asyncio.get_running_loop()
        limiter = RateLimiter(max_concurrent=1, window_ms=1000, max_per_window=100)
        calls = []

        def handler(method, url, params, body):
            name = url.rsplit("/", 1)[-1]
            calls.append((name, loop.time()))
            if name == "agents" and len(calls) == 1:
                return json_response({"code": "rate_limited"}, status=429, headers={"Retry-After": "0"})
            return json_response([])

        fetcher = HttpFetcher(FakeSession(handler), limiter, BASE_URL, retry_delay_base=0, retry_jitter=0)

        with patch.object(RateLimiter, "BACKOFF_PADDING_SECONDS", 0.2):
            responses = await asyncio.gather(
                fetcher.fetch_with_retry("GET", "/v2/agents"),
                fetcher.fetch_with_retry("GET", "/v2/groups"),
            )

        assert [r.status for r in responses] == [200, 200]
        first_name, rejected_at = calls[0]
        assert first_name == "agents"
        assert sorted(name for name, _ in calls[1:]) == ["agents", "groups"]
        assert all(at >= rejected_at + 0.2 - TOLERANCE for _, at in calls[1:])
