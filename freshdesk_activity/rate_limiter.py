"""
Request scheduler shared by every outbound Freshdesk call.

Freshdesk quotas are per account, so one RateLimiter instance must be shared
by everything talking to the same helpdesk. It bounds:
- concurrency: at most ``max_concurrent`` tasks in flight
- rate: at most ``max_per_window`` task starts in any rolling ``window_ms``
- global backoff: after a 429/503 every queued task waits, not just the one
  that was rejected

The queue is re-evaluated whenever a task finishes or a timer set for the
next admissible instant fires. There is no polling loop.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple, TypeVar

T = TypeVar("T")

# Freshdesk Enterprise allows 700 requests/minute; these defaults stay well under it.
DEFAULT_MAX_CONCURRENT = 5
DEFAULT_WINDOW_MS = 1000
DEFAULT_MAX_PER_WINDOW = 10


class RateLimiter:
    """FIFO scheduler with concurrency, sliding-window and global-backoff limits."""

    # Extra pause added on top of every server-provided backoff
    BACKOFF_PADDING_SECONDS = 1.0

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_per_window: int = DEFAULT_MAX_PER_WINDOW,
        logger: Optional[logging.Logger] = None,
    ):
        if max_concurrent < 1 or window_ms < 1 or max_per_window < 1:
            raise ValueError("Rate limiter limits must be positive")

        self.max_concurrent = max_concurrent
        self.window_ms = window_ms
        self.max_per_window = max_per_window
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        self._queue: Deque[Tuple[Callable[[], Awaitable], asyncio.Future]] = deque()
        self._active = 0
        self._start_times: Deque[float] = deque()
        self._backoff_until = 0.0
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._runners: set = set()

    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def queued_requests(self) -> int:
        return len(self._queue)

    async def schedule(self, task: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``task`` once the limits allow it and return its result.

        Exceptions raised by the task propagate unchanged. Cancelling the
        caller removes a queued task or cancels a running one.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append((task, future))
        self.logger.debug(
            "Task scheduled (queued=%d, active=%d)", len(self._queue), self._active
        )
        self._process_queue()
        return await future

    def set_global_backoff(self, seconds: float) -> None:
        """Pause the whole queue for ``seconds`` (+ padding). Never shortens an existing pause."""
        loop = asyncio.get_running_loop()
        until = loop.time() + seconds + self.BACKOFF_PADDING_SECONDS
        if until > self._backoff_until:
            self._backoff_until = until
        self.logger.warning("RATE LIMIT HIT: pausing all requests for %ss", seconds)

    def update_config(
        self,
        max_concurrent: Optional[int] = None,
        window_ms: Optional[int] = None,
        max_per_window: Optional[int] = None,
    ) -> None:
        """Retune the limits at runtime. Falsy values leave a limit unchanged."""
        if max_concurrent:
            self.max_concurrent = max_concurrent
        if window_ms:
            self.window_ms = window_ms
        if max_per_window:
            self.max_per_window = max_per_window

        self.logger.info(
            "Rate limit throttle updated: %d concurrent, %d reqs/%dms",
            self.max_concurrent, self.max_per_window, self.window_ms,
        )

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return  # nothing can be queued outside a running loop
        self._process_queue()

    def _process_queue(self) -> None:
        loop = asyncio.get_running_loop()

        while self._queue:
            task, future = self._queue[0]
            if future.done():
                # Caller went away while the task was still queued
                self._queue.popleft()
                continue

            now = loop.time()
            if now < self._backoff_until:
                self._wake_at(self._backoff_until)
                return

            if self._active >= self.max_concurrent:
                return  # a finishing task re-runs this check

            window = self.window_ms / 1000.0
            while self._start_times and now - self._start_times[0] >= window:
                self._start_times.popleft()

            if len(self._start_times) >= self.max_per_window:
                self._wake_at(self._start_times[0] + window)
                return

            self._queue.popleft()
            self._active += 1
            self._start_times.append(now)

            runner = loop.create_task(self._run(task, future))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)
            future.add_done_callback(
                lambda f, runner=runner: runner.cancel() if f.cancelled() else None
            )

    async def _run(self, task: Callable[[], Awaitable], future: asyncio.Future) -> None:
        try:
            result = await task()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._active -= 1
            self._process_queue()

    def _wake_at(self, when: float) -> None:
        if self._wakeup is not None:
            if self._wakeup.when() <= when:
                return  # an earlier check is already pending
            self._wakeup.cancel()
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_at(when, self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._process_queue()
