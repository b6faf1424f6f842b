"""Weighted admission queue for exchange REST calls.

Binance meters REST usage per IP as a weight budget over a rolling window.
:class:`RateLimitedQueue` admits queued coroutine factories in FIFO order so
that the weight started within any trailing ``interval_ms`` window never
exceeds ``max_weight`` and at most ``max_concurrent`` tasks are in flight.

The queue never retries.  A task's exception is delivered to the future
returned by :meth:`RateLimitedQueue.enqueue` and the queue moves on.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

from log_utils import setup_logger
from observability import log_event, record_metric

logger = setup_logger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class QueueClosedError(RuntimeError):
    """Raised for tasks that were still waiting when the queue was closed."""


@dataclass
class _QueuedTask:
    factory: TaskFactory
    weight: int
    future: asyncio.Future


class RateLimitedQueue:
    """FIFO admission queue bounded by a rolling weight window and concurrency."""

    def __init__(
        self,
        interval_ms: int = 1100,
        max_weight: int = 1800,
        max_concurrent: int = 20,
    ) -> None:
        if interval_ms <= 0 or max_weight <= 0 or max_concurrent <= 0:
            raise ValueError("interval_ms, max_weight and max_concurrent must be positive")
        self.interval = interval_ms / 1000.0
        self.max_weight = int(max_weight)
        self.max_concurrent = int(max_concurrent)
        self._pending: Deque[_QueuedTask] = deque()
        self._window: Deque[Tuple[float, int]] = deque()
        self._window_weight = 0
        self._in_flight = 0
        self._wake_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False
        self._saturated = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def window_weight(self) -> int:
        self._prune(asyncio.get_running_loop().time())
        return self._window_weight

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, task: TaskFactory, weight: int = 1) -> asyncio.Future:
        """Queue ``task`` and return a future for its result.

        ``task`` is a zero-argument callable returning an awaitable; it is
        invoked only once the queue admits it.  Completion of that awaitable
        frees the concurrency slot.
        """

        weight = int(weight)
        if weight < 1:
            raise ValueError("weight must be at least 1")
        if weight > self.max_weight:
            raise ValueError(
                f"weight {weight} exceeds the window budget of {self.max_weight}"
            )
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        if self._closed:
            future.set_exception(QueueClosedError("queue is closed"))
            return future
        self._pending.append(_QueuedTask(task, weight, future))
        self._pump()
        return future

    def close(self) -> None:
        """Stop admitting work and fail tasks that have not started yet.

        Tasks already dispatched are left to finish on their own.
        """

        if self._closed:
            return
        self._closed = True
        self._cancel_wake()
        while self._pending:
            item = self._pending.popleft()
            if not item.future.done():
                item.future.set_exception(QueueClosedError("queue closed before task started"))

    def reopen(self) -> None:
        """Allow a closed queue to accept work again after a restart."""

        self._closed = False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _prune(self, now: float) -> None:
        while self._window and now - self._window[0][0] >= self.interval:
            _, weight = self._window.popleft()
            self._window_weight -= weight

    def _cancel_wake(self) -> None:
        if self._wake_handle is not None:
            self._wake_handle.cancel()
            self._wake_handle = None

    def _on_wake(self) -> None:
        self._wake_handle = None
        self._pump()

    def _pump(self) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        while self._pending:
            if self._in_flight >= self.max_concurrent:
                # A completing task pumps again.
                return
            now = loop.time()
            self._prune(now)
            head = self._pending[0]
            if self._window_weight + head.weight > self.max_weight:
                if not self._saturated:
                    self._saturated = True
                    log_event(
                        logger,
                        "rate_limit_saturated",
                        pending=len(self._pending),
                        window_weight=self._window_weight,
                    )
                if self._wake_handle is None:
                    delay = max(0.0, self._window[0][0] + self.interval - now)
                    self._wake_handle = loop.call_later(delay, self._on_wake)
                return
            self._saturated = False
            self._pending.popleft()
            if head.future.cancelled():
                continue
            self._window.append((now, head.weight))
            self._window_weight += head.weight
            self._in_flight += 1
            loop.create_task(self._run(head))
        record_metric("rest_queue_in_flight", self._in_flight)

    async def _run(self, item: _QueuedTask) -> None:
        try:
            result = await item.factory()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            logger.warning("Queued request failed: %s", exc)
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._in_flight -= 1
            self._pump()


__all__ = ["QueueClosedError", "RateLimitedQueue"]
