import asyncio

import pytest

import observability
from rate_limiter import QueueClosedError, RateLimitedQueue


@pytest.fixture(autouse=True)
def _no_metrics(monkeypatch):
    monkeypatch.setattr(observability, "_metrics_sink", observability._CsvMetricsSink(""))


def test_tasks_start_in_fifo_order() -> None:
    async def scenario():
        queue = RateLimitedQueue(interval_ms=1000, max_weight=100, max_concurrent=1)
        started = []

        def make(i):
            async def task():
                started.append(i)
                await asyncio.sleep(0)
                return i * 10

            return task

        futures = [queue.enqueue(make(i)) for i in range(5)]
        results = await asyncio.gather(*futures)
        return started, results

    started, results = asyncio.run(scenario())
    assert started == [0, 1, 2, 3, 4]
    assert results == [0, 10, 20, 30, 40]


def test_weight_in_any_window_stays_within_budget() -> None:
    interval = 0.2

    async def scenario():
        loop = asyncio.get_running_loop()
        queue = RateLimitedQueue(interval_ms=int(interval * 1000), max_weight=3, max_concurrent=10)
        starts = []

        async def task():
            starts.append(loop.time())

        begin = loop.time()
        await asyncio.gather(*(queue.enqueue(task) for _ in range(7)))
        return begin, starts

    begin, starts = asyncio.run(scenario())
    assert len(starts) == 7
    # Small slack for timer resolution.
    for t in starts:
        in_window = [s for s in starts if t <= s < t + interval - 0.02]
        assert len(in_window) <= 3
    # Seven unit tasks against a budget of three need two further windows.
    assert starts[-1] - begin >= 2 * interval - 0.02


def test_concurrency_is_capped() -> None:
    async def scenario():
        queue = RateLimitedQueue(interval_ms=1000, max_weight=100, max_concurrent=2)
        active = 0
        peak = 0

        async def task():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        await asyncio.gather(*(queue.enqueue(task) for _ in range(6)))
        return peak, queue.in_flight

    peak, in_flight = asyncio.run(scenario())
    assert peak == 2
    assert in_flight == 0


def test_failure_is_delivered_and_queue_continues() -> None:
    calls = []

    async def scenario():
        queue = RateLimitedQueue(interval_ms=1000, max_weight=100, max_concurrent=1)

        async def boom():
            calls.append("boom")
            raise ValueError("bad request")

        async def ok():
            calls.append("ok")
            return "ok"

        failing = queue.enqueue(boom)
        passing = queue.enqueue(ok)
        with pytest.raises(ValueError):
            await failing
        return await passing

    assert asyncio.run(scenario()) == "ok"
    # Failed tasks are not retried.
    assert calls == ["boom", "ok"]


def test_weight_outside_budget_is_rejected() -> None:
    queue = RateLimitedQueue(interval_ms=1000, max_weight=5, max_concurrent=1)

    async def task():
        return None

    with pytest.raises(ValueError):
        queue.enqueue(task, weight=6)
    with pytest.raises(ValueError):
        queue.enqueue(task, weight=0)


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError):
        RateLimitedQueue(interval_ms=0)
    with pytest.raises(ValueError):
        RateLimitedQueue(max_concurrent=0)


def test_close_fails_waiting_tasks_and_lets_running_ones_finish() -> None:
    async def scenario():
        queue = RateLimitedQueue(interval_ms=1000, max_weight=100, max_concurrent=1)
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "done"

        async def never():
            raise AssertionError("should not start")

        running = queue.enqueue(slow)
        waiting = queue.enqueue(never)
        await asyncio.sleep(0)
        queue.close()
        with pytest.raises(QueueClosedError):
            await waiting
        late = queue.enqueue(never)
        with pytest.raises(QueueClosedError):
            await late
        release.set()
        result = await running

        queue.reopen()

        async def again():
            return "again"

        return result, await queue.enqueue(again)

    assert asyncio.run(scenario()) == ("done", "again")


def test_window_weight_tracks_admitted_tasks() -> None:
    async def scenario():
        queue = RateLimitedQueue(interval_ms=5000, max_weight=10, max_concurrent=5)

        async def task():
            return None

        await queue.enqueue(task, weight=4)
        await queue.enqueue(task, weight=3)
        return queue.window_weight, queue.pending

    assert asyncio.run(scenario()) == (7, 0)
