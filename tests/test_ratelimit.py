import asyncio

import pytest

from libs.common.config import RateWindow
from libs.common.errors import TransientNetworkError
from services.api.ratelimit import RateLimitedQueue

SMALL = [RateWindow(kind="weight", limit=5, period_s=0.2)]


def _max_in_window(admitted, period):
    """Plus grande somme de poids admise dans une fenêtre glissante (t - period, t]."""
    worst = 0
    for t, _ in admitted:
        worst = max(worst, sum(w for ts, w in admitted if t - period < ts <= t))
    return worst


class TestRateLimitedQueue:
    def test_rolling_window_never_exceeded(self):
        q = RateLimitedQueue(SMALL)

        async def go():
            await asyncio.gather(*(q.submit(lambda i=i: i, weight=1 + i % 2) for i in range(12)))

        asyncio.run(go())
        assert len(q.admitted) == 12
        assert _max_in_window(list(q.admitted), 0.2) <= 5

    def test_admission_is_fifo(self):
        q = RateLimitedQueue(SMALL)
        order = []

        async def worker(i):
            await q.acquire(2)
            order.append(i)

        async def go():
            await asyncio.gather(*(worker(i) for i in range(6)))

        asyncio.run(go())
        assert order == list(range(6))

    def test_light_request_waits_behind_heavy_one(self):
        q = RateLimitedQueue(SMALL)
        order = []

        async def worker(name, weight):
            await q.acquire(weight)
            order.append(name)

        async def go():
            await asyncio.gather(worker("first", 4), worker("heavy", 4), worker("light", 1))

        asyncio.run(go())
        # "light" tenait dans la marge restante mais n'a pas doublé "heavy"
        assert order == ["first", "heavy", "light"]

    def test_count_window_ignores_weight(self):
        q = RateLimitedQueue([RateWindow(kind="count", limit=3, period_s=0.2)])

        async def go():
            for _ in range(4):
                await q.acquire(50)

        asyncio.run(go())
        times = [t for t, _ in q.admitted]
        assert times[3] - times[0] >= 0.2 - 1e-3

    def test_weight_that_can_never_fit(self):
        q = RateLimitedQueue(SMALL)
        with pytest.raises(ValueError):
            asyncio.run(q.acquire(6))
        with pytest.raises(ValueError):
            asyncio.run(q.acquire(0))

    def test_no_windows(self):
        with pytest.raises(ValueError):
            RateLimitedQueue([])

    def test_submit_returns_result_and_usage(self):
        q = RateLimitedQueue(SMALL)

        async def go():
            return await q.submit(lambda a, b=0: a + b, 2, b=3, weight=2)

        assert asyncio.run(go()) == 5
        assert q.usage() == [{"window": "weight:5/0.2s", "used": 2, "limit": 5}]

    def test_drain_closes_queue(self):
        q = RateLimitedQueue(SMALL)

        async def go():
            assert await q.drain(timeout=1.0) is True
            with pytest.raises(TransientNetworkError):
                await q.submit(lambda: 1)

        asyncio.run(go())
        assert q.pending == 0
