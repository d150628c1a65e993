import asyncio
import unittest

from core.errors import ConfigurationError
from infrastructure.rate_gate import RateGate


class FakeClock:
    """Monotonic clock that only moves when the gate sleeps."""

    def __init__(self, now=100.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class TestRateGate(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.gate = RateGate(requests_per_second=5, time_window=1.0, clock=self.clock, sleep=self.clock.sleep)

    async def test_min_interval(self):
        self.assertAlmostEqual(self.gate.min_interval, 0.2)

    async def test_concurrent_callers_are_spaced(self):
        released = []

        async def call(i):
            await self.gate.acquire()
            released.append((i, self.clock.now))

        await asyncio.gather(*(call(i) for i in range(6)))

        self.assertEqual([i for i, _ in released], list(range(6)))
        times = [t for _, t in released]
        for earlier, later in zip(times, times[1:]):
            self.assertGreaterEqual(later - earlier, 0.2 - 1e-9)
        # never held longer than needed
        self.assertAlmostEqual(times[-1] - times[0], 1.0)

    async def test_first_call_is_not_delayed(self):
        self.assertEqual(await self.gate.acquire(), 0.0)
        self.assertEqual(self.clock.sleeps, [])

    async def test_idle_gap_means_no_wait(self):
        await self.gate.acquire()
        self.clock.now += 5
        self.assertEqual(await self.gate.acquire(), 0.0)
        self.assertEqual(self.clock.sleeps, [])

    async def test_partial_wait(self):
        await self.gate.acquire()
        self.clock.now += 0.05
        waited = await self.gate.acquire()
        self.assertAlmostEqual(waited, 0.15)

    async def test_schedule_runs_call(self):
        async def fetch(window, page):
            return [window, page]

        self.assertEqual(await self.gate.schedule(fetch, "0-9", 2), ["0-9", 2])

    async def test_rejects_bad_rate(self):
        with self.assertRaises(ConfigurationError):
            RateGate(requests_per_second=0)
        with self.assertRaises(ConfigurationError):
            RateGate(requests_per_second=5, time_window=-1)


if __name__ == "__main__":
    unittest.main()
