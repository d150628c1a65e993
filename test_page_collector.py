import unittest
from unittest.mock import AsyncMock

from core.errors import NotFoundError, RetryExhaustedError, TransientNetworkError
from infrastructure.rate_gate import RateGate
from infrastructure.retry_policy import RetryPolicy
from models.collection_state import Window
from services.page_collector import PageCollector


def items(count, block=10):
    return [{"hash": f"0x{block:x}{i:04x}", "blockNumber": block} for i in range(count)]


class TestPageCollector(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.sleep = AsyncMock()
        gate = RateGate(requests_per_second=1000, sleep=self.sleep)
        policy = RetryPolicy(max_attempts=3, base_delay=1, sleep=self.sleep)
        self.collector = PageCollector(gate, policy, page_size=100)
        self.flush = AsyncMock()
        self.window = Window(0, 49999)

    async def test_full_page_then_empty_page(self):
        fetch = AsyncMock(side_effect=[items(100), []])

        result = await self.collector.collect(self.window, fetch, self.flush)

        self.assertTrue(result.drained)
        self.assertEqual(result.items, 100)
        self.assertEqual(fetch.await_count, 2)
        self.assertEqual([c.args for c in fetch.await_args_list], [(self.window, 1), (self.window, 2)])
        self.flush.assert_awaited_once()
        self.assertEqual(len(self.flush.await_args.args[0]), 100)

    async def test_short_page_ends_window(self):
        fetch = AsyncMock(side_effect=[items(100), items(100), items(37)])

        result = await self.collector.collect(self.window, fetch, self.flush)

        self.assertEqual(result.items, 237)
        self.assertEqual(result.pages, 3)
        self.assertEqual(fetch.await_count, 3)
        self.assertEqual(self.flush.await_count, 3)

    async def test_empty_window(self):
        fetch = AsyncMock(side_effect=NotFoundError("No transactions found"))

        result = await self.collector.collect(self.window, fetch, self.flush)

        self.assertTrue(result.drained)
        self.assertEqual(result.items, 0)
        self.flush.assert_not_awaited()

    async def test_each_page_flushed_before_next_fetch(self):
        order = []

        async def fetch(window, page):
            order.append(("fetch", page))
            return items(100) if page < 3 else []

        async def flush(batch):
            order.append(("flush", len(batch)))

        await self.collector.collect(self.window, fetch, flush)

        self.assertEqual(order, [("fetch", 1), ("flush", 100), ("fetch", 2), ("flush", 100), ("fetch", 3)])

    async def test_failure_mid_window_propagates(self):
        fetch = AsyncMock(side_effect=[items(100)] + [TransientNetworkError("reset")] * 3)

        with self.assertRaises(RetryExhaustedError):
            await self.collector.collect(self.window, fetch, self.flush)

        self.flush.assert_awaited_once()

    async def test_page_retried_then_succeeds(self):
        fetch = AsyncMock(side_effect=[TransientNetworkError("timeout"), items(3)])

        result = await self.collector.collect(self.window, fetch, self.flush)

        self.assertEqual(result.items, 3)
        self.assertEqual([c.args for c in fetch.await_args_list], [(self.window, 1), (self.window, 1)])

    async def test_stop_between_pages(self):
        stop = {"now": False}

        async def fetch(window, page):
            stop["now"] = True
            return items(100)

        result = await self.collector.collect(self.window, fetch, self.flush, should_stop=lambda: stop["now"])

        self.assertFalse(result.drained)
        self.assertEqual(result.items, 100)
        self.assertEqual(result.pages, 1)


if __name__ == "__main__":
    unittest.main()
