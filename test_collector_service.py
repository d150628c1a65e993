import asyncio
import unittest
from unittest.mock import AsyncMock

from core.errors import FatalProviderError, ResultWindowTooLargeError, ValidationError
from infrastructure.rate_gate import RateGate
from infrastructure.retry_policy import RetryPolicy
from models.collection_state import DataType, TypeCursor
from services.collector_service import CollectionService, FAILED, STOPPED, UP_TO_DATE, resume_point
from services.page_collector import PageCollector
from services.progress_tracker import ProgressTracker
from services.range_scheduler import RangeScheduler

ADDRESS = "0x" + "ab" * 20


class FakeProvider:
    """Serves items from fixed block lists, paginated like an explorer API."""

    name = "fake"

    def __init__(self, blocks, head=200000, failures=None):
        self.blocks = blocks
        self.head = head
        self.failures = failures or {}
        self.calls = []

    async def fetch_page(self, address, data_type, window, page, page_size, sort="asc"):
        self.calls.append((data_type, window.start, window.end, page))
        failure = self.failures.get((data_type, window.start))
        if failure:
            raise failure
        matching = [b for b in self.blocks.get(data_type, []) if window.start <= b <= window.end]
        chunk = matching[(page - 1) * page_size: page * page_size]
        return [{"hash": f"0x{data_type.value}{b}", "blockNumber": b} for b in chunk]

    async def get_current_block(self):
        return self.head

    async def close(self):
        pass


class CappedProvider(FakeProvider):
    """Refuses pages past `max_results`, like Etherscan's result window."""

    def __init__(self, blocks, max_results, **kwargs):
        super().__init__(blocks, **kwargs)
        self.max_results = max_results

    async def fetch_page(self, address, data_type, window, page, page_size, sort="asc"):
        if page * page_size > self.max_results:
            raise ResultWindowTooLargeError("Result window is too large")
        return await super().fetch_page(address, data_type, window, page, page_size, sort)


class RecordingSink:
    def __init__(self):
        self.batches = []
        self.entities = []

    async def register_entity(self, entity):
        self.entities.append(entity)

    async def save_batch(self, entity_id, data_type, items):
        self.batches.append((entity_id, data_type, list(items)))

    async def close(self):
        pass

    def saved(self, data_type):
        return [item for _, dt, batch in self.batches if dt is data_type for item in batch]


class MemoryProgressStore:
    def __init__(self):
        self.data = {}

    async def read(self, key):
        return self.data.get(key)

    async def update(self, key, fn):
        current = self.data.get(key)
        updated = fn(current)
        if updated is not current:
            self.data[key] = updated
        return updated


class TestCollectionService(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.store = MemoryProgressStore()
        self.sink = RecordingSink()
        self.provider = FakeProvider({
            DataType.NORMAL: list(range(100, 260000, 1000)),
            DataType.INTERNAL: [5000, 60000, 60001],
            DataType.TOKEN_TRANSFER: [],
        })

    def make_service(self, provider=None, concurrent_types=True):
        sleep = AsyncMock()
        gate = RateGate(requests_per_second=1000, sleep=sleep)
        policy = RetryPolicy(max_attempts=2, base_delay=1, rate_limit_cooldown=1, sleep=sleep)
        return CollectionService(
            provider=provider or self.provider,
            sink=self.sink,
            tracker=ProgressTracker(self.store, clock=lambda: "2024-01-01T00:00:00+00:00"),
            rate_gate=gate,
            retry_policy=policy,
            scheduler=RangeScheduler(50000),
            page_collector=PageCollector(gate, policy, page_size=100),
            network="mainnet",
            concurrent_types=concurrent_types,
        )

    async def test_full_run_saves_everything(self):
        service = self.make_service()

        summary = await service.collect("acme", ADDRESS, list(DataType)[:3], start_block=100, end_block=260000)

        self.assertTrue(summary.ok)
        self.assertEqual({o.status for o in summary.outcomes.values()}, {UP_TO_DATE})
        self.assertEqual(len(self.sink.saved(DataType.NORMAL)), 260)
        self.assertEqual(len(self.sink.saved(DataType.INTERNAL)), 3)
        state = await service.status("acme")
        for data_type in (DataType.NORMAL, DataType.INTERNAL, DataType.TOKEN_TRANSFER):
            self.assertEqual(state.cursor(data_type).last_block, 260000)
        self.assertEqual(state.total_item_count, 263)
        self.assertEqual(self.sink.entities[0].chain_id, 1)
        normal_windows = [(s, e) for dt, s, e, page in self.provider.calls if dt is DataType.NORMAL and page == 1]
        self.assertEqual(normal_windows, [(100, 50099), (50100, 100099), (100100, 150099),
                                          (150100, 200099), (200100, 250099), (250100, 260000)])

    async def test_resume_after_completion_fetches_nothing(self):
        service = self.make_service()
        await service.collect("acme", ADDRESS, [DataType.NORMAL, DataType.INTERNAL], start_block=0, end_block=100099)
        before = dict(self.store.data["acme"])
        self.provider.calls.clear()
        self.sink.batches.clear()

        summary = await service.collect("acme", ADDRESS, [DataType.NORMAL, DataType.INTERNAL],
                                        end_block=100099, resume=True)

        self.assertEqual(self.provider.calls, [])
        self.assertEqual(self.sink.batches, [])
        self.assertEqual(self.store.data["acme"], before)
        self.assertTrue(summary.ok)

    async def test_resume_continues_from_cursor(self):
        service = self.make_service()
        await service.tracker.advance("acme", DataType.NORMAL, 50099, 50)

        await service.collect("acme", ADDRESS, [DataType.NORMAL], start_block=100, end_block=100099, resume=True)

        first = self.provider.calls[0]
        self.assertEqual((first[1], first[2]), (50100, 100099))
        state = await service.status("acme")
        self.assertEqual(state.cursor(DataType.NORMAL).last_block, 100099)

    async def test_without_resume_starts_at_zero(self):
        service = self.make_service()
        await service.tracker.advance("acme", DataType.INTERNAL, 50099, 1)

        await service.collect("acme", ADDRESS, [DataType.INTERNAL], end_block=1000)

        self.assertEqual(self.provider.calls[0][1:3], (0, 1000))
        state = await service.status("acme")
        # a re-run over old blocks never moves the cursor back
        self.assertEqual(state.cursor(DataType.INTERNAL).last_block, 50099)

    async def test_failure_stops_only_that_type(self):
        self.provider.failures[(DataType.INTERNAL, 50000)] = FatalProviderError("Invalid API Key")
        service = self.make_service()

        summary = await service.collect("acme", ADDRESS, list(DataType)[:3], start_block=0, end_block=149999)

        self.assertFalse(summary.ok)
        self.assertEqual(summary.failed, [DataType.INTERNAL])
        internal = summary.outcomes[DataType.INTERNAL]
        self.assertEqual(internal.status, FAILED)
        self.assertEqual(internal.last_block, 49999)
        self.assertIn("Invalid API Key", internal.error)
        self.assertEqual(summary.outcomes[DataType.NORMAL].status, UP_TO_DATE)
        self.assertEqual(summary.outcomes[DataType.TOKEN_TRANSFER].status, UP_TO_DATE)

        state = await service.status("acme")
        self.assertEqual(state.cursor(DataType.INTERNAL).last_block, 49999)
        self.assertEqual(state.cursor(DataType.NORMAL).last_block, 149999)

    async def test_sequential_mode(self):
        service = self.make_service(concurrent_types=False)

        summary = await service.collect("acme", ADDRESS, [DataType.NORMAL, DataType.TOKEN_TRANSFER],
                                        start_block=0, end_block=60000)

        self.assertTrue(summary.ok)
        types_in_order = [dt for dt, *_ in self.provider.calls]
        first_token = types_in_order.index(DataType.TOKEN_TRANSFER)
        self.assertNotIn(DataType.NORMAL, types_in_order[first_token:])

    async def test_stop_request_ends_at_window_boundary(self):
        service = self.make_service()
        original = self.sink.save_batch

        async def save_then_stop(entity_id, data_type, items):
            await original(entity_id, data_type, items)
            service.request_stop()

        self.sink.save_batch = save_then_stop

        summary = await service.collect("acme", ADDRESS, [DataType.INTERNAL], start_block=0, end_block=149999)

        outcome = summary.outcomes[DataType.INTERNAL]
        self.assertEqual(outcome.status, STOPPED)
        self.assertEqual(outcome.last_block, 49999)
        self.assertEqual(outcome.windows, 1)

    async def test_end_block_defaults_to_chain_head(self):
        self.provider.head = 120000
        service = self.make_service()

        summary = await service.collect("acme", ADDRESS, [DataType.TOKEN_TRANSFER])

        self.assertEqual(summary.end_block, 120000)
        self.assertEqual(summary.outcomes[DataType.TOKEN_TRANSFER].last_block, 120000)

    async def test_window_too_deep_for_provider_is_split(self):
        provider = CappedProvider({DataType.NORMAL: list(range(0, 50000, 200))}, max_results=200)
        service = self.make_service(provider=provider)

        summary = await service.collect("acme", ADDRESS, [DataType.NORMAL], start_block=0, end_block=49999)

        outcome = summary.outcomes[DataType.NORMAL]
        self.assertEqual(outcome.status, UP_TO_DATE)
        self.assertEqual((outcome.last_block, outcome.items, outcome.windows), (49999, 250, 1))
        first_pages = [(s, e) for _, s, e, page in provider.calls if page == 1]
        self.assertEqual(first_pages, [(0, 49999), (0, 24999), (25000, 49999)])
        saved = {item["hash"] for item in self.sink.saved(DataType.NORMAL)}
        self.assertEqual(len(saved), 250)

    async def test_run_ending_at_block_zero_is_redone_on_resume(self):
        self.provider.blocks[DataType.NORMAL] = [0]
        service = self.make_service()
        await service.collect("acme", ADDRESS, [DataType.NORMAL], start_block=0, end_block=0)
        self.provider.calls.clear()

        summary = await service.collect("acme", ADDRESS, [DataType.NORMAL], end_block=0, resume=True)

        self.assertFalse((await service.status("acme")).cursor(DataType.NORMAL).started)
        self.assertEqual(self.provider.calls, [(DataType.NORMAL, 0, 0, 1)])
        self.assertEqual(len(self.sink.saved(DataType.NORMAL)), 2)
        self.assertEqual(summary.outcomes[DataType.NORMAL].last_block, 0)

    async def test_sequential_cancel_leaves_no_pending_workers(self):
        service = self.make_service(concurrent_types=False)
        started = []
        original = service._collect_type

        def tracking(entity_id, address, data_type, *args):
            started.append(data_type)
            return original(entity_id, address, data_type, *args)

        service._collect_type = tracking
        self.sink.save_batch = AsyncMock(side_effect=asyncio.CancelledError)

        with self.assertRaises(asyncio.CancelledError):
            await service.collect("acme", ADDRESS, [DataType.NORMAL, DataType.INTERNAL],
                                  start_block=0, end_block=60000)

        self.assertEqual(started, [DataType.NORMAL])

    async def test_invalid_input_fetches_nothing(self):
        service = self.make_service()

        with self.assertRaises(ValidationError):
            await service.collect("acme", "0x1234", [DataType.NORMAL], end_block=10)
        with self.assertRaises(ValidationError):
            await service.collect("acme", ADDRESS, [DataType.NORMAL], start_block=50, end_block=10)

        self.assertEqual(self.provider.calls, [])
        self.assertEqual(self.store.data, {})


class TestResumePoint(unittest.TestCase):

    def test_resume_point(self):
        fresh = TypeCursor()
        started = TypeCursor(last_block=50099, count=3)

        self.assertEqual(resume_point(fresh, None, True), 0)
        self.assertEqual(resume_point(fresh, 100, True), 100)
        self.assertEqual(resume_point(started, None, True), 50100)
        self.assertEqual(resume_point(started, 100, True), 50100)
        self.assertEqual(resume_point(started, 70000, True), 70000)
        self.assertEqual(resume_point(started, None, False), 0)
        self.assertEqual(resume_point(started, 100, False), 100)


if __name__ == "__main__":
    unittest.main()
