import importlib
import tempfile
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import service
from config.settings import settings
from core.errors import StorageError
from infrastructure.circuit_breaker import HealthCheckRegistry, RedisHealthChecker
from infrastructure.progress_store import FileProgressStore
from infrastructure.sinks import CsvFileSink
from models.collection_state import DataType
from services.collector_service import CollectionService


class TestHealthCheckRegistry(unittest.IsolatedAsyncioTestCase):

    async def test_healthy(self):
        redis = MagicMock()
        redis.ping = AsyncMock(return_value=True)
        registry = HealthCheckRegistry(RedisHealthChecker(redis))
        self.assertTrue(await registry.is_healthy())
        await registry.assert_healthy()

    async def test_unhealthy_then_recovered(self):
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=[ConnectionError("refused"), True])
        registry = HealthCheckRegistry(RedisHealthChecker(redis))

        with self.assertRaises(StorageError):
            await registry.assert_healthy()
        self.assertIn("RedisHealthChecker", registry.last_failures)

        self.assertTrue(await registry.is_healthy())
        self.assertEqual(registry.last_failures, {})


class TestCollectionServiceLifecycle(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        patcher = patch.object(settings, "STORAGE_BASE_DIR", self.tmp.name)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self.tmp.cleanup)

    async def test_file_backends(self):
        service = await CollectionService.create(progress_backend="file", sink_backend="csv")
        async with service:
            self.assertIsInstance(service.tracker.store, FileProgressStore)
            self.assertIsInstance(service.sink, CsvFileSink)
            self.assertIsNone(await service.status("acme"))

            await service.tracker.advance("acme", DataType.NORMAL, 10, 1)
            state = await service.status("acme")
            self.assertEqual(state.cursor(DataType.NORMAL).last_block, 10)
        self.assertTrue(service.stop_requested)

    async def test_missing_redis_refuses_to_start(self):
        with patch("infrastructure.async_factory.get_redis_client", AsyncMock(return_value=None)):
            with self.assertRaises(StorageError):
                await CollectionService.create(progress_backend="redis", sink_backend="csv")


class TestCommandLine(unittest.TestCase):

    def test_collect_arguments(self):
        args = service.build_parser().parse_args(
            ["collect", "--name", "acme", "--address", "0x" + "ab" * 20, "--types", "normal,event", "--resume"])

        self.assertEqual(args.types, [DataType.NORMAL, DataType.EVENT])
        self.assertTrue(args.resume)
        self.assertIsNone(args.to_block)

    def test_environment_comes_from_settings_only(self):
        with patch("dotenv.load_dotenv") as load_dotenv:
            importlib.reload(service)
        load_dotenv.assert_not_called()


if __name__ == "__main__":
    unittest.main()
