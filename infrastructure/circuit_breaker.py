# infrastructure/circuit_breaker.py
import asyncio
import os
import time

from core.errors import StorageError
from core.logger import logger


class HealthCheckRegistry:
    def __init__(self, *checkers):
        self.checkers = checkers
        self.last_failures = {}  # Track when each backend last failed

    async def is_healthy(self) -> bool:
        """Basic health check for all registered backends."""
        results = await asyncio.gather(*(chk.is_alive() for chk in self.checkers))
        unhealthy = []

        for chk, ok in zip(self.checkers, results):
            name = chk.__class__.__name__
            if not ok:
                unhealthy.append(name)
                logger.error(f"[HEALTH] {name} reported unhealthy.")
                self.last_failures.setdefault(name, time.time())
            elif name in self.last_failures:
                downtime = time.time() - self.last_failures.pop(name)
                logger.info(f"[HEALTH] {name} recovered after {downtime:.1f}s")

        return not unhealthy

    async def assert_healthy(self):
        """Raise StorageError when any backend is down, so nothing is collected into a broken store."""
        if not await self.is_healthy():
            logger.critical("One or more required backends are down. Refusing to collect.")
            raise StorageError("Required backends unavailable", details=sorted(self.last_failures))


class RabbitMQHealthChecker:
    def __init__(self, client):
        self.client = client

    async def is_alive(self) -> bool:
        try:
            await self.client.connect()
            return self.client.connected
        except Exception as e:
            logger.warning(f"RabbitMQ health check failed: {e}")
            return False


class RedisHealthChecker:
    def __init__(self, redis_client):
        self.redis = redis_client

    async def is_alive(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False


class DatabaseHealthChecker:
    def __init__(self, db_manager, db_key="STATE"):
        self.db_manager = db_manager
        self.db_key = db_key

    async def is_alive(self) -> bool:
        try:
            await self.db_manager.ping(self.db_key)
            return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False


class StorageDirHealthChecker:
    def __init__(self, base_dir):
        self.base_dir = base_dir

    async def is_alive(self) -> bool:
        try:
            await asyncio.to_thread(os.makedirs, self.base_dir, exist_ok=True)
            return os.access(self.base_dir, os.W_OK)
        except OSError as e:
            logger.warning(f"Storage directory check failed for {self.base_dir}: {e}")
            return False
