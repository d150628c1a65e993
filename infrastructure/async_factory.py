# infrastructure/async_factory.py
from abc import ABC, abstractmethod
from typing import TypeVar, Type

from config.settings import settings
from core.errors import StorageError
from core.logger import logger
from infrastructure.circuit_breaker import RedisHealthChecker, DatabaseHealthChecker, RabbitMQHealthChecker, \
    StorageDirHealthChecker, HealthCheckRegistry
from infrastructure.database import AsyncDatabaseManager
from infrastructure.rabbitmq_client import AsyncRabbitMQClient
from infrastructure.redis_client import get_redis_client

T = TypeVar("T", bound="BaseAsyncFactory")


class BaseAsyncFactory(ABC):
    """
    Base class for async services: opens only the backends a service needs,
    registers a health check for each and releases them again on stop().
    """

    def __init__(self, require_redis=False, require_db=False, require_rabbit=False, require_files=False):
        self.redis = None
        self.db = None
        self.rabbit = None
        self._requirements = {
            "redis": require_redis,
            "db": require_db,
            "rabbit": require_rabbit,
            "files": require_files,
        }
        self._registry = HealthCheckRegistry()
        logger.info(f"{self.__class__.__name__} needs: "
                    f"{', '.join(k for k, v in self._requirements.items() if v) or 'nothing external'}")

    @classmethod
    async def create(cls: Type[T], **kwargs) -> T:
        """Construct and set up a service in one step."""
        instance = cls(**kwargs)
        await instance.async_setup()
        return instance

    async def __aenter__(self):
        await self.initialise()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def _open_redis(self):
        self.redis = await get_redis_client()
        if self.redis is None:
            raise StorageError("Redis client could not be created")
        return RedisHealthChecker(self.redis)

    async def _open_db(self):
        self.db = AsyncDatabaseManager()
        await self.db.initialize()
        return DatabaseHealthChecker(self.db)

    async def _open_rabbit(self):
        self.rabbit = AsyncRabbitMQClient()
        await self.rabbit.connect()
        return RabbitMQHealthChecker(self.rabbit)

    async def _open_files(self):
        return StorageDirHealthChecker(settings.STORAGE_BASE_DIR)

    async def async_setup(self):
        """Open every required backend, then let the subclass wire its components onto them."""
        openers = {
            "redis": ("Redis", self._open_redis),
            "db": ("Database", self._open_db),
            "rabbit": ("RabbitMQ", self._open_rabbit),
            "files": ("Storage directory", self._open_files),
        }
        checkers = []
        failures = []

        for key, (label, opener) in openers.items():
            if not self._requirements[key]:
                continue
            try:
                logger.info(f"{self.__class__.__name__} opening {label}")
                checkers.append(await opener())
            except Exception as e:
                logger.error(f"Failed to open {label}: {e}")
                failures.append(label)

        self._registry = HealthCheckRegistry(*checkers)

        if failures:
            await self._close_connections()
            raise StorageError(f"Could not connect to {', '.join(failures)}")
        logger.info(f"{self.__class__.__name__} backends ready")

        await self.service_setup()

    @abstractmethod
    async def service_setup(self):
        """Subclass-specific setup logic."""
        pass

    async def initialise(self):
        """Refuse to start work unless every backend answers its health check."""
        await self._registry.assert_healthy()
        logger.info(f"{self.__class__.__name__} initialized successfully")

    async def _close_connections(self):
        for label, resource, closer in (
                ("RabbitMQ", self.rabbit, "close"),
                ("Database", self.db, "close"),
                ("Redis", self.redis, "aclose"),
        ):
            if resource is None:
                continue
            try:
                await getattr(resource, closer)()
                logger.debug(f"{label} connection closed")
            except Exception as e:
                logger.warning(f"Error closing {label} connection: {e}")
        self.rabbit = self.db = self.redis = None

    async def stop(self):
        """Release connections."""
        await self._close_connections()
        logger.info(f"{self.__class__.__name__} stopped")
