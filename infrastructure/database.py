# infrastructure/database.py
import asyncio
import os
from contextlib import asynccontextmanager
from typing import Dict, Optional, AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker

from config.settings import settings
from core.logger import logger
from models import Base
from models import processing_state  # noqa: F401  registers the table on Base.metadata


class AsyncDatabaseManager:
    """Async SQLAlchemy engines keyed by name, with session scopes and schema bootstrap"""

    def __init__(self, connections: Optional[Dict[str, str]] = None, echo: bool = settings.SQL_ECHO):
        self.connections = connections or {"STATE": settings.DATABASE_DSN}
        self.echo = echo
        self.engines: Dict[str, AsyncEngine] = {}
        self.session_factories: Dict[str, async_sessionmaker] = {}
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Initialize database connections and create missing tables"""
        async with self._init_lock:
            if self._initialized:
                return

            try:
                for db_key, connection_string in self.connections.items():
                    await self._create_engine(db_key, connection_string)
                    async with self.engines[db_key].begin() as conn:
                        await conn.run_sync(Base.metadata.create_all)

                self._initialized = True
                logger.info(f"AsyncDatabaseManager initialized for {', '.join(self.connections)}")
            except Exception as e:
                logger.error(f"Failed to initialize AsyncDatabaseManager: {e}")
                raise

    async def _create_engine(self, db_key: str, connection_string: str) -> None:
        """Create an async SQLAlchemy engine; pool sizing only applies to server databases"""
        options = {"pool_pre_ping": True, "echo": self.echo}
        url = make_url(connection_string)
        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
        else:
            options.update(pool_recycle=3600, pool_size=5, max_overflow=10)
        try:
            engine = create_async_engine(connection_string, **options)
            self.engines[db_key] = engine
            self.session_factories[db_key] = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            logger.debug(f"Created async engine for {db_key}")
        except Exception as e:
            logger.error(f"Failed to create async engine for {db_key}: {e}")
            raise

    @asynccontextmanager
    async def async_session_scope(self, db_key: str) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for async database sessions, rolled back on error"""
        if not self._initialized:
            await self.initialize()

        if db_key not in self.session_factories:
            raise ValueError(f"No engine found for {db_key}")

        session = self.session_factories[db_key]()

        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Error during database session: {e}")
            raise
        finally:
            await session.close()

    async def ping(self, db_key: str = "STATE") -> None:
        async with self.async_session_scope(db_key) as session:
            await session.execute(text("SELECT 1"))

    async def close(self):
        """Dispose of every connection pool"""
        if not self._initialized:
            return

        for db_key, engine in self.engines.items():
            try:
                await engine.dispose()
                logger.debug(f"Closed connection pool for {db_key}")
            except Exception as e:
                logger.error(f"Error closing {db_key} connection: {e}")

        self.engines.clear()
        self.session_factories.clear()
        self._initialized = False
        logger.info("AsyncDatabaseManager connections closed")
