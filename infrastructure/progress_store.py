# infrastructure/progress_store.py
import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from redis.exceptions import RedisError, WatchError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from core.errors import StorageError
from core.logger import get_logger
from infrastructure.database import AsyncDatabaseManager
from models.processing_state import ProcessingState
from utils.validation import sanitize_name

Payload = Dict[str, Any]
Mutator = Callable[[Optional[Payload]], Payload]


class ProgressStore(Protocol):
    """Durable key-value persistence of serialized CollectionState, keyed by entity id."""

    async def read(self, key: str) -> Optional[Payload]:
        ...

    async def update(self, key: str, fn: Mutator) -> Payload:
        """Atomically apply `fn` to the stored payload (None when absent) and persist its result."""
        ...


class FileProgressStore:
    """state.json per entity, replaced atomically (temp file, fsync, rename)."""

    def __init__(self, base_dir: str, logger=None):
        self.base_dir = base_dir
        self.organizations_dir = os.path.join(base_dir, "organizations")
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = logger or get_logger("file_progress_store")

    def state_path(self, key: str) -> str:
        return os.path.join(self.organizations_dir, sanitize_name(key), "state.json")

    def _read_sync(self, key: str) -> Optional[Payload]:
        path = self.state_path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read state file for {key}: {e}", details={"path": path}) from e

    def _write_sync(self, key: str, payload: Payload) -> None:
        path = self.state_path(key)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StorageError(f"Failed to write state file for {key}: {e}", details={"path": path}) from e

    async def read(self, key: str) -> Optional[Payload]:
        return await asyncio.to_thread(self._read_sync, key)

    async def update(self, key: str, fn: Mutator) -> Payload:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            current = await asyncio.to_thread(self._read_sync, key)
            updated = fn(current)
            if updated is not current:
                await asyncio.to_thread(self._write_sync, key, updated)
            return updated


class RedisProgressStore:
    """JSON under `<prefix><entity>`, updated inside a WATCH/MULTI/EXEC transaction."""

    def __init__(self, redis_client, prefix: str = "collector:state:", logger=None):
        self.redis = redis_client
        self.prefix = prefix
        self.logger = logger or get_logger("redis_progress_store")

    def key_for(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def read(self, key: str) -> Optional[Payload]:
        try:
            raw = await self.redis.get(self.key_for(key))
        except RedisError as e:
            raise StorageError(f"Failed to read state for {key} from Redis: {e}") from e
        return json.loads(raw) if raw else None

    async def update(self, key: str, fn: Mutator) -> Payload:
        redis_key = self.key_for(key)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(redis_key)
                        raw = await pipe.get(redis_key)
                        current = json.loads(raw) if raw else None
                        updated = fn(current)
                        pipe.multi()
                        pipe.set(redis_key, json.dumps(updated))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        self.logger.debug(f"[STATE] Concurrent write on {redis_key}, retrying transaction")
                        continue
        except RedisError as e:
            raise StorageError(f"Failed to update state for {key} in Redis: {e}") from e


class DatabaseProgressStore:
    """processing_state rows, locked with SELECT ... FOR UPDATE for the read-modify-write."""

    def __init__(self, db_manager: AsyncDatabaseManager, db_key: str = "STATE", logger=None):
        self.db = db_manager
        self.db_key = db_key
        self.logger = logger or get_logger("db_progress_store")

    async def read(self, key: str) -> Optional[Payload]:
        try:
            async with self.db.async_session_scope(self.db_key) as session:
                result = await session.execute(select(ProcessingState).where(ProcessingState.entity_id == key))
                row = result.scalar_one_or_none()
                return json.loads(row.payload) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read state for {key} from database: {e}") from e

    async def update(self, key: str, fn: Mutator) -> Payload:
        try:
            async with self.db.async_session_scope(self.db_key) as session:
                result = await session.execute(
                    select(ProcessingState).where(ProcessingState.entity_id == key).with_for_update()
                )
                row = result.scalar_one_or_none()
                current = json.loads(row.payload) if row else None
                updated = fn(current)

                now = datetime.now(timezone.utc)
                if row:
                    row.payload = json.dumps(updated)
                    row.last_processed_block = updated.get("lastProcessedBlock", 0)
                    row.updated_at = now
                else:
                    session.add(ProcessingState(
                        entity_id=key,
                        payload=json.dumps(updated),
                        last_processed_block=updated.get("lastProcessedBlock", 0),
                        updated_at=now,
                    ))
                await session.commit()
                return updated
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update state for {key} in database: {e}") from e
