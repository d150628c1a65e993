# services/progress_tracker.py
import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from core.logger import get_logger
from infrastructure.progress_store import ProgressStore
from models.collection_state import CollectionState, DataType


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressTracker:
    """
    Sole owner of CollectionState records.

    Every mutation is a read-modify-write through the store, serialized per entity so
    concurrent workers for different data types never lose each other's updates.
    `advance` returns only after the store has made the new state durable.
    """

    def __init__(self, store: ProgressStore, clock: Callable[[], str] = utc_now_iso, logger=None):
        self.store = store
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.logger = logger or get_logger("progress")

    async def read(self, entity_id: str) -> Optional[CollectionState]:
        payload = await self.store.read(entity_id)
        if payload is None:
            return None
        return CollectionState.from_dict(payload)

    async def ensure(self, entity_id: str) -> CollectionState:
        """Create a zero-valued state on first contact, otherwise return what is stored."""
        async with self._locks[entity_id]:
            def create_if_missing(payload):
                if payload is not None:
                    return payload
                self.logger.info(f"[STATE] Creating collection state for {entity_id}")
                return CollectionState.initial(self._clock()).to_dict()

            return CollectionState.from_dict(await self.store.update(entity_id, create_if_missing))

    async def advance(self, entity_id: str, data_type: DataType, new_last_block: int,
                      added_count: int) -> CollectionState:
        async with self._locks[entity_id]:
            def apply(payload):
                state = CollectionState.from_dict(payload) if payload is not None \
                    else CollectionState.initial(self._clock())
                return state.advanced(data_type, new_last_block, added_count, self._clock()).to_dict()

            state = CollectionState.from_dict(await self.store.update(entity_id, apply))

        cursor = state.cursor(data_type)
        self.logger.debug(
            f"[STATE] {entity_id} {data_type.value}: last block {cursor.last_block}, count {cursor.count}")
        return state
