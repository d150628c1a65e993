# infrastructure/sinks.py
import asyncio
import csv
import json
import os
from typing import Dict, List, Protocol, Sequence, Tuple

from core.errors import StorageError
from core.logger import get_logger
from infrastructure.rabbitmq_client import AsyncRabbitMQClient
from models.collection_state import DataType
from models.entity import EntityInfo
from utils.items import block_of, item_keys, iso_timestamp
from utils.validation import sanitize_name


class Sink(Protocol):
    """Where collected items go. save_batch raises StorageError unless the batch is durable."""

    async def register_entity(self, entity: EntityInfo) -> None:
        ...

    async def save_batch(self, entity_id: str, data_type: DataType, items: Sequence[dict]) -> None:
        ...

    async def close(self) -> None:
        ...


TRANSACTION_COLUMNS: List[Tuple[str, str]] = [
    ("hash", "Hash"),
    ("blockNumber", "Block Number"),
    ("timeStamp", "Timestamp"),
    ("from", "From"),
    ("to", "To"),
    ("value", "Value"),
    ("gas", "Gas"),
    ("gasPrice", "Gas Price"),
    ("isError", "Is Error"),
    ("txreceipt_status", "Receipt Status"),
    ("input", "Input Data"),
    ("contractAddress", "Contract Address"),
    ("methodId", "Method ID"),
    ("functionName", "Function Name"),
]

INTERNAL_COLUMNS: List[Tuple[str, str]] = [
    ("hash", "Hash"),
    ("blockNumber", "Block Number"),
    ("timeStamp", "Timestamp"),
    ("from", "From"),
    ("to", "To"),
    ("value", "Value"),
    ("type", "Type"),
    ("traceId", "Trace ID"),
    ("gas", "Gas"),
    ("gasUsed", "Gas Used"),
    ("isError", "Is Error"),
    ("contractAddress", "Contract Address"),
]

TOKEN_TRANSFER_COLUMNS: List[Tuple[str, str]] = [
    ("hash", "Hash"),
    ("blockNumber", "Block Number"),
    ("timeStamp", "Timestamp"),
    ("from", "From"),
    ("to", "To"),
    ("value", "Value"),
    ("contractAddress", "Token Contract"),
    ("tokenName", "Token Name"),
    ("tokenSymbol", "Token Symbol"),
    ("tokenDecimal", "Token Decimals"),
    ("transactionIndex", "Transaction Index"),
    ("gas", "Gas"),
    ("gasPrice", "Gas Price"),
    ("gasUsed", "Gas Used"),
]

EVENT_COLUMNS: List[Tuple[str, str]] = [
    ("transactionHash", "Transaction Hash"),
    ("blockNumber", "Block Number"),
    ("timeStamp", "Timestamp"),
    ("address", "Address"),
    ("topics", "Topics"),
    ("data", "Data"),
    ("logIndex", "Log Index"),
    ("transactionIndex", "Transaction Index"),
]

# (sub directory, file name, columns) per data type
CSV_LAYOUT: Dict[DataType, Tuple[str, str, List[Tuple[str, str]]]] = {
    DataType.NORMAL: ("transactions", "normal.csv", TRANSACTION_COLUMNS),
    DataType.INTERNAL: ("transactions", "internal.csv", INTERNAL_COLUMNS),
    DataType.TOKEN_TRANSFER: ("transfers", "token_transfers.csv", TOKEN_TRANSFER_COLUMNS),
    DataType.EVENT: ("events", "events.csv", EVENT_COLUMNS),
}


def _cell(field: str, item: dict) -> str:
    value = item.get(field)
    if field == "timeStamp":
        return iso_timestamp(value)
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


class CsvFileSink:
    """
    Append-only CSV files per entity and data type, rows sorted by block within a batch.

    Re-delivered rows after a resume are appended again; readers dedupe on `Hash`
    (plus `Log Index` / `Trace ID` where present).
    """

    def __init__(self, base_dir: str, logger=None):
        self.base_dir = base_dir
        self.organizations_dir = os.path.join(base_dir, "organizations")
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = logger or get_logger("csv_sink")

    def entity_dir(self, entity_id: str) -> str:
        return os.path.join(self.organizations_dir, sanitize_name(entity_id))

    def file_path(self, entity_id: str, data_type: DataType) -> str:
        sub_dir, file_name, _ = CSV_LAYOUT[data_type]
        return os.path.join(self.entity_dir(entity_id), sub_dir, file_name)

    def _register_sync(self, entity: EntityInfo) -> None:
        entity_dir = self.entity_dir(entity.name)
        os.makedirs(entity_dir, exist_ok=True)
        path = os.path.join(entity_dir, "metadata.json")
        metadata = entity.to_dict()
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                try:
                    # first registration date wins
                    metadata["dateAdded"] = json.load(f).get("dateAdded") or metadata["dateAdded"]
                except json.JSONDecodeError:
                    self.logger.warning(f"Replacing unreadable metadata.json for {entity.name}")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)

    def _append_sync(self, path: str, columns: List[Tuple[str, str]], items: List[dict]) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_header = not os.path.exists(path) or os.path.getsize(path) == 0
        with open(path, "a", newline="", encoding="utf-8") as f:
            writer = csv.writer(f, quoting=csv.QUOTE_ALL)
            if write_header:
                writer.writerow([title for _, title in columns])
            for item in items:
                writer.writerow([_cell(field, item) for field, _ in columns])
            f.flush()
            os.fsync(f.fileno())

    async def register_entity(self, entity: EntityInfo) -> None:
        try:
            await asyncio.to_thread(self._register_sync, entity)
            self.logger.info(f"Organization {entity.name} saved successfully")
        except OSError as e:
            raise StorageError(f"Failed to save organization {entity.name}: {e}") from e

    async def save_batch(self, entity_id: str, data_type: DataType, items: Sequence[dict]) -> None:
        if not items:
            return
        path = self.file_path(entity_id, data_type)
        columns = CSV_LAYOUT[data_type][2]
        ordered = sorted(items, key=block_of)

        lock = self._locks.setdefault(path, asyncio.Lock())
        async with lock:
            try:
                await asyncio.to_thread(self._append_sync, path, columns, ordered)
            except OSError as e:
                raise StorageError(f"Failed to save {data_type.value} items for {entity_id}: {e}",
                                   details={"path": path}) from e

        self.logger.debug(
            f"Saved {len(ordered)} {data_type.label} for {entity_id} (last block: {block_of(ordered[-1])})")

    async def close(self) -> None:
        return None


class QueueSink:
    """
    Publishes every item as a persistent message on a durable per-type queue.

    The channel runs with publisher confirms, so save_batch returns once the broker owns the
    batch. Each message carries a stable message_id for consumer-side deduplication.
    """

    def __init__(self, rabbit: AsyncRabbitMQClient, queue_prefix: str = "chain", logger=None):
        self.rabbit = rabbit
        self.queue_prefix = queue_prefix
        self.logger = logger or get_logger("queue_sink")

    def queue_name(self, data_type: DataType) -> str:
        return f"{self.queue_prefix}_{data_type.value}_queue"

    @property
    def entities_queue(self) -> str:
        return f"{self.queue_prefix}_entities_queue"

    async def register_entity(self, entity: EntityInfo) -> None:
        try:
            await self.rabbit.declare_queue(self.entities_queue)
            for data_type in DataType:
                await self.rabbit.declare_queue(self.queue_name(data_type))
            await self.rabbit.publish(self.entities_queue, entity.to_dict(), message_id=f"entity:{entity.name}")
        except Exception as e:
            raise StorageError(f"Failed to register {entity.name} on RabbitMQ: {e}") from e

    async def save_batch(self, entity_id: str, data_type: DataType, items: Sequence[dict]) -> None:
        if not items:
            return
        queue = self.queue_name(data_type)
        headers = {"entity_id": entity_id, "data_type": data_type.value}
        try:
            await self.rabbit.declare_queue(queue)
            ordered = sorted(items, key=block_of)
            for item, message_id in zip(ordered, item_keys(data_type.value, ordered)):
                await self.rabbit.publish(queue, item, message_id=message_id, headers=headers)
        except Exception as e:
            raise StorageError(f"Failed to publish {data_type.value} items for {entity_id}: {e}") from e

        self.logger.debug(f"Published {len(items)} {data_type.label} for {entity_id} to {queue}")

    async def close(self) -> None:
        await self.rabbit.close()
