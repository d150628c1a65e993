# models/collection_state.py
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class DataType(str, Enum):
    NORMAL = "normal"
    INTERNAL = "internal"
    TOKEN_TRANSFER = "tokenTransfer"
    EVENT = "event"

    @classmethod
    def parse(cls, value: str) -> "DataType":
        aliases = {"token": cls.TOKEN_TRANSFER, "tokentransfers": cls.TOKEN_TRANSFER,
                   "events": cls.EVENT, "logs": cls.EVENT}
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        try:
            return aliases[value.strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown data type: {value}") from None

    @property
    def label(self) -> str:
        return {
            DataType.NORMAL: "normal transactions",
            DataType.INTERNAL: "internal transactions",
            DataType.TOKEN_TRANSFER: "token transfers",
            DataType.EVENT: "event logs",
        }[self]


# Types every new CollectionState carries; EVENT joins on its first advance.
DEFAULT_TYPES = (DataType.NORMAL, DataType.INTERNAL, DataType.TOKEN_TRANSFER)


@dataclass(frozen=True)
class Window:
    start: int
    end: int

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    def __len__(self):
        return self.end - self.start + 1

    def __str__(self):
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class TypeCursor:
    last_block: int = 0
    count: int = 0
    last_processed_timestamp: Optional[str] = None

    @property
    def started(self) -> bool:
        # lastBlock 0 means not started, so a run that only covered block 0 is redone on resume
        return self.last_block > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastBlock": self.last_block,
            "count": self.count,
            "lastProcessedTimestamp": self.last_processed_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TypeCursor":
        return cls(
            last_block=int(data.get("lastBlock", 0)),
            count=int(data.get("count", 0)),
            last_processed_timestamp=data.get("lastProcessedTimestamp"),
        )


@dataclass(frozen=True)
class CollectionState:
    """Immutable snapshot of how far collection got for one entity."""
    last_processed_block: int = 0
    last_processed_timestamp: Optional[str] = None
    total_item_count: int = 0
    per_type: Mapping[DataType, TypeCursor] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "per_type", MappingProxyType(dict(self.per_type)))

    @classmethod
    def initial(cls, now: str) -> "CollectionState":
        return cls(
            last_processed_timestamp=now,
            per_type={dt: TypeCursor(last_processed_timestamp=now) for dt in DEFAULT_TYPES},
        )

    def cursor(self, data_type: DataType) -> TypeCursor:
        return self.per_type.get(data_type, TypeCursor())

    def advanced(self, data_type: DataType, new_last_block: int, added_count: int, now: str) -> "CollectionState":
        if added_count < 0:
            raise ValueError(f"added_count must not be negative, got {added_count}")
        current = self.cursor(data_type)
        cursors = dict(self.per_type)
        cursors[data_type] = replace(
            current,
            last_block=max(current.last_block, new_last_block),
            count=current.count + added_count,
            last_processed_timestamp=now,
        )
        return CollectionState(
            last_processed_block=max(c.last_block for c in cursors.values()),
            last_processed_timestamp=now,
            total_item_count=self.total_item_count + added_count,
            per_type=cursors,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastProcessedBlock": self.last_processed_block,
            "lastProcessedTimestamp": self.last_processed_timestamp,
            "totalItemCount": self.total_item_count,
            "perType": {dt.value: cursor.to_dict() for dt, cursor in self.per_type.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CollectionState":
        cursors = {}
        for key, value in (data.get("perType") or {}).items():
            try:
                cursors[DataType.parse(key)] = TypeCursor.from_dict(value)
            except ValueError:
                continue  # written by a newer version, ignore
        return cls(
            last_processed_block=int(data.get("lastProcessedBlock", 0)),
            last_processed_timestamp=data.get("lastProcessedTimestamp"),
            total_item_count=int(data.get("totalItemCount", 0)),
            per_type=cursors,
        )
