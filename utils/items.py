# utils/items.py
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping

from utils.validation import parse_block_number


def block_of(item: Mapping[str, Any]) -> int:
    return parse_block_number(item.get("blockNumber", 0))


def item_key(data_type: str, item: Mapping[str, Any]) -> str:
    """Stable identity of an item, so downstream consumers can drop re-delivered duplicates."""
    parts = (
        data_type,
        item.get("hash") or item.get("transactionHash") or "",
        str(item.get("logIndex") or item.get("traceId") or item.get("uniqueId") or ""),
        (item.get("from") or "").lower(),
        (item.get("to") or "").lower(),
        str(item.get("value") or ""),
        str(item.get("contractAddress") or item.get("address") or "").lower(),
    )
    return ":".join(parts)


def item_keys(data_type: str, items: Iterable[Mapping[str, Any]]) -> List[str]:
    """
    item_key for each item of a batch, in order.

    Token transfer rows carry no log index, so two identical transfers in one transaction
    share a key. Repeats get an occurrence suffix (`#1`, `#2`, ...) so neither is dropped.
    """
    occurrences = Counter()
    keys = []
    for item in items:
        key = item_key(data_type, item)
        repeat = occurrences[key]
        occurrences[key] += 1
        keys.append(f"{key}#{repeat}" if repeat else key)
    return keys


def iso_timestamp(value: Any) -> str:
    """Unix seconds (int, decimal or hex string) to ISO-8601; empty string when missing."""
    if value in (None, ""):
        return ""
    try:
        seconds = parse_block_number(value)
    except (TypeError, ValueError):
        return str(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
