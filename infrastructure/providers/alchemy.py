# infrastructure/providers/alchemy.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import aiohttp

from core.errors import ConfigurationError, FatalProviderError, RateLimitedError
from core.logger import get_logger
from infrastructure.providers.http import classify_message, request_json
from models.collection_state import DataType, Window
from utils.validation import parse_block_number
from utils.yaml_utils import NetworkConfig

CATEGORIES: Dict[DataType, List[str]] = {
    DataType.NORMAL: ["external"],
    DataType.INTERNAL: ["internal"],
    DataType.TOKEN_TRANSFER: ["erc20"],
}

DIRECTIONS = ("fromAddress", "toAddress")
RATE_LIMIT_CODES = (429, -32005)


def _epoch(iso_value: Optional[str]) -> Optional[int]:
    if not iso_value:
        return None
    return int(datetime.fromisoformat(iso_value.replace("Z", "+00:00")).timestamp())


def normalize_transfer(raw: dict) -> dict:
    """Shape an asset transfer like an Etherscan row so sinks see one vocabulary."""
    raw_contract = raw.get("rawContract") or {}
    raw_value = raw_contract.get("value")
    decimals = raw_contract.get("decimal")
    return {
        "hash": raw.get("hash"),
        "blockNumber": parse_block_number(raw.get("blockNum", 0)),
        "timeStamp": _epoch((raw.get("metadata") or {}).get("blockTimestamp")),
        "from": raw.get("from"),
        "to": raw.get("to"),
        "value": str(parse_block_number(raw_value)) if raw_value else str(raw.get("value") or "0"),
        "contractAddress": raw_contract.get("address") or "",
        "tokenSymbol": raw.get("asset") or "",
        "tokenDecimal": str(parse_block_number(decimals)) if decimals else "",
        "uniqueId": raw.get("uniqueId"),
        "category": raw.get("category"),
    }


def normalize_log(raw: dict) -> dict:
    item = dict(raw)
    item["blockNumber"] = parse_block_number(raw.get("blockNumber", 0))
    for key in ("logIndex", "transactionIndex"):
        if raw.get(key) not in (None, ""):
            item[key] = parse_block_number(raw[key])
    return item


@dataclass
class _TransferCursor:
    """Per (address, type, window) position across the two transfer directions."""
    dir_index: int = 0
    page_key: Optional[str] = None
    exhausted: bool = False
    buffer: List[dict] = field(default_factory=list)
    seen: Set[str] = field(default_factory=set)
    served_page: int = 0
    last_served: List[dict] = field(default_factory=list)


class AlchemyProvider:
    """
    Alchemy JSON-RPC adapter.

    Alchemy paginates asset transfers with an opaque pageKey rather than page numbers, and a
    transaction history needs two queries (sent and received). This adapter keeps a cursor per
    window and hands out fixed-size numbered pages from it, so callers can page the same way they
    do against Etherscan. Pages must be requested in order; asking for the last page again returns
    the same items.
    """

    name = "alchemy"

    def __init__(self, api_key: str, network: NetworkConfig, timeout: float = 30,
                 session: Optional[aiohttp.ClientSession] = None, logger=None):
        if not api_key:
            raise ConfigurationError("Alchemy API key is required")
        if not network.alchemy_url:
            raise ConfigurationError(f"Alchemy is not available on network {network.name}")
        self.url = f"{network.alchemy_url.rstrip('/')}/{api_key}"
        self.network = network
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._cursors: Dict[Tuple[str, DataType, Window], _TransferCursor] = {}
        # last page of the most recently drained window per (address, type), for retried reads
        self._drained: Dict[Tuple[str, DataType], Tuple[Window, int, List[dict]]] = {}
        self._request_id = 0
        self.logger = logger or get_logger("alchemy")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout,
                                                  headers={"Content-Type": "application/json"})
            self._owns_session = True
        return self._session

    async def _rpc(self, method: str, params: list):
        self._request_id += 1
        source = f"Alchemy {method}"
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        data = await request_json(await self._get_session(), "POST", self.url, source, json_body=payload)

        error = data.get("error")
        if error:
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            if code in RATE_LIMIT_CODES:
                raise RateLimitedError(f"{source}: {message}", details=error)
            raise classify_message(source, message, details=error)
        return data.get("result")

    async def _fill(self, address: str, data_type: DataType, window: Window,
                    cursor: _TransferCursor, page_size: int, sort: str) -> None:
        while len(cursor.buffer) < page_size and not cursor.exhausted:
            params = {
                "fromBlock": hex(window.start),
                "toBlock": hex(window.end),
                DIRECTIONS[cursor.dir_index]: address,
                "category": CATEGORIES[data_type],
                "withMetadata": True,
                "excludeZeroValue": False,
                "maxCount": hex(page_size),
                "order": "desc" if sort == "desc" else "asc",
            }
            if cursor.page_key:
                params["pageKey"] = cursor.page_key

            result = await self._rpc("alchemy_getAssetTransfers", [params]) or {}
            for raw in result.get("transfers", []):
                unique_id = raw.get("uniqueId") or f"{raw.get('hash')}:{raw.get('category')}"
                if unique_id in cursor.seen:
                    # self-transfers show up in both directions
                    continue
                cursor.seen.add(unique_id)
                cursor.buffer.append(normalize_transfer(raw))

            cursor.page_key = result.get("pageKey")
            if not cursor.page_key:
                cursor.dir_index += 1
                cursor.exhausted = cursor.dir_index >= len(DIRECTIONS)

    async def _fetch_transfers(self, address: str, data_type: DataType, window: Window, page: int,
                               page_size: int, sort: str) -> List[dict]:
        key = (address.lower(), data_type, window)
        cursor = self._cursors.get(key)
        if cursor is None and page > 1:
            drained_window, last_page, last_served = self._drained.get(key[:2], (None, 0, []))
            if drained_window == window:
                if page == last_page:
                    return list(last_served)
                if page == last_page + 1:
                    return []
        if page == 1 or cursor is None:
            cursor = self._cursors[key] = _TransferCursor()

        if page == cursor.served_page:
            return list(cursor.last_served)
        if page != cursor.served_page + 1:
            raise FatalProviderError(
                f"Alchemy pages must be read in order: asked for {page} after {cursor.served_page}")

        await self._fill(address, data_type, window, cursor, page_size, sort)
        served, cursor.buffer = cursor.buffer[:page_size], cursor.buffer[page_size:]
        served.sort(key=lambda item: item["blockNumber"], reverse=(sort == "desc"))
        cursor.served_page = page
        cursor.last_served = served
        if cursor.exhausted and not cursor.buffer:
            del self._cursors[key]
            self._drained[key[:2]] = (window, page, served)
        return list(served)

    async def _fetch_logs(self, address: str, window: Window, page: int) -> List[dict]:
        # eth_getLogs has no pagination; the whole window arrives as page 1
        if page > 1:
            return []
        result = await self._rpc("eth_getLogs", [{
            "address": address,
            "fromBlock": hex(window.start),
            "toBlock": hex(window.end),
        }])
        return [normalize_log(raw) for raw in result or []]

    async def fetch_page(self, address: str, data_type: DataType, window: Window, page: int,
                         page_size: int, sort: str = "asc") -> List[dict]:
        if data_type is DataType.EVENT:
            return await self._fetch_logs(address, window, page)
        return await self._fetch_transfers(address, data_type, window, page, page_size, sort)

    async def get_current_block(self) -> int:
        return parse_block_number(await self._rpc("eth_blockNumber", []))

    async def close(self) -> None:
        self._cursors.clear()
        self._drained.clear()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
