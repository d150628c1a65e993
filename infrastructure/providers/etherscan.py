# infrastructure/providers/etherscan.py
from typing import Dict, List, Optional, Tuple

import aiohttp

from core.errors import ConfigurationError, NotFoundError, ResultWindowTooLargeError
from core.logger import get_logger
from infrastructure.providers.http import classify_message, request_json
from models.collection_state import DataType, Window
from utils.validation import parse_block_number
from utils.yaml_utils import NetworkConfig

# (module, action) per data type
ACTIONS: Dict[DataType, Tuple[str, str]] = {
    DataType.NORMAL: ("account", "txlist"),
    DataType.INTERNAL: ("account", "txlistinternal"),
    DataType.TOKEN_TRANSFER: ("account", "tokentx"),
    DataType.EVENT: ("logs", "getLogs"),
}

NO_DATA_MESSAGES = ("no transactions found", "no records found", "no logs found", "no token transfers found")

# page * offset may not exceed this on account endpoints
MAX_RESULT_WINDOW = 10000

# Fields Etherscan returns as hex strings on getLogs
HEX_LOG_FIELDS = ("timeStamp", "logIndex", "transactionIndex", "gasPrice", "gasUsed")


def normalize_item(data_type: DataType, raw: dict) -> dict:
    item = dict(raw)
    item["blockNumber"] = parse_block_number(raw.get("blockNumber", 0))
    if data_type is DataType.EVENT:
        for field in HEX_LOG_FIELDS:
            value = raw.get(field)
            if value not in (None, "", "0x"):
                item[field] = parse_block_number(value)
    return item


class EtherscanProvider:
    """Etherscan V2 account/logs endpoints, one page per call."""

    name = "etherscan"

    def __init__(self, api_key: str, network: NetworkConfig, timeout: float = 30,
                 session: Optional[aiohttp.ClientSession] = None, logger=None):
        if not api_key:
            raise ConfigurationError("Etherscan API key is required")
        self.api_key = api_key
        self.network = network
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger or get_logger("etherscan")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Accept": "application/json", "User-Agent": "chain-history-collector"},
            )
            self._owns_session = True
        return self._session

    async def _request(self, params: Dict[str, str]):
        source = f"Etherscan {params.get('action')}"
        query = {"chainid": str(self.network.chain_id), **params, "apikey": self.api_key}
        self.logger.debug(f"Making request with params: { {k: v for k, v in query.items() if k != 'apikey'} }")

        data = await request_json(await self._get_session(), "GET", self.network.etherscan_url, source,
                                  params=query)

        # proxy module answers in JSON-RPC shape
        if "status" not in data:
            if data.get("error"):
                error = data["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise classify_message(source, message, details=data)
            return data.get("result")

        if str(data.get("status")) == "1":
            return data.get("result")

        message = str(data.get("message") or "")
        result = data.get("result")
        text = f"{message} {result if isinstance(result, str) else ''}".strip()
        if any(marker in text.lower() for marker in NO_DATA_MESSAGES):
            raise NotFoundError(f"{source}: {message}")
        if "result window is too large" in text.lower():
            raise ResultWindowTooLargeError(f"{source}: {text}", details=data)
        raise classify_message(source, text, details=data)

    async def fetch_page(self, address: str, data_type: DataType, window: Window, page: int,
                         page_size: int, sort: str = "asc") -> List[dict]:
        module, action = ACTIONS[data_type]
        if page * page_size > MAX_RESULT_WINDOW:
            raise ResultWindowTooLargeError(
                f"Etherscan {action}: page {page} of {page_size} is past the {MAX_RESULT_WINDOW} result limit "
                f"for blocks {window}")
        params = {
            "module": module,
            "action": action,
            "address": address,
            "page": str(page),
            "offset": str(page_size),
        }
        if data_type is DataType.EVENT:
            params.update(fromBlock=str(window.start), toBlock=str(window.end))
        else:
            params.update(startblock=str(window.start), endblock=str(window.end), sort=sort)

        result = await self._request(params)
        if not result:
            return []
        if not isinstance(result, list):
            raise classify_message(f"Etherscan {action}", f"unexpected result: {str(result)[:200]}")
        return [normalize_item(data_type, raw) for raw in result]

    async def get_current_block(self) -> int:
        result = await self._request({"module": "proxy", "action": "eth_blockNumber"})
        return parse_block_number(result)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
