# infrastructure/providers/base.py
from typing import List, Optional, Protocol

from config.settings import settings
from core.errors import ConfigurationError
from models.collection_state import DataType, Window
from utils.yaml_utils import load_network


class DataProvider(Protocol):
    """
    One page of history per call.

    fetch_page returns at most page_size items, all with window.start <= blockNumber <= window.end.
    Errors come back as the DataProviderError family: RateLimitedError, NotFoundError,
    TransientNetworkError or FatalProviderError.
    """

    name: str

    async def fetch_page(self, address: str, data_type: DataType, window: Window, page: int,
                         page_size: int, sort: str = "asc") -> List[dict]:
        ...

    async def get_current_block(self) -> int:
        ...

    async def close(self) -> None:
        ...


def create_provider(name: Optional[str] = None, network: Optional[str] = None,
                    api_key: Optional[str] = None, timeout: Optional[float] = None) -> DataProvider:
    """Build the provider named by `name` (defaults from settings)."""
    name = (name or settings.PROVIDER).lower()
    network_config = load_network(network or settings.NETWORK)
    timeout = timeout or settings.REQUEST_TIMEOUT

    if name == "etherscan":
        from infrastructure.providers.etherscan import EtherscanProvider
        return EtherscanProvider(api_key or settings.ETHERSCAN_API_KEY, network_config, timeout=timeout)
    if name == "alchemy":
        from infrastructure.providers.alchemy import AlchemyProvider
        return AlchemyProvider(api_key or settings.ALCHEMY_API_KEY, network_config, timeout=timeout)
    raise ConfigurationError(f"Unknown provider: {name}", details={"known": list(settings.PROVIDERS)})
