import os
from dataclasses import dataclass
from typing import Dict, Any

import yaml

from core.errors import ConfigurationError

NETWORKS_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config", "networks.yml")


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    chain_id: int
    etherscan_url: str
    alchemy_url: str


def load_configuration(config_path: str) -> Dict[str, Dict[str, Any]]:
    with open(os.path.expanduser(config_path), 'r') as f:
        return yaml.safe_load(f) or {}


def load_network(name: str, config_path: str = NETWORKS_PATH) -> NetworkConfig:
    """Look up one network entry from networks.yml."""
    networks = load_configuration(config_path)
    entry = networks.get(name.lower())
    if not entry:
        raise ConfigurationError(f"Unsupported network: {name}", details={"known": sorted(networks)})
    return NetworkConfig(
        name=name.lower(),
        chain_id=int(entry["chain_id"]),
        etherscan_url=entry["etherscan_url"],
        alchemy_url=entry["alchemy_url"],
    )
