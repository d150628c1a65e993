# models/entity.py
from dataclasses import dataclass, asdict
from typing import Any, Dict


@dataclass(frozen=True)
class EntityInfo:
    """The organization/address a CollectionState belongs to."""
    name: str
    address: str
    chain_id: int
    date_added: str
    network: str = "mainnet"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "name": data["name"],
            "address": data["address"],
            "chainId": data["chain_id"],
            "network": data["network"],
            "dateAdded": data["date_added"],
        }
