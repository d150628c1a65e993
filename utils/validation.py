# utils/validation.py
import re
from typing import Optional

from core.errors import ValidationError

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def validate_address(address: str) -> str:
    if not isinstance(address, str) or not ADDRESS_RE.match(address):
        raise ValidationError(f"Invalid Ethereum address format: {address!r}")
    return address


def validate_block_range(start_block: Optional[int], end_block: Optional[int]) -> None:
    for label, value in (("start block", start_block), ("end block", end_block)):
        if value is not None and value < 0:
            raise ValidationError(f"{label} must not be negative, got {value}")
    if start_block is not None and end_block is not None and start_block > end_block:
        raise ValidationError(f"Start block {start_block} must be less than or equal to end block {end_block}")


def sanitize_name(name: str) -> str:
    """Filesystem-safe, lower-case form of an entity name."""
    return UNSAFE_NAME_CHARS.sub("_", name).lower()


def parse_block_number(value) -> int:
    """Block numbers arrive as ints, decimal strings or 0x-prefixed hex."""
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text)
