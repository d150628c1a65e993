# infrastructure/providers/http.py
import asyncio
from typing import Any, Optional

import aiohttp

from core.errors import FatalProviderError, RateLimitedError, TransientNetworkError

NETWORK_ERRORS = (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError)


def classify_message(source: str, message: str, details: Any = None) -> Exception:
    """Map a provider's error text to the engine's typed errors."""
    text = (message or "").lower()
    if "rate limit" in text or "max calls per sec" in text or "too many requests" in text:
        return RateLimitedError(f"{source}: {message}", details=details)
    if "timeout" in text or "timed out" in text or "temporarily unavailable" in text:
        return TransientNetworkError(f"{source}: {message}", details=details)
    return FatalProviderError(f"{source}: {message}", details=details)


def check_http_status(source: str, status: int, body: str = "") -> None:
    if status == 429:
        raise RateLimitedError(f"{source}: HTTP 429", details=body[:200])
    if status >= 500 or status == 408:
        raise TransientNetworkError(f"{source}: HTTP {status}", details=body[:200])
    if status < 200 or status >= 300:
        raise FatalProviderError(f"{source}: HTTP {status}", details=body[:200])


async def request_json(session: aiohttp.ClientSession, method: str, url: str, source: str,
                       params: Optional[dict] = None, json_body: Any = None) -> Any:
    """One HTTP round trip; transport failures come back as TransientNetworkError."""
    try:
        async with session.request(method, url, params=params, json=json_body) as response:
            if response.status != 200:
                check_http_status(source, response.status, await response.text())
            return await response.json(content_type=None)
    except NETWORK_ERRORS as e:
        raise TransientNetworkError(f"{source}: {type(e).__name__}: {e}") from e
    except ValueError as e:
        # Truncated or HTML error pages instead of JSON
        raise TransientNetworkError(f"{source}: invalid JSON response: {e}") from e
