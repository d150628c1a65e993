# infrastructure/retry_policy.py
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from core.errors import (
    ConfigurationError, FatalProviderError, NotFoundError, RateLimitedError, RetryExhaustedError,
    TransientNetworkError, ValidationError, StorageError,
)
from core.logger import get_logger


class FailureKind(Enum):
    EMPTY = "empty"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"
    UNKNOWN = "unknown"


def classify_failure(error: BaseException) -> FailureKind:
    """Default classifier: typed provider errors first, then raw network exceptions."""
    if isinstance(error, NotFoundError):
        return FailureKind.EMPTY
    if isinstance(error, RateLimitedError):
        return FailureKind.RATE_LIMITED
    if isinstance(error, TransientNetworkError):
        return FailureKind.TRANSIENT
    if isinstance(error, (FatalProviderError, ValidationError, ConfigurationError, StorageError)):
        return FailureKind.FATAL
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, aiohttp.ClientConnectionError)):
        return FailureKind.TRANSIENT
    return FailureKind.UNKNOWN


class RetryPolicy:
    """
    Bounded retry loop for provider calls.

    - EMPTY: returns `empty_result()` straight away.
    - RATE_LIMITED: spends an attempt, waits the fixed `rate_limit_cooldown`.
    - TRANSIENT / UNKNOWN: spends an attempt, waits `base_delay * 2 ** attempt_index`.
    - FATAL: raised as is, no retry.

    When every attempt has failed a RetryExhaustedError carrying the last error is raised.
    """

    def __init__(self, max_attempts: int = 3, base_delay: float = 10.0, rate_limit_cooldown: float = 5.0,
                 classifier: Callable[[BaseException], FailureKind] = classify_failure,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 empty_result: Callable[[], Any] = list,
                 logger=None):
        if max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1, got {max_attempts}")
        if base_delay < 0 or rate_limit_cooldown < 0:
            raise ConfigurationError("Retry delays must not be negative")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_cooldown = rate_limit_cooldown
        self.classifier = classifier
        self._sleep = sleep
        self.empty_result = empty_result
        self.logger = logger or get_logger("retry")

    def backoff(self, attempt_index: int) -> float:
        return self.base_delay * (2 ** attempt_index)

    async def run(self, operation: Callable[[], Awaitable[Any]], description: str = "operation") -> Any:
        last_error: Optional[BaseException] = None

        for attempt_index in range(self.max_attempts):
            attempt = attempt_index + 1
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = self.classifier(e)

                if kind is FailureKind.EMPTY:
                    self.logger.debug(f"[RETRY] {description}: no data ({e})")
                    return self.empty_result()

                if kind is FailureKind.FATAL:
                    self.logger.error(f"[RETRY] {description} failed with a non-retryable error: {e}")
                    raise

                last_error = e
                if attempt == self.max_attempts:
                    break

                if kind is FailureKind.RATE_LIMITED:
                    delay = self.rate_limit_cooldown
                    self.logger.warning(
                        f"[RETRY] {description} rate limited (attempt {attempt}/{self.max_attempts}), "
                        f"cooling down {delay:.1f}s")
                else:
                    delay = self.backoff(attempt_index)
                    self.logger.warning(
                        f"[RETRY] {description} failed (attempt {attempt}/{self.max_attempts}), "
                        f"retrying in {delay:.1f}s: {e}")
                await self._sleep(delay)

        self.logger.error(f"[RETRY] {description} gave up after {self.max_attempts} attempts: {last_error}")
        raise RetryExhaustedError(description, self.max_attempts, last_error) from last_error
