# infrastructure/rate_gate.py
import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from core.errors import ConfigurationError
from core.logger import get_logger

T = TypeVar("T")


class RateGate:
    """
    Spaces outgoing provider calls at least `time_window / requests_per_second` apart.

    Callers are released one at a time in arrival order (asyncio.Lock wakes waiters FIFO).
    The gate only controls when a call may start; the call itself runs outside the lock,
    so one instance can be shared by every worker talking to the same provider.
    """

    def __init__(self, requests_per_second: float = 5, time_window: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 logger=None):
        if requests_per_second <= 0:
            raise ConfigurationError(f"requests_per_second must be positive, got {requests_per_second}")
        if time_window <= 0:
            raise ConfigurationError(f"time_window must be positive, got {time_window}")
        self.requests_per_second = requests_per_second
        self.time_window = time_window
        self.min_interval = time_window / requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_release: Optional[float] = None
        self.logger = logger or get_logger("rate_gate")

    async def acquire(self) -> float:
        """Wait for our turn. Returns the seconds spent waiting."""
        async with self._lock:
            waited = 0.0
            if self._last_release is not None:
                waited = self._last_release + self.min_interval - self._clock()
                if waited > 0:
                    self.logger.debug(f"[RATE] Holding call for {waited:.3f}s")
                    await self._sleep(waited)
                else:
                    waited = 0.0
            self._last_release = self._clock()
            return waited

    async def schedule(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        await self.acquire()
        return await fn(*args, **kwargs)
