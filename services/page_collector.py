# services/page_collector.py
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from core.errors import ConfigurationError
from core.logger import get_logger
from infrastructure.rate_gate import RateGate
from infrastructure.retry_policy import RetryPolicy
from models.collection_state import Window
from utils.timer import StepTimer

FetchPage = Callable[[Window, int], Awaitable[Sequence[dict]]]
FlushItems = Callable[[List[dict]], Awaitable[None]]


@dataclass(frozen=True)
class WindowResult:
    window: Window
    pages: int
    items: int
    drained: bool  # every page fetched and flushed; safe to advance the cursor to window.end


class PageCollector:
    """
    Drains one window page by page.

    Every page goes through the retry policy, and every attempt through the rate gate,
    then is flushed straight to the sink. Pagination stops on an empty page or a page
    shorter than `page_size`. Errors propagate; the caller keeps its cursor where it was.
    """

    def __init__(self, rate_gate: RateGate, retry_policy: RetryPolicy, page_size: int = 100,
                 timer: Optional[StepTimer] = None, logger=None):
        if page_size <= 0:
            raise ConfigurationError(f"page_size must be positive, got {page_size}")
        self.rate_gate = rate_gate
        self.retry_policy = retry_policy
        self.page_size = page_size
        self.timer = timer or StepTimer()
        self.logger = logger or get_logger("page_collector")

    async def collect(self, window: Window, fetch: FetchPage, flush: FlushItems,
                      description: str = "items",
                      should_stop: Optional[Callable[[], bool]] = None) -> WindowResult:
        page = 1
        pages = 0
        total = 0

        while True:
            if should_stop and should_stop():
                self.logger.info(f"[PAGE] Stop requested in {description} window {window} before page {page}")
                return WindowResult(window, pages, total, drained=False)

            with self.timer.time("fetch_page"):
                items = await self.retry_policy.run(
                    lambda: self.rate_gate.schedule(fetch, window, page),
                    f"Fetching {description} page {page} for blocks {window}",
                )
            pages += 1

            if not items:
                self.logger.debug(f"[PAGE] No {description} on page {page} of blocks {window}")
                break

            items = list(items)
            with self.timer.time("flush_page"):
                await flush(items)
            total += len(items)
            self.timer.tick()
            self.logger.info(
                f"[PAGE] Saved {len(items)} {description} (window total: {total}, blocks: {window}, page: {page})")

            if len(items) < self.page_size:
                break
            page += 1

        return WindowResult(window, pages, total, drained=True)
