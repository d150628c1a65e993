# services/range_scheduler.py
from typing import Iterator

from core.errors import ConfigurationError
from models.collection_state import Window


class WindowPlan:
    """Ascending, gap-free windows over [resume_from, end_block]. Iterating again starts over."""

    def __init__(self, resume_from: int, end_block: int, window_size: int):
        self.resume_from = resume_from
        self.end_block = end_block
        self.window_size = window_size

    def __iter__(self) -> Iterator[Window]:
        start = self.resume_from
        while start <= self.end_block:
            end = min(start + self.window_size - 1, self.end_block)
            yield Window(start, end)
            start = end + 1

    def __len__(self):
        if self.resume_from > self.end_block:
            return 0
        span = self.end_block - self.resume_from + 1
        return -(-span // self.window_size)

    def __repr__(self):
        return f"<WindowPlan {self.resume_from}-{self.end_block} by {self.window_size}>"


class RangeScheduler:
    def __init__(self, window_size: int = 50000):
        if isinstance(window_size, bool) or not isinstance(window_size, int) or window_size <= 0:
            raise ConfigurationError(f"window_size must be a positive integer, got {window_size!r}")
        self.window_size = window_size

    def plan(self, resume_from: int, end_block: int) -> WindowPlan:
        return WindowPlan(resume_from, end_block, self.window_size)
