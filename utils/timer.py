import logging
import time
from contextlib import contextmanager

from core.logger import get_logger

STEP_LOG = 100


class StepTimer:
    """Accumulates per-step durations and logs the averages every `interval` ticks."""

    def __init__(self, interval: int = STEP_LOG, logger=None):
        self.totals = {}
        self.hits = {}
        self.interval = interval
        self.count = 0
        self.logger = logger or get_logger("timer")

    @contextmanager
    def time(self, step):
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self.totals[step] = self.totals.get(step, 0) + elapsed
            self.hits[step] = self.hits.get(step, 0) + 1

            if self.logger.isEnabledFor(logging.DEBUG):
                self.logger.debug(f"[TIMER] {step} took {elapsed:.4f}s")

    def tick(self):
        self.count += 1
        if self.count >= self.interval:
            self.log()
            self.reset()

    def averages(self):
        return {k: v / self.hits.get(k, 1) for k, v in self.totals.items()}

    def log(self):
        if not self.totals:
            return
        self.logger.info("[PERF] Timing measurements: " +
                         ", ".join(f"{k}={v:.4f}s" for k, v in self.averages().items()))

    def reset(self):
        self.totals.clear()
        self.hits.clear()
        self.count = 0
