# services/collector_service.py
import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from config.settings import settings
from core.errors import ConfigurationError, ResultWindowTooLargeError, ValidationError
from core.logger import get_logger
from infrastructure.async_factory import BaseAsyncFactory
from infrastructure.progress_store import DatabaseProgressStore, FileProgressStore, RedisProgressStore
from infrastructure.providers.base import DataProvider, create_provider
from infrastructure.rate_gate import RateGate
from infrastructure.retry_policy import RetryPolicy
from infrastructure.sinks import CsvFileSink, QueueSink, Sink
from models.collection_state import CollectionState, DataType, DEFAULT_TYPES, TypeCursor, Window
from models.entity import EntityInfo
from services.page_collector import PageCollector, WindowResult
from services.progress_tracker import ProgressTracker, utc_now_iso
from services.range_scheduler import RangeScheduler
from utils.timer import StepTimer
from utils.validation import validate_address, validate_block_range
from utils.yaml_utils import load_network

UP_TO_DATE = "up_to_date"
STOPPED = "stopped"
FAILED = "failed"


@dataclass
class TypeOutcome:
    data_type: DataType
    status: str
    last_block: int
    count: int
    windows: int = 0
    items: int = 0
    error: Optional[str] = None


@dataclass
class CollectionSummary:
    entity_id: str
    address: str
    end_block: int
    outcomes: Dict[DataType, TypeOutcome] = field(default_factory=dict)

    @property
    def failed(self) -> List[DataType]:
        return [dt for dt, outcome in self.outcomes.items() if outcome.status == FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


def resume_point(cursor: TypeCursor, start_block: Optional[int], resume: bool) -> int:
    """First block to fetch for one data type."""
    if resume and cursor.started:
        next_block = cursor.last_block + 1
        return max(next_block, start_block) if start_block is not None else next_block
    return start_block if start_block is not None else 0


class CollectionService(BaseAsyncFactory):
    """
    Drives collection for one entity: one worker per data type, each walking its windows in
    order and advancing its cursor only after a window is completely saved.

    Workers share the rate gate and the progress tracker. A failure ends only the worker it
    happened in; the others carry on and the summary says how far each one got.
    """

    def __init__(self, provider: Optional[DataProvider] = None, sink: Optional[Sink] = None,
                 tracker: Optional[ProgressTracker] = None, rate_gate: Optional[RateGate] = None,
                 retry_policy: Optional[RetryPolicy] = None, scheduler: Optional[RangeScheduler] = None,
                 page_collector: Optional[PageCollector] = None, provider_name: Optional[str] = None,
                 network: Optional[str] = None, concurrent_types: Optional[bool] = None,
                 progress_backend: Optional[str] = None, sink_backend: Optional[str] = None,
                 logger=None):
        self.progress_backend = progress_backend or settings.PROGRESS_BACKEND
        self.sink_backend = sink_backend or settings.SINK_BACKEND
        super().__init__(
            require_redis=tracker is None and self.progress_backend == "redis",
            require_db=tracker is None and self.progress_backend == "database",
            require_rabbit=sink is None and self.sink_backend == "rabbitmq",
            require_files=(tracker is None and self.progress_backend == "file")
                          or (sink is None and self.sink_backend == "csv"),
        )
        self.logger = logger or get_logger("collector")
        self.provider_name = provider_name or settings.PROVIDER
        self.network = load_network(network or settings.NETWORK)
        self.concurrent_types = settings.CONCURRENT_TYPES if concurrent_types is None else concurrent_types

        self.provider = provider
        self.sink = sink
        self.tracker = tracker
        self.rate_gate = rate_gate or RateGate(settings.REQUESTS_PER_SECOND, settings.RATE_TIME_WINDOW)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.MAX_RETRIES,
            base_delay=settings.RETRY_DELAY,
            rate_limit_cooldown=settings.RATE_LIMIT_COOLDOWN,
        )
        self.scheduler = scheduler or RangeScheduler(settings.WINDOW_SIZE)
        self.page_collector = page_collector or PageCollector(
            self.rate_gate, self.retry_policy, page_size=settings.PAGE_SIZE, timer=StepTimer(logger=self.logger))
        self._stop_event = asyncio.Event()

    async def service_setup(self):
        """Wire the configured progress store and sink onto the connections opened by async_setup."""
        if self.tracker is None:
            if self.progress_backend == "file":
                store = FileProgressStore(settings.STORAGE_BASE_DIR)
            elif self.progress_backend == "redis":
                store = RedisProgressStore(self.redis, prefix=settings.REDIS_STATE_PREFIX)
            elif self.progress_backend == "database":
                store = DatabaseProgressStore(self.db)
            else:
                raise ConfigurationError(f"Unknown progress backend: {self.progress_backend}")
            self.tracker = ProgressTracker(store)

        if self.sink is None:
            if self.sink_backend == "csv":
                self.sink = CsvFileSink(settings.STORAGE_BASE_DIR)
            elif self.sink_backend == "rabbitmq":
                self.sink = QueueSink(self.rabbit, queue_prefix=settings.RABBITMQ_QUEUE_PREFIX)
            else:
                raise ConfigurationError(f"Unknown sink backend: {self.sink_backend}")

        self.logger.info(f"Progress in {self.progress_backend}, items to {self.sink_backend}")

    def _get_provider(self) -> DataProvider:
        # Built on first use so `status` runs without provider credentials
        if self.provider is None:
            self.provider = create_provider(self.provider_name, self.network.name)
        return self.provider

    def request_stop(self):
        """Ask every worker to finish at the next page or window boundary."""
        if not self._stop_event.is_set():
            self.logger.info("Stop requested, finishing at the next boundary")
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def status(self, entity_id: str) -> Optional[CollectionState]:
        return await self.tracker.read(entity_id)

    async def current_block(self) -> int:
        provider = self._get_provider()
        return await self.retry_policy.run(
            lambda: self.rate_gate.schedule(provider.get_current_block),
            "Fetching current block",
        )

    async def collect(self, entity_id: str, address: str, data_types: Iterable[DataType] = DEFAULT_TYPES,
                      start_block: Optional[int] = None, end_block: Optional[int] = None,
                      resume: bool = False) -> CollectionSummary:
        if not entity_id:
            raise ValidationError("Entity name must not be empty")
        validate_address(address)
        validate_block_range(start_block, end_block)
        data_types = list(dict.fromkeys(data_types))
        if not data_types:
            raise ValidationError("At least one data type is required")

        if end_block is None:
            end_block = await self.current_block()
            self.logger.info(f"Current block is {end_block}")
            validate_block_range(start_block, end_block)

        state = await self.tracker.ensure(entity_id)
        await self.sink.register_entity(EntityInfo(
            name=entity_id,
            address=address,
            chain_id=self.network.chain_id,
            date_added=utc_now_iso(),
            network=self.network.name,
        ))

        self.logger.info(
            f"Collecting {', '.join(dt.value for dt in data_types)} for {entity_id} ({address}) "
            f"up to block {end_block}{' (resume)' if resume else ''}")

        summary = CollectionSummary(entity_id, address, end_block)

        def job(data_type):
            return self._collect_type(entity_id, address, data_type, state.cursor(data_type),
                                      start_block, end_block, resume)

        if self.concurrent_types:
            outcomes = await asyncio.gather(*(job(dt) for dt in data_types))
        else:
            outcomes = []
            for dt in data_types:
                outcomes.append(await job(dt))

        for outcome in outcomes:
            summary.outcomes[outcome.data_type] = outcome
        self.page_collector.timer.log()
        self._log_summary(summary)
        return summary

    async def _collect_type(self, entity_id: str, address: str, data_type: DataType, cursor: TypeCursor,
                            start_block: Optional[int], end_block: int, resume: bool) -> TypeOutcome:
        outcome = TypeOutcome(data_type, UP_TO_DATE, cursor.last_block, cursor.count)
        plan = self.scheduler.plan(resume_point(cursor, start_block, resume), end_block)
        if not len(plan):
            self.logger.info(f"[WINDOW] {data_type.label} for {entity_id} already up to date at {cursor.last_block}")
            return outcome

        self.logger.info(f"[WINDOW] {data_type.label} for {entity_id}: {len(plan)} windows from {plan.resume_from}")

        async def fetch(window, page):
            return await self._get_provider().fetch_page(
                address, data_type, window, page, self.page_collector.page_size, "asc")

        async def flush(items):
            await self.sink.save_batch(entity_id, data_type, items)

        try:
            for window in plan:
                if self.stop_requested:
                    outcome.status = STOPPED
                    break

                result = await self._drain_window(window, fetch, flush, data_type, entity_id)
                if not result.drained:
                    outcome.status = STOPPED
                    break

                state = await self.tracker.advance(entity_id, data_type, window.end, result.items)
                advanced = state.cursor(data_type)
                outcome.last_block = advanced.last_block
                outcome.count = advanced.count
                outcome.windows += 1
                outcome.items += result.items
                self.logger.info(
                    f"[WINDOW] {data_type.label} for {entity_id}: blocks {window} done, "
                    f"{result.items} items, cursor at {advanced.last_block}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome.status = FAILED
            outcome.error = f"{type(e).__name__}: {e}"
            self.logger.error(
                f"[WINDOW] {data_type.label} for {entity_id} stopped at block {outcome.last_block}: {e}",
                exc_info=True)

        return outcome

    async def _drain_window(self, window: Window, fetch, flush, data_type: DataType,
                            entity_id: str) -> WindowResult:
        """
        Drain a window, halving it while the provider refuses to page that deep into it.

        Pages already flushed before a split are delivered again by the first half.
        """
        try:
            return await self.page_collector.collect(
                window, fetch, flush, description=data_type.label, should_stop=self._stop_event.is_set)
        except ResultWindowTooLargeError:
            if len(window) < 2:
                raise
        middle = window.start + len(window) // 2 - 1
        self.logger.warning(
            f"[WINDOW] Too many {data_type.label} for {entity_id} in blocks {window}, "
            f"splitting at block {middle}")

        pages = items = 0
        for half in (Window(window.start, middle), Window(middle + 1, window.end)):
            part = await self._drain_window(half, fetch, flush, data_type, entity_id)
            pages += part.pages
            items += part.items
            if not part.drained:
                return WindowResult(window, pages, items, drained=False)
        return WindowResult(window, pages, items, drained=True)

    def _log_summary(self, summary: CollectionSummary):
        self.logger.info(f"Collection summary for {summary.entity_id} (target block {summary.end_block}):")
        for outcome in summary.outcomes.values():
            line = (f"  {outcome.data_type.value}: {outcome.status}, last block {outcome.last_block}, "
                    f"{outcome.count} items total ({outcome.items} this run)")
            if outcome.error:
                self.logger.error(f"{line}, error: {outcome.error}")
            else:
                self.logger.info(line)
        if summary.failed:
            self.logger.warning(
                f"Resume with --resume to continue {', '.join(dt.value for dt in summary.failed)} "
                f"from the last saved window")

    async def stop(self):
        self.request_stop()
        if self.provider:
            try:
                await self.provider.close()
            except Exception as e:
                self.logger.warning(f"Error closing provider: {e}")
        if self.sink:
            try:
                await self.sink.close()
            except Exception as e:
                self.logger.warning(f"Error closing sink: {e}")
        await super().stop()
