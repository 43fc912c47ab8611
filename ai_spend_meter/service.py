"""
Service wiring and the query API.

All ingestion work (watcher batches, timer scans, manual refreshes, resets
and re-pricing) runs on one background worker thread, so file cursors and
store writes are only ever mutated from a single lane. Query methods read
the store directly and may be called from any thread.
"""

import logging
import threading
from collections import deque
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Deque, List, Optional, Set, Tuple

from ai_spend_meter.config.loader import AppConfig
from ai_spend_meter.core.aggregation import AggregationEngine, Period, SessionUsage, SpendSummary
from ai_spend_meter.core.ingestion import IngestionCoordinator, IngestionReport
from ai_spend_meter.core.pricing import PricingTable, Provenance
from ai_spend_meter.core.pricing_resolver import PricingResolver
from ai_spend_meter.storage.repository import UsageRepository
from ai_spend_meter.watcher.file_watcher import FileWatcher, WatcherState, discover_log_files

logger = logging.getLogger(__name__)


class AccessDeniedError(Exception):
    """Raised when ingestion is requested without read access to the log roots."""


class AccessGuard:
    """Holds the read-access grant for the log roots.

    Granting and revoking is driven from outside (a permission dialog, a
    settings toggle); the service only consults the current state.
    """

    def __init__(self, granted: bool = True):
        self._granted = threading.Event()
        if granted:
            self._granted.set()

    def grant(self) -> None:
        self._granted.set()

    def revoke(self) -> None:
        self._granted.clear()

    @property
    def is_granted(self) -> bool:
        return self._granted.is_set()


class IngestionWorker:
    """Single background lane for every store mutation.

    Watcher batches are merged into one pending path set and full-scan
    requests collapse into one, so bursts of triggers never queue up
    unboundedly. Failures are logged and recorded; the loop keeps running.
    """

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        discover: Callable[[], List[str]],
        access_check: Callable[[], bool] = lambda: True,
    ):
        self.coordinator = coordinator
        self._discover = discover
        self._access_check = access_check

        self._cond = threading.Condition()
        self._pending_paths: Set[str] = set()
        self._scan_waiters: List[Future] = []
        self._scan_requested = False
        self._jobs: Deque[Tuple[Callable[[], Any], Future]] = deque()
        self._stopping = False
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.last_report: Optional[IngestionReport] = None
        self.last_error: Optional[BaseException] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        with self._cond:
            self._stopping = False
        self._cancel.clear()
        self._thread = threading.Thread(target=self._run, name="ingestion-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the file currently being ingested; pending requests are cancelled."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        self._cancel.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        with self._cond:
            leftovers = [future for _, future in self._jobs] + self._scan_waiters
            self._jobs.clear()
            self._scan_waiters = []
            self._scan_requested = False
            self._pending_paths.clear()
        for future in leftovers:
            future.cancel()

    def submit_paths(self, paths: List[str]) -> None:
        """Queue changed files for the next pass."""
        with self._cond:
            self._pending_paths.update(paths)
            self._cond.notify()

    def request_full_scan(self) -> Future:
        """Queue a pass over every discovered log file.

        Returns:
            Future resolving to the pass's IngestionReport
        """
        future: Future = Future()
        with self._cond:
            self._scan_requested = True
            self._scan_waiters.append(future)
            self._cond.notify()
        return future

    def submit(self, job: Callable[[], Any]) -> Future:
        """Run an arbitrary job on the ingestion lane."""
        future: Future = Future()
        with self._cond:
            self._jobs.append((job, future))
            self._cond.notify()
        return future

    def _run(self) -> None:
        while True:
            with self._cond:
                while not (self._stopping or self._jobs or self._scan_requested or self._pending_paths):
                    self._cond.wait()
                if self._stopping:
                    return
                if self._jobs:
                    job, future = self._jobs.popleft()
                    waiters = [future]
                elif self._scan_requested:
                    paths = sorted(self._pending_paths)
                    waiters, self._scan_waiters = self._scan_waiters, []
                    self._scan_requested = False
                    self._pending_paths.clear()
                    job = lambda paths=paths: self.ingest(self._discover() + paths)
                else:
                    paths = sorted(self._pending_paths)
                    waiters = []
                    self._pending_paths.clear()
                    job = lambda paths=paths: self.ingest(paths)

            waiters = [f for f in waiters if f.set_running_or_notify_cancel()]
            try:
                result = job()
            except Exception as e:
                logger.exception("Ingestion job failed")
                self.last_error = e
                for future in waiters:
                    future.set_exception(e)
            else:
                for future in waiters:
                    future.set_result(result)

    def ingest(self, paths: List[str]) -> IngestionReport:
        """Run one pass; only call from the ingestion lane."""
        if not self._access_check():
            raise AccessDeniedError("Read access to the log directories has not been granted")
        report = self.coordinator.run_ingestion_pass(paths, cancel=self._cancel)
        self.last_report = report
        self.last_error = None
        return report


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SpendMeterService:
    """Wires the watcher, worker, pricing and store into one query surface."""

    def __init__(
        self,
        config: AppConfig,
        access: Optional[AccessGuard] = None,
        repository: Optional[UsageRepository] = None,
        resolver: Optional[PricingResolver] = None,
        clock: Callable[[], datetime] = _utcnow,
        tz: Optional[tzinfo] = None,
        watcher_factory: Callable[..., FileWatcher] = FileWatcher,
    ):
        """Build every component from configuration.

        Args:
            config: Application configuration
            access: Access grant for the log roots; granted when omitted
            repository: Store to use instead of the configured database
            resolver: Pricing resolver to use instead of the configured one
            clock: Current UTC time, used for period bounds
            tz: Zone for day and month boundaries; system local when None
            watcher_factory: Builds the file watcher
        """
        self.config = config
        self.access = access or AccessGuard()
        self.repository = repository or UsageRepository(config.db_path)
        self.resolver = resolver or PricingResolver(
            url=config.pricing.url,
            cache_path=config.pricing.cache_path,
            timeout=config.pricing.timeout_seconds,
            cache_expiry=timedelta(hours=config.pricing.cache_expiry_hours),
            refresh_interval=timedelta(hours=config.pricing.refresh_interval_hours),
            unknown_model_retry=timedelta(seconds=config.pricing.unknown_model_retry_seconds),
        )
        self.coordinator = IngestionCoordinator(
            self.repository,
            self.resolver,
            tail_grace=timedelta(seconds=config.ingestion.tail_grace_seconds),
            cost_mode=config.ingestion.cost_mode,
        )
        self.aggregation = AggregationEngine(self.repository, clock=clock, tz=tz)
        self.worker = IngestionWorker(self.coordinator, self.discover_log_files, self.has_access)
        self.resolver.add_listener(self._on_pricing_swap)

        self._watcher_factory = watcher_factory
        self.watcher: Optional[FileWatcher] = None
        self._ticker_stop = threading.Event()
        self._ticker: Optional[threading.Thread] = None

    def discover_log_files(self) -> List[str]:
        return discover_log_files(self.config.log_directories)

    def has_access(self) -> bool:
        return self.access.is_granted

    def start(self, watch: bool = True, refresh_pricing: bool = True, initial_scan: bool = True) -> Optional[Future]:
        """Start background ingestion.

        Args:
            watch: Start the file watcher and the periodic scan timer
            refresh_pricing: Start the remote pricing refresh schedule
            initial_scan: Queue a full scan immediately

        Returns:
            Future for the initial scan's report, or None

        Raises:
            AccessDeniedError: If read access has not been granted
            StoreError: If the store cannot be initialized
        """
        self._require_access()
        self.repository.initialize_schema()
        self.resolver.load_offline()
        self.worker.start()
        if refresh_pricing:
            self.resolver.start_background_refresh()
        if watch:
            self._start_watcher()
            self._ticker_stop.clear()
            self._ticker = threading.Thread(target=self._tick_loop, name="ingestion-timer", daemon=True)
            self._ticker.start()
        logger.info("Spend meter started for %s", ", ".join(self.config.log_directories))
        return self.worker.request_full_scan() if initial_scan else None

    def stop(self) -> None:
        """Stop watcher, timer, worker and pricing refresh; releases all watch handles."""
        self._ticker_stop.set()
        if self._ticker is not None:
            self._ticker.join()
            self._ticker = None
        self._stop_watcher()
        self.worker.stop()
        self.resolver.stop()

    def summarize(self, period: Period) -> SpendSummary:
        return self.aggregation.summarize(period)

    def session_usage(self) -> SessionUsage:
        """Tokens used in the configured session window and the alert level."""
        session = self.config.session
        return self.aggregation.session_usage(
            token_limit=session.token_limit,
            window_hours=session.window_hours,
            warning_ratio=session.warning_threshold,
            critical_ratio=session.critical_threshold,
        )

    def record_count(self) -> int:
        return self.repository.record_count()

    def current_pricing_provenance(self) -> Provenance:
        return self.resolver.current_provenance()

    def trigger_manual_refresh(self, timeout: Optional[float] = None) -> IngestionReport:
        """Run a full scan on the ingestion lane and wait for its report.

        Raises:
            AccessDeniedError: If read access has not been granted
            StoreError: If the pass could not commit
        """
        self._require_access()
        return self._run_on_lane(self.worker.request_full_scan, timeout)

    def reset(self, timeout: Optional[float] = None) -> IngestionReport:
        """Clear every record and cursor, then re-ingest all logs from scratch.

        Raises:
            AccessDeniedError: If read access has not been granted
            StoreError: If the store could not be cleared
        """
        self._require_access()

        def reset_and_rescan() -> IngestionReport:
            self.repository.reset()
            return self.worker.ingest(self.discover_log_files())

        return self._run_on_lane(lambda: self.worker.submit(reset_and_rescan), timeout)

    def _run_on_lane(self, submit: Callable[[], Future], timeout: Optional[float]) -> Any:
        if not self.worker.is_running:
            self.repository.initialize_schema()
            self.worker.start()
        return submit().result(timeout)

    def _require_access(self) -> None:
        if not self.has_access():
            raise AccessDeniedError("Read access to the log directories has not been granted")

    def _on_pricing_swap(self, table: PricingTable) -> None:
        if self.worker.is_running:
            self.worker.submit(self.coordinator.reprice_unpriced)

    def _start_watcher(self) -> None:
        if self.watcher is not None:
            return
        self.watcher = self._watcher_factory(
            self.config.log_directories,
            on_batch=self.worker.submit_paths,
            on_unavailable=self._on_watcher_unavailable,
            debounce_seconds=self.config.watcher.debounce_ms / 1000,
            max_delay_seconds=self.config.watcher.max_delay_seconds,
        )
        self.watcher.start()

    def _stop_watcher(self) -> None:
        watcher, self.watcher = self.watcher, None
        if watcher is not None:
            watcher.stop()

    def _on_watcher_unavailable(self, reason: str) -> None:
        logger.warning("Falling back to timer-driven scans: %s", reason)

    def _tick_loop(self) -> None:
        interval = self.config.ingestion.poll_interval_seconds
        while not self._ticker_stop.wait(interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Ingestion timer tick failed")

    def tick(self) -> None:
        """Timer step: follow the access grant, then queue a full scan."""
        if not self.has_access():
            if self.watcher is not None:
                logger.warning("Log directory access withdrawn; pausing ingestion")
                self._stop_watcher()
            return
        if self.watcher is None:
            self._start_watcher()
        elif self.watcher.state is WatcherState.UNAVAILABLE:
            logger.debug("Watcher unavailable; relying on timer scans")
        self.worker.request_full_scan()
