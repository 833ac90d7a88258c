"""
Cycle Controller

Runs the polling loop:
- Re-reads settings, roster and found list at the start of every cycle
- Filters the roster and builds per-course batches
- Keeps at most ``max_concurrency`` batches in flight on a thread pool
- Hands each finished batch to the mode policy, one student at a time
- Restarts (submission mode) or terminates (missing mode) when drained
- Stops cleanly on stop() or an operator shutdown after an auth error

Usage:
    from canvas_looper.cycle_controller import CycleController

    controller = CycleController(client, store, sink, settings_provider)
    controller.run()            # blocks; or controller.start() for a thread
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, List, Any, Callable, Tuple

import requests

from . import config
from .auth_coordinator import AuthErrorCoordinator, AuthDecision
from .batch_builder import Batch, filter_roster, prepare_batches
from .canvas_client import CanvasClient, APIError
from .config import LooperSettings, JsonSettingsProvider
from .policies import CyclePolicy, make_policy
from .roster import RosterStore
from .sinks import ResultSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleProgress:
    """Read-only progress snapshot published to the progress callback."""
    cycle: int = 0
    processed: int = 0
    total: int = 0
    batches_done: int = 0
    batches_total: int = 0
    errors: int = 0
    skipped: int = 0
    elapsed_seconds: float = 0.0


class FetchStatus(Enum):
    OK = 'ok'
    FAILED = 'failed'
    SHUTDOWN = 'shutdown'
    CANCELLED = 'cancelled'


@dataclass
class BatchResult:
    """What a worker hands back to the controller."""
    batch: Batch
    status: FetchStatus = FetchStatus.OK
    submissions: List[Dict] = field(default_factory=list)
    users: List[Dict] = field(default_factory=list)
    error: Optional[str] = None


class CycleController:
    """
    Bounded worker pool plus the cycle state machine.

    Queue position, active worker count and progress counters are owned by
    the controller thread; workers only fetch and return a BatchResult.
    """

    def __init__(
        self,
        client: CanvasClient,
        roster_store: RosterStore,
        sink: Optional[ResultSink] = None,
        settings_provider: Optional[Callable[[], LooperSettings]] = None,
        coordinator: Optional[AuthErrorCoordinator] = None,
        progress_callback: Optional[Callable[[CycleProgress], None]] = None,
        batch_size: int = config.BATCH_SIZE,
        restart_delay: float = config.CYCLE_RESTART_DELAY,
        idle_delay: float = config.IDLE_POLL_DELAY,
        poll_interval: float = 0.5,
        tz=None
    ):
        """
        Initialize the controller.

        Args:
            client: CanvasClient used by the workers
            roster_store: Source of the roster and found keys
            sink: Receives results
            settings_provider: Callable returning LooperSettings, read per cycle
            coordinator: Auth-error coordinator shared by the workers
            progress_callback: Receives CycleProgress snapshots
            batch_size: Maximum students per batch
            restart_delay: Pause between submission-mode cycles
            idle_delay: Pause before re-checking an empty submission roster
            poll_interval: How often the controller re-checks the stop flag
            tz: Time zone for date labels (local time when None)
        """
        self.client = client
        self.roster_store = roster_store
        self.sink = sink or ResultSink()
        self.settings_provider = settings_provider or JsonSettingsProvider()
        self.coordinator = coordinator or AuthErrorCoordinator()
        self.progress_callback = progress_callback
        self.batch_size = batch_size
        self.restart_delay = restart_delay
        self.idle_delay = idle_delay
        self.poll_interval = poll_interval
        self.tz = tz

        self.policy: Optional[CyclePolicy] = None
        self.cycle_count = 0
        self.max_in_flight = 0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._lock = threading.Lock()

        # Cycle state, controller thread only
        self._queue: List[Batch] = []
        self._next_index = 0
        self._active = 0
        self._processed = 0
        self._total = 0
        self._batches_done = 0
        self._errors = 0
        self._skipped = 0
        self._cycle_started = datetime.now()
        self._snapshot = CycleProgress()

    # ==========================================================================
    # Public control
    # ==========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def progress(self) -> CycleProgress:
        with self._lock:
            return self._snapshot

    def start(self, force: bool = False) -> threading.Thread:
        """Run the loop on a background thread."""
        if self._running and not force:
            logger.info("Looper already running, skipping start")
            return self._thread

        if self._running:
            self.stop()
            if self._thread is not None:
                self._thread.join()

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run_guarded, name='looper-controller', daemon=True)
        self._thread.start()
        return self._thread

    def stop(self):
        """Ask the loop to stop. In-flight results are discarded."""
        if not self._stop_event.is_set():
            logger.info("Stopping looper")
        self._stop_event.set()
        # release workers parked on an auth decision
        self.coordinator.reset()

    def run(self):
        """Run cycles until the policy terminates, stop() or an auth shutdown."""
        self._stop_event.clear()
        self._running = True
        self._run_guarded()

    def _run_guarded(self):
        try:
            self._run_loop()
        finally:
            self._running = False

    # ==========================================================================
    # Cycle logic
    # ==========================================================================

    def _halted(self) -> bool:
        return self._stop_event.is_set() or self.coordinator.is_shutdown

    def _run_loop(self):
        settings = self.settings_provider()
        self.coordinator.reset()
        self.policy = make_policy(
            settings,
            self.sink,
            restart_delay=self.restart_delay,
            idle_delay=self.idle_delay,
            tz=self.tz,
        )
        self.cycle_count = 0

        logger.info("=" * 60)
        logger.info(f"Looper started - mode: {self.policy.mode}, concurrency: {settings.max_concurrency}")
        logger.info("=" * 60)

        self.policy.begin_run()

        while not self._halted():
            try:
                delay = self._run_cycle(settings)
            except Exception:
                logger.exception(f"Cycle {self.cycle_count} failed, retrying in {self.restart_delay}s")
                delay = self.restart_delay
            if delay is None or self._halted():
                break
            if self._stop_event.wait(delay):
                break

            settings = self._reload_settings(settings)

        if self.coordinator.is_shutdown:
            logger.warning("Looper stopped after operator shutdown request")
        else:
            logger.info(f"Looper finished after {self.cycle_count} cycle(s)")

    def _reload_settings(self, current: LooperSettings) -> LooperSettings:
        """Read settings for the next cycle, keeping ``current`` if the read fails."""
        try:
            settings = self.settings_provider()
        except Exception:
            logger.exception("Could not read settings, keeping the previous ones")
            return current

        if settings.mode != self.policy.mode:
            logger.warning(
                f"Mode changed to {settings.mode!r} mid-run; restart the looper to apply it"
            )
        return settings

    def _run_cycle(self, settings: LooperSettings) -> Optional[float]:
        """
        Run one cycle.

        Returns:
            Delay before the next cycle, or None when the run is over
        """
        policy = self.policy
        self.cycle_count += 1
        policy.begin_cycle(settings)

        entries = self.roster_store.get_roster()
        found_keys = self.roster_store.get_found_keys()
        filtered = filter_roster(entries, settings.days_out_filter, settings.include_failing)
        filtered = policy.select(filtered, found_keys)

        logger.info(
            f"Cycle {self.cycle_count}: roster={len(entries)}, found={len(found_keys)}, "
            f"to check={len(filtered)} (filter={settings.days_out_filter!r}, "
            f"include_failing={settings.include_failing})"
        )

        if not filtered:
            self._reset_cycle_state([], skipped=0)
            self._publish()
            return policy.on_empty_roster()

        batches, skipped = prepare_batches(filtered, self.batch_size)
        if skipped:
            self.sink.on_students_skipped(skipped)

        self._reset_cycle_state(batches, skipped=len(skipped))
        logger.info(f"Prepared {len(batches)} batches from {self._total} students")
        self._publish()

        self._drain(settings.max_concurrency, policy)

        if self._halted():
            return None

        self.client.log_quota()
        return policy.on_cycle_complete()

    def _reset_cycle_state(self, batches: List[Batch], skipped: int):
        self._queue = list(batches)
        self._next_index = 0
        self._active = 0
        self._processed = 0
        self._total = sum(len(b) for b in batches)
        self._batches_done = 0
        self._errors = 0
        self._skipped = skipped
        self._cycle_started = datetime.now()

    def _drain(self, max_workers: int, policy: CyclePolicy):
        """Dispatch batches, at most ``max_workers`` in flight, until the queue is empty."""
        logger.info(f"Launching {max_workers} concurrent workers...")
        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='looper-worker')
        pending: Dict[Any, Batch] = {}

        try:
            while not self._halted():
                self._dispatch(executor, pending, max_workers)
                if not pending:
                    break

                done, _ = wait(list(pending), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    pending.pop(future)
                    self._active -= 1
                    self._batches_done += 1
                    self._complete(future, policy)
                    self._publish()
        except (KeyboardInterrupt, SystemExit):
            # drop in-flight work instead of joining it
            self._stop_event.set()
            raise
        finally:
            abandon = self._halted()
            if abandon and pending:
                logger.info(f"Abandoning {len(pending)} in-flight batches")
            executor.shutdown(wait=not abandon, cancel_futures=True)

    def _dispatch(self, executor: ThreadPoolExecutor, pending: Dict, max_workers: int):
        while (
            self._active < max_workers
            and self._next_index < len(self._queue)
            and not self._halted()
        ):
            batch = self._queue[self._next_index]
            self._next_index += 1

            # progress counts dispatched work, not completed work
            self._processed += len(batch)
            self._active += 1
            self.max_in_flight = max(self.max_in_flight, self._active)
            self._publish()

            pending[executor.submit(self._fetch_batch, batch)] = batch

    def _complete(self, future, policy: CyclePolicy):
        try:
            result: BatchResult = future.result()
        except Exception as e:
            logger.warning(f"Error processing batch: {e}")
            self._errors += 1
            return

        if result.status is FetchStatus.SHUTDOWN:
            logger.warning(f"Shutdown requested while fetching course {result.batch.course_id}")
            self._stop_event.set()
            return
        if result.status is FetchStatus.CANCELLED or self._stop_event.is_set():
            return
        if result.status is FetchStatus.FAILED:
            self._errors += 1
            return

        for entry, ref in result.batch.members:
            if self._halted():
                return
            submissions = [s for s in result.submissions if str(s.get('user_id')) == ref.student_id]
            user = next((u for u in result.users if str(u.get('id')) == ref.student_id), None)
            try:
                policy.handle_student(entry, submissions, user)
            except Exception:
                logger.exception(f"Error handling results for {entry.name}")
                self._errors += 1

    def _publish(self):
        snapshot = CycleProgress(
            cycle=self.cycle_count,
            processed=min(self._processed, self._total),
            total=self._total,
            batches_done=self._batches_done,
            batches_total=len(self._queue),
            errors=self._errors,
            skipped=self._skipped,
            elapsed_seconds=(datetime.now() - self._cycle_started).total_seconds(),
        )
        with self._lock:
            self._snapshot = snapshot
        if self.progress_callback:
            self.progress_callback(snapshot)

    # ==========================================================================
    # Worker side
    # ==========================================================================

    def _fetch_endpoint(self, url: str, params: Any) -> Tuple[FetchStatus, List[Dict]]:
        if self.coordinator.is_shutdown:
            return FetchStatus.SHUTDOWN, []

        result = self.client.fetch_paged(url, params)
        if result.auth_failed:
            if self.coordinator.report_auth_failure() is AuthDecision.SHUTDOWN:
                return FetchStatus.SHUTDOWN, []
        return FetchStatus.OK, result.items

    def _fetch_batch(self, batch: Batch) -> BatchResult:
        """
        Worker: fetch submissions and users for one batch.

        A failed submissions call fails the batch; a failed users call only
        leaves grades blank.
        """
        if self.coordinator.is_shutdown:
            return BatchResult(batch, FetchStatus.SHUTDOWN)
        if self._stop_event.is_set():
            return BatchResult(batch, FetchStatus.CANCELLED)

        url, params = self.client.submissions_request(batch)
        try:
            status, submissions = self._fetch_endpoint(url, params)
        except (APIError, requests.exceptions.RequestException) as e:
            logger.error(f"Submissions fetch failed for course {batch.course_id}: {e}")
            return BatchResult(batch, FetchStatus.FAILED, error=str(e))
        if status is FetchStatus.SHUTDOWN:
            return BatchResult(batch, FetchStatus.SHUTDOWN)
        if self._stop_event.is_set():
            return BatchResult(batch, FetchStatus.CANCELLED)

        users: List[Dict] = []
        url, params = self.client.users_request(batch)
        try:
            status, users = self._fetch_endpoint(url, params)
        except (APIError, requests.exceptions.RequestException) as e:
            logger.warning(
                f"Users/Grades fetch failed for course {batch.course_id} "
                f"(continuing with blank grades): {e}"
            )
        if status is FetchStatus.SHUTDOWN:
            return BatchResult(batch, FetchStatus.SHUTDOWN)

        return BatchResult(batch, FetchStatus.OK, submissions=submissions, users=users)
