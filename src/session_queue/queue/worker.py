"""Queue worker that executes pending jobs one at a time."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from session_queue.providers.registry import ProviderRegistry, UnknownProviderError
from session_queue.queue.executor import ExecutionErrorKind, JobExecutionError, JobExecutor
from session_queue.queue.models import JobView
from session_queue.queue.notifications import NotificationDispatcher
from session_queue.queue.repository import JobRepository

logger = logging.getLogger(__name__)

_PROMPT_PREVIEW_CHARS = 50
_LEASE_CHECK_SECONDS = 30.0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    idle_polls: int = 0
    skipped_ticks: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls
        self.skipped_ticks += other.skipped_ticks


class QueueWorker:
    """Claims and executes jobs strictly one at a time.

    The agent CLIs are interactive tools that are unsafe to run concurrently
    against a shared working directory, so throughput is bounded by serial
    execution. ``run_once`` is a single tick; ``start`` drives ticks from a
    background thread and ``run_loop`` from the calling thread. With
    ``stale_after_seconds`` set, an idle tick also fails running jobs older
    than that lease so an orphaned row cannot block the queue.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        executor: JobExecutor,
        providers: ProviderRegistry,
        dispatcher: NotificationDispatcher,
        poll_interval_seconds: float = 3.0,
        stale_after_seconds: float | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.providers = providers
        self.dispatcher = dispatcher
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._current_job_id: int | None = None
        self._next_lease_check = 0.0

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop.is_set()

    @property
    def current_job_id(self) -> int | None:
        return self._current_job_id

    def start(self) -> None:
        """Start background ticking; no-op when already running."""

        if self.is_running:
            return
        # A previously stopped thread may still be finishing its job; it keeps
        # its own stop event and exits afterwards, the tick lock keeps them serial.
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._thread_loop,
            args=(self._stop,),
            name="session-queue-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info("Worker started (poll interval %.1fs)", self.poll_interval_seconds)

    def stop(self, *, timeout_seconds: float | None = None) -> None:
        """Stop ticking; a job already executing is allowed to finish."""

        self._stop.set()
        thread = self._thread
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout=timeout_seconds)
        if not thread.is_alive():
            self._thread = None
        logger.info("Worker stopped")

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if not self._tick_lock.acquire(blocking=False):
            summary.skipped_ticks = 1
            return summary
        try:
            job = self.repository.claim_job()
            if job is None and self._recover_stale():
                job = self.repository.claim_job()
            if job is None:
                summary.idle_polls = 1
                return summary
            summary.processed = 1
            self._current_job_id = job.id
            self._process(job, summary)
            return summary
        finally:
            self._current_job_id = None
            self._tick_lock.release()

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Tick from the calling thread until stopped.

        Args:
            max_tasks: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        self._stop = threading.Event()
        with self._signal_handlers():
            while not self._stop.is_set():
                summary = self.run_once()
                aggregate.add(summary)
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break
                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                else:
                    consecutive_idle = 0
                self._stop.wait(timeout=self.poll_interval_seconds)
        return aggregate

    def _thread_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Worker tick failed")
            stop.wait(timeout=self.poll_interval_seconds)

    def _process(self, job: JobView, summary: WorkerRunSummary) -> None:
        logger.info("Processing #%d: %r", job.id, job.prompt[:_PROMPT_PREVIEW_CHARS])
        try:
            provider = self.providers.resolve(job.provider_name)
            outcome = self.executor.run(job, provider)
        except JobExecutionError as error:
            if error.kind == ExecutionErrorKind.TIMEOUT:
                summary.timeouts = 1
            self._fail(job, str(error), summary)
        except UnknownProviderError as error:
            self._fail(job, str(error), summary)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while executing job #%d", job.id)
            self._fail(job, str(error) or type(error).__name__, summary)
        else:
            if self.repository.mark_completed(job.id, outcome.text, outcome.model):
                summary.succeeded = 1
                logger.info("Completed #%d", job.id)
                self._notify(job.id)
            else:
                logger.warning("Job #%d left running state before completion was stored", job.id)

    def _fail(self, job: JobView, error: str, summary: WorkerRunSummary) -> None:
        logger.error("Failed #%d: %s", job.id, error)
        if self.repository.mark_failed(job.id, error):
            summary.failed = 1
            self._notify(job.id)
        else:
            logger.warning("Job #%d left running state before failure was stored", job.id)

    def _recover_stale(self) -> bool:
        """Fail running jobs whose lease expired; return whether any were failed.

        A running row blocks every claim, so an orphan left by a crashed
        process must be cleared by whoever is polling, not only at startup.
        """

        if self.stale_after_seconds is None:
            return False
        now = time.monotonic()
        if now < self._next_lease_check:
            return False
        self._next_lease_check = now + min(self.stale_after_seconds, _LEASE_CHECK_SECONDS)

        recovered = self.repository.fail_stale_running(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        for job in recovered:
            logger.warning("Failed #%d: lease expired while running", job.id)
            self.dispatcher.dispatch(job)
        return bool(recovered)

    def _notify(self, job_id: int) -> None:
        stored = self.repository.get_job(job_id)
        if stored is None:
            return
        self.dispatcher.dispatch(stored)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; finishing current job before exit", name)
            self._stop.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
