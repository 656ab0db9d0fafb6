"""Use-case service that wires the queue, worker and notification delivery."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from session_queue.config import Settings
from session_queue.providers.registry import ProviderRegistry, default_registry
from session_queue.queue.executor import JobExecutor
from session_queue.queue.models import JobCreate, JobStatus, JobView, QueueStats
from session_queue.queue.notifications import NotificationDispatcher, NotifyCallback
from session_queue.queue.repository import JobRepository
from session_queue.queue.worker import QueueWorker

logger = logging.getLogger(__name__)

MIN_LIST_LIMIT = 1
MAX_LIST_LIMIT = 100


class QueueSubmissionError(ValueError):
    """Job request rejected before anything was stored."""


class QueueService:
    """Composition root for one queue database.

    Owns the repository, the provider registry, the notification dispatcher and
    the single ``QueueWorker`` that drains the queue. Callers must run
    ``bootstrap()`` once before serving traffic.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        providers: ProviderRegistry | None = None,
        executor: JobExecutor | None = None,
        auto_start_worker: bool | None = None,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.auto_start_worker = (
            settings.worker.auto_start if auto_start_worker is None else auto_start_worker
        )
        self.repository = JobRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        self.providers = providers or default_registry(settings.providers)
        self.dispatcher = NotificationDispatcher()
        self.worker = QueueWorker(
            repository=self.repository,
            executor=executor
            or JobExecutor(
                timeout_seconds=settings.worker.job_timeout_seconds,
                kill_grace_seconds=settings.worker.kill_grace_seconds,
                permission_mode=settings.worker.permission_mode,
                model=settings.worker.model,
            ),
            providers=self.providers,
            dispatcher=self.dispatcher,
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            stale_after_seconds=(
                settings.worker.stale_after_seconds
                if settings.worker.recover_stale_on_start
                else None
            ),
        )

    def bootstrap(self) -> list[JobView]:
        """Migrate the schema, recover interrupted jobs and resume pending work.

        Returns the jobs that were failed as interrupted.
        """

        self.repository.init_schema()
        recovered: list[JobView] = []
        if self.settings.worker.recover_stale_on_start:
            recovered = self.repository.fail_stale_running(
                stale_after=timedelta(seconds=self.settings.worker.stale_after_seconds),
            )
            for job in recovered:
                logger.warning("Recovered interrupted job #%d", job.id)
                self.dispatcher.dispatch(job)

        pending = self.repository.pending_count()
        if pending:
            logger.info("%d pending job(s) in queue", pending)
            if self.auto_start_worker:
                self.worker.start()
        return recovered

    def enqueue(  # noqa: PLR0913
        self,
        prompt: str,
        *,
        channel_id: str,
        channel_platform: str,
        provider_name: str | None = None,
        working_directory: str | None = None,
    ) -> JobView:
        """Validate and store a new pending job."""

        text = prompt.strip()
        if not text:
            raise QueueSubmissionError("Prompt must not be empty.")
        name = (provider_name or "").strip() or self.providers.default_name
        if self.providers.get(name) is None:
            known = ", ".join(self.providers.names())
            raise QueueSubmissionError(f'Provider "{name}" not available (registered: {known})')

        job = self.repository.enqueue_job(
            JobCreate(
                prompt=text,
                channel_id=channel_id,
                channel_platform=channel_platform,
                provider_name=name,
                working_directory=working_directory or None,
            ),
        )
        logger.info("Enqueued #%d for %s channel %s", job.id, channel_platform, channel_id)
        if self.auto_start_worker:
            self.worker.start()
        return job

    def get(self, job_id: int) -> JobView | None:
        return self.repository.get_job(job_id)

    def list(
        self,
        *,
        status: JobStatus | None = None,
        channel_id: str | None = None,
        limit: int = 20,
    ) -> list[JobView]:
        bounded = max(MIN_LIST_LIMIT, min(MAX_LIST_LIMIT, limit))
        return self.repository.list_jobs(status=status, channel_id=channel_id, limit=bounded)

    def stats(self) -> QueueStats:
        return self.repository.stats()

    def cancel(self, job_id: int) -> bool:
        """Cancel a pending job; running and finished jobs are left alone."""

        cancelled = self.repository.cancel_job(job_id)
        if cancelled:
            logger.info("Cancelled #%d", job_id)
        return cancelled

    def retry(self, job_id: int) -> JobView:
        """Enqueue a failed job again as a new job with the same request."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise QueueSubmissionError(f"Job not found: #{job_id}")
        if job.status != JobStatus.FAILED:
            raise QueueSubmissionError(
                f"Only failed jobs can be retried: #{job_id} is {job.status.value}",
            )
        return self.enqueue(
            job.prompt,
            channel_id=job.channel_id,
            channel_platform=job.channel_platform,
            provider_name=job.provider_name,
            working_directory=job.working_directory,
        )

    def clear_finished(self, *, older_than: datetime | None = None) -> int:
        removed = self.repository.clear_finished(older_than=older_than)
        logger.info("Removed %d finished job(s)", removed)
        return removed

    def register_notifier(self, callback: NotifyCallback | None) -> None:
        self.dispatcher.register(callback)

    def shutdown(self, *, timeout_seconds: float | None = None) -> None:
        """Stop the worker and release the database."""

        self.worker.stop(timeout_seconds=timeout_seconds)
        self.repository.close()
