"""Controllers for session queue CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from session_queue.config import Settings
from session_queue.queue.models import JobStatus, JobView
from session_queue.queue.notifications import JobReply
from session_queue.queue.services import QueueService
from session_queue.storage.common import utc_now

CLI_CHANNEL_ID = "cli"
CLI_PLATFORM = "cli"
_PREVIEW_CHARS = 60


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for job submission."""

    db_path: Path | None
    prompt: str
    provider: str | None
    working_directory: Path | None
    channel_id: str
    channel_platform: str


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    channel_id: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job operations (show/cancel/retry)."""

    db_path: Path | None
    job_id: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class ClearCommand:
    """CLI input for finished-job cleanup."""

    db_path: Path | None
    older_than_hours: int | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for foreground worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


class JobNotFoundError(LookupError):
    """Requested job id does not exist."""


class JobStateError(RuntimeError):
    """Job exists but its status does not allow the requested change."""


class QueueCliController:
    """CLI-facing controller that returns printable lines."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            job = service.enqueue(
                command.prompt,
                channel_id=command.channel_id,
                channel_platform=command.channel_platform,
                provider_name=command.provider,
                working_directory=(
                    str(command.working_directory) if command.working_directory else None
                ),
            )
            position = service.stats().pending
        return [
            f"Queued #{job.id} (provider={job.provider_name}, position {position})",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _service(settings) as service:
            jobs = service.list(status=status, channel_id=command.channel_id, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  #{job.id} {job.status.value:<9} provider={job.provider_name} "
                f"created={job.created_at.isoformat()} {_preview(job.prompt)}",
            )
        return lines

    def show(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            job = service.get(command.job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: #{command.job_id}")
        return _job_details(job)

    def cancel(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            if service.cancel(command.job_id):
                return [f"Cancelled #{command.job_id}"]
            job = service.get(command.job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: #{command.job_id}")
        raise JobStateError(
            f"Job #{job.id} is {job.status.value}; only pending jobs can be cancelled.",
        )

    def retry(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            job = service.retry(command.job_id)
        return [f"Re-queued #{command.job_id} as #{job.id}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            stats = service.stats()
        return [
            "Queue stats: "
            f"pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed} total={stats.total}",
        ]

    def clear(self, command: ClearCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        older_than = (
            utc_now() - timedelta(hours=command.older_than_hours)
            if command.older_than_hours is not None
            else None
        )
        with _service(settings) as service:
            removed = service.clear_finished(older_than=older_than)
        return [f"Removed finished jobs: {removed}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, owns_worker=True) as service:
            summary = (
                service.worker.run_once()
                if command.once
                else service.worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"idle_polls={summary.idle_polls}",
        ]

    def serve(self, db_path: Path | None, *, echo: Callable[[str], None]) -> list[str]:
        """Run the worker in the foreground and echo every notification."""

        settings = Settings.from_env(db_path=db_path)

        def _notify(channel_id: str, platform: str, reply: JobReply) -> None:
            echo(f"[{platform}:{channel_id}] {reply.text}")

        with _service(settings, owns_worker=True, notifier=_notify) as service:
            echo(f"Serving queue {settings.db_path} (Ctrl+C to stop)")
            summary = service.worker.run_loop()
        return [
            f"Stopped after processing {summary.processed} job(s) "
            f"(succeeded={summary.succeeded} failed={summary.failed})",
        ]


@contextmanager
def _service(
    settings: Settings,
    *,
    owns_worker: bool = False,
    notifier: Callable[[str, str, JobReply], None] | None = None,
) -> Iterator[QueueService]:
    # One-shot commands drive the worker explicitly; a daemon thread would die with the process.
    service = QueueService(settings, auto_start_worker=False)
    service.register_notifier(notifier)
    try:
        # Stale recovery is left to the process that runs jobs; its timeout
        # defines the lease, not the settings of whoever ran a query.
        if owns_worker:
            service.bootstrap()
        else:
            service.repository.init_schema()
        yield service
    finally:
        service.shutdown()


def _job_details(job: JobView) -> list[str]:
    lines = [
        f"Job: #{job.id}",
        f"Status: {job.status.value}",
        f"Provider: {job.provider_name}",
        f"Channel: {job.channel_platform}:{job.channel_id}",
        f"Working directory: {job.working_directory or '-'}",
        f"Created: {job.created_at.isoformat()}",
        f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
        f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
        f"Model: {job.result_model or '-'}",
        f"Error: {job.error or '-'}",
        "Prompt:",
        f"  {job.prompt}",
    ]
    if job.result is not None:
        lines.extend(["Result:", job.result])
    return lines


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= _PREVIEW_CHARS:
        return flat
    return flat[: _PREVIEW_CHARS - 3] + "..."
