"""CLI entrypoint for session-queue."""

import logging
from pathlib import Path

import rich_click as click

from session_queue import __version__
from session_queue.queue.controllers import (
    CLI_CHANNEL_ID,
    CLI_PLATFORM,
    ClearCommand,
    EnqueueCommand,
    JobCommand,
    JobNotFoundError,
    JobStateError,
    ListJobsCommand,
    QueueCliController,
    StatsCommand,
    WorkerCommand,
)
from session_queue.queue.models import JobStatus
from session_queue.queue.services import QueueSubmissionError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="session-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def session_queue(log_level: str) -> None:
    """Persistent background queue for agent CLI prompts."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT)


@session_queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--provider",
    default=None,
    help="Provider name (claude, codex); defaults to SESSION_QUEUE_DEFAULT_PROVIDER.",
)
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for the agent process.",
)
@click.option("--channel-id", default=CLI_CHANNEL_ID, show_default=True, help="Reply channel.")
@click.option("--platform", default=CLI_PLATFORM, show_default=True, help="Reply platform.")
@click.argument("prompt")
def enqueue(  # noqa: PLR0913
    db_path: Path | None,
    provider: str | None,
    working_directory: Path | None,
    channel_id: str,
    platform: str,
    prompt: str,
) -> None:
    """Add a prompt to the queue."""

    _emit_lines(
        _guarded(
            QUEUE_CONTROLLER.enqueue,
            EnqueueCommand(
                db_path=db_path,
                prompt=prompt,
                provider=provider,
                working_directory=working_directory,
                channel_id=channel_id,
                channel_platform=platform,
            ),
        ),
    )


@session_queue.command("jobs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option("--channel-id", default=None, help="Filter by reply channel.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=20,
    show_default=True,
    help="Max rows.",
)
def jobs(db_path: Path | None, status: str | None, channel_id: str | None, limit: int) -> None:
    """List recent jobs, newest first."""

    _emit_lines(
        QUEUE_CONTROLLER.list_jobs(
            ListJobsCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                channel_id=channel_id,
                limit=limit,
            ),
        ),
    )


@session_queue.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id", type=int)
def show(db_path: Path | None, job_id: int) -> None:
    """Show one job with its result or error."""

    _emit_lines(_guarded(QUEUE_CONTROLLER.show, JobCommand(db_path=db_path, job_id=job_id)))


@session_queue.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id", type=int)
def cancel(db_path: Path | None, job_id: int) -> None:
    """Cancel a pending job."""

    _emit_lines(_guarded(QUEUE_CONTROLLER.cancel, JobCommand(db_path=db_path, job_id=job_id)))


@session_queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id", type=int)
def retry(db_path: Path | None, job_id: int) -> None:
    """Enqueue a failed job again as a new job."""

    _emit_lines(_guarded(QUEUE_CONTROLLER.retry, JobCommand(db_path=db_path, job_id=job_id)))


@session_queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show job counts by status."""

    _emit_lines(QUEUE_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@session_queue.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Only remove jobs finished more than this many hours ago.",
)
def clear(db_path: Path | None, older_than_hours: int | None) -> None:
    """Delete completed and failed jobs."""

    _emit_lines(
        QUEUE_CONTROLLER.clear(
            ClearCommand(db_path=db_path, older_than_hours=older_than_hours),
        ),
    )


@session_queue.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
def worker(db_path: Path | None, once: bool, max_tasks: int | None) -> None:
    """Run the queue worker in the foreground."""

    _emit_lines(
        QUEUE_CONTROLLER.run_worker(
            WorkerCommand(db_path=db_path, once=once, max_tasks=max_tasks),
        ),
    )


@session_queue.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def serve(db_path: Path | None) -> None:
    """Process jobs until interrupted, printing each notification."""

    _emit_lines(QUEUE_CONTROLLER.serve(db_path, echo=click.echo))


def _guarded(handler, command) -> list[str]:  # noqa: ANN001
    try:
        return handler(command)
    except (QueueSubmissionError, JobNotFoundError, JobStateError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    session_queue()
