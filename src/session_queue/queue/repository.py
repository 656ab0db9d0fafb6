"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, literal
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from session_queue.queue.models import (
    CANCELLED_ERROR,
    INTERRUPTED_ERROR,
    JobCreate,
    JobStatus,
    JobView,
    QueueStats,
)
from session_queue.storage.alembic_runner import upgrade_head
from session_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from session_queue.storage.sqlmodel_models import QueuedJob

_TERMINAL_STATUSES = tuple(status.value for status in JobStatus if status.is_terminal)


class JobRepository:
    """Durable queue table; the only source of truth for job state.

    Every state change is a single conditional ``UPDATE`` keyed on the row's
    current status, so concurrent workers, cancel requests and separate
    processes sharing the database file cannot race each other into an
    inconsistent state.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue_job(self, payload: JobCreate) -> JobView:
        """Insert a pending job and return it with the assigned id."""

        with Session(self.engine) as session:
            row = QueuedJob(
                prompt=payload.prompt,
                provider_name=payload.provider_name,
                working_directory=payload.working_directory,
                status=JobStatus.PENDING.value,
                channel_id=payload.channel_id,
                channel_platform=payload.channel_platform,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(QueuedJob, job_id)
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        channel_id: str | None = None,
        limit: int = 20,
    ) -> list[JobView]:
        """List recent jobs, newest first, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(QueuedJob)
            if status is not None:
                statement = statement.where(QueuedJob.status == status.value)
            if channel_id is not None:
                statement = statement.where(QueuedJob.channel_id == channel_id)
            statement = statement.order_by(
                col(QueuedJob.created_at).desc(),
                col(QueuedJob.id).desc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def claim_job(self) -> JobView | None:
        """Atomically move the oldest pending job to running.

        Returns ``None`` when nothing is pending, when another job is already
        running, or when a concurrent claimant won the race for the row.
        """

        queue_table = QueuedJob.__table__
        running_job = queue_table.alias("running_job")
        another_job_running = (
            sa_select(literal(1))
            .select_from(running_job)
            .where(running_job.c.status == JobStatus.RUNNING.value)
            .exists()
        )

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueuedJob)
                    .where(QueuedJob.status == JobStatus.PENDING.value)
                    .order_by(col(QueuedJob.created_at).asc(), col(QueuedJob.id).asc())
                    .limit(1),
                ).first()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueuedJob)
                    .where(
                        col(QueuedJob.id) == candidate.id,
                        col(QueuedJob.status) == JobStatus.PENDING.value,
                        ~another_job_running,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        started_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    if self._has_running_job(session):
                        return None
                    # Candidate was cancelled or claimed and finished meanwhile.
                    continue

                session.commit()
                claimed = session.get(QueuedJob, candidate.id, populate_existing=True)
                if claimed is None:
                    raise RuntimeError(f"Claimed job disappeared: #{candidate.id}")
                return _to_job_view(claimed)

    def mark_completed(self, job_id: int, result: str, model: str | None = None) -> bool:
        """Record success for a running job; no-op for any other status."""

        return self._finish_running(
            job_id,
            status=JobStatus.COMPLETED,
            result=result,
            result_model=model,
        )

    def mark_failed(self, job_id: int, error: str) -> bool:
        """Record failure for a running job; no-op for any other status."""

        return self._finish_running(job_id, status=JobStatus.FAILED, error=error)

    def cancel_job(self, job_id: int) -> bool:
        """Fail a still-pending job with a cancellation error."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueuedJob)
                .where(
                    col(QueuedJob.id) == job_id,
                    col(QueuedJob.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error=CANCELLED_ERROR,
                    started_at=now,
                    completed_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def stats(self) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueuedJob.status, func.count()).group_by(QueuedJob.status),
            ).all()
        counts = {status: count for status, count in rows}
        return QueueStats(
            pending=counts.get(JobStatus.PENDING.value, 0),
            running=counts.get(JobStatus.RUNNING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
        )

    def pending_count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(QueuedJob)
                .where(QueuedJob.status == JobStatus.PENDING.value),
            ).one()

    def clear_finished(self, *, older_than: datetime | None = None) -> int:
        """Delete completed/failed jobs, optionally only those finished before a cutoff."""

        statement = sa_delete(QueuedJob).where(col(QueuedJob.status).in_(_TERMINAL_STATUSES))
        if older_than is not None:
            statement = statement.where(
                col(QueuedJob.completed_at) < to_db_datetime(older_than),
            )
        with Session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount

    def fail_stale_running(
        self,
        *,
        stale_after: timedelta,
        error: str = INTERRUPTED_ERROR,
    ) -> list[JobView]:
        """Fail running jobs started longer ago than any live execution could last."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(QueuedJob.id).where(
                    QueuedJob.status == JobStatus.RUNNING.value,
                    col(QueuedJob.started_at) <= cutoff,
                ),
            ).all()

        recovered: list[JobView] = []
        for job_id in stale_ids:
            if job_id is None:
                continue
            if self.mark_failed(job_id, error):
                job = self.get_job(job_id)
                if job is not None:
                    recovered.append(job)
        return recovered

    def _finish_running(
        self,
        job_id: int,
        *,
        status: JobStatus,
        result: str | None = None,
        result_model: str | None = None,
        error: str | None = None,
    ) -> bool:
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(QueuedJob)
                .where(
                    col(QueuedJob.id) == job_id,
                    col(QueuedJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    result=result,
                    result_model=result_model,
                    error=error,
                    completed_at=to_db_datetime(utc_now()),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _has_running_job(self, session: Session) -> bool:
        row = session.exec(
            select(QueuedJob.id).where(QueuedJob.status == JobStatus.RUNNING.value).limit(1),
        ).first()
        return row is not None


def _to_job_view(row: QueuedJob) -> JobView:
    if row.id is None:
        raise RuntimeError("Job row has no id; it was not flushed.")
    return JobView(
        id=row.id,
        prompt=row.prompt,
        provider_name=row.provider_name,
        working_directory=row.working_directory,
        status=JobStatus(row.status),
        result=row.result,
        result_model=row.result_model,
        error=row.error,
        channel_id=row.channel_id,
        channel_platform=row.channel_platform,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
