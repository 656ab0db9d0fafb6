from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from session_queue.queue.models import (
    CANCELLED_ERROR,
    INTERRUPTED_ERROR,
    JobCreate,
    JobStatus,
)
from session_queue.queue.repository import JobRepository
from session_queue.storage.common import to_db_datetime, utc_now
from session_queue.storage.sqlmodel_models import QueuedJob

pytestmark = [
    allure.epic("Session Queue"),
    allure.feature("Job Store"),
]


def _job(prompt: str, *, channel_id: str = "chan-1") -> JobCreate:
    return JobCreate(prompt=prompt, channel_id=channel_id, channel_platform="slack")


def _backdate_start(repository: JobRepository, job_id: int, *, seconds: float) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(QueuedJob)
            .where(col(QueuedJob.id) == job_id)
            .values(started_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()


def test_enqueue_creates_pending_job_with_defaults(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("fix the tests"))

    assert job.id > 0
    assert job.status == JobStatus.PENDING
    assert job.provider_name == "claude"
    assert job.working_directory is None
    assert job.started_at is None
    assert job.completed_at is None
    assert job.result is None
    assert job.error is None
    assert job.created_at.tzinfo is not None

    stored = repository.get_job(job.id)
    assert stored == job


def test_ids_increase_and_are_not_reused_after_clear(repository: JobRepository) -> None:
    first = repository.enqueue_job(_job("a"))
    claimed = repository.claim_job()
    assert claimed is not None
    repository.mark_completed(first.id, "done")
    assert repository.clear_finished() == 1

    second = repository.enqueue_job(_job("b"))

    assert second.id > first.id


def test_claim_returns_oldest_pending_first(repository: JobRepository) -> None:
    first = repository.enqueue_job(_job("first"))
    second = repository.enqueue_job(_job("second"))

    claimed = repository.claim_job()
    assert claimed is not None
    assert claimed.id == first.id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.started_at is not None

    repository.mark_completed(first.id, "ok")
    next_claimed = repository.claim_job()
    assert next_claimed is not None
    assert next_claimed.id == second.id


def test_claim_returns_none_while_another_job_is_running(repository: JobRepository) -> None:
    repository.enqueue_job(_job("a"))
    repository.enqueue_job(_job("b"))

    assert repository.claim_job() is not None
    assert repository.claim_job() is None
    assert repository.stats().running == 1
    assert repository.stats().pending == 1


def test_claim_on_empty_queue_returns_none(repository: JobRepository) -> None:
    assert repository.claim_job() is None


def test_concurrent_claims_hand_out_a_single_job(db_path: Path, repository: JobRepository) -> None:
    for index in range(3):
        repository.enqueue_job(_job(f"job {index}"))

    start = threading.Event()
    claimed_ids: list[int] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _claim() -> None:
        repo = JobRepository(db_path)
        try:
            start.wait(timeout=5)
            job = repo.claim_job()
            if job is not None:
                with lock:
                    claimed_ids.append(job.id)
        except Exception as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repo.close()

    threads = [threading.Thread(target=_claim) for _ in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(claimed_ids) == 1
    assert repository.stats().running == 1


def test_mark_completed_stores_result_and_model(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("summarize"))
    repository.claim_job()

    assert repository.mark_completed(job.id, "ok", "m") is True

    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == "ok"
    assert stored.result_model == "m"
    assert stored.error is None
    assert stored.completed_at is not None
    assert stored.started_at is not None
    assert stored.started_at <= stored.completed_at


def test_terminal_transitions_apply_only_once(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("x"))
    repository.claim_job()
    assert repository.mark_failed(job.id, "boom") is True

    assert repository.mark_completed(job.id, "late result") is False
    assert repository.mark_failed(job.id, "again") is False

    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.error == "boom"
    assert stored.result is None


def test_mark_completed_ignores_pending_job(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("x"))

    assert repository.mark_completed(job.id, "ok") is False
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING


def test_cancel_pending_job(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("x"))

    assert repository.cancel_job(job.id) is True

    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.error == CANCELLED_ERROR
    assert stored.completed_at is not None
    assert stored.started_at == stored.completed_at
    assert repository.claim_job() is None


def test_cancel_refuses_running_and_unknown_jobs(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("x"))
    repository.claim_job()

    assert repository.cancel_job(job.id) is False
    assert repository.cancel_job(9999) is False
    stored = repository.get_job(job.id)
    assert stored is not None
    assert stored.status == JobStatus.RUNNING


def test_stats_count_every_status(repository: JobRepository) -> None:
    a = repository.enqueue_job(_job("A"))
    repository.enqueue_job(_job("B"))
    c = repository.enqueue_job(_job("C"))
    assert repository.cancel_job(c.id)
    claimed = repository.claim_job()
    assert claimed is not None
    assert claimed.id == a.id
    repository.mark_completed(a.id, "ok")

    stats = repository.stats()

    assert stats.to_dict() == {
        "pending": 1,
        "running": 0,
        "completed": 1,
        "failed": 1,
        "total": 3,
    }
    assert repository.pending_count() == 1


def test_list_jobs_newest_first_with_filters(repository: JobRepository) -> None:
    first = repository.enqueue_job(_job("one", channel_id="a"))
    second = repository.enqueue_job(_job("two", channel_id="b"))
    third = repository.enqueue_job(_job("three", channel_id="a"))
    repository.cancel_job(second.id)

    assert [job.id for job in repository.list_jobs()] == [third.id, second.id, first.id]
    assert [job.id for job in repository.list_jobs(channel_id="a")] == [third.id, first.id]
    assert [job.id for job in repository.list_jobs(status=JobStatus.FAILED)] == [second.id]
    assert len(repository.list_jobs(limit=2)) == 2


def test_clear_finished_keeps_active_jobs(repository: JobRepository) -> None:
    done = repository.enqueue_job(_job("done"))
    repository.claim_job()
    repository.mark_completed(done.id, "ok")
    cancelled = repository.enqueue_job(_job("cancelled"))
    repository.cancel_job(cancelled.id)
    running = repository.enqueue_job(_job("running"))
    repository.claim_job()
    pending = repository.enqueue_job(_job("pending"))

    assert repository.clear_finished(older_than=utc_now() - timedelta(hours=1)) == 0
    assert repository.clear_finished() == 2

    remaining = {job.id for job in repository.list_jobs()}
    assert remaining == {running.id, pending.id}


def test_fail_stale_running_only_touches_old_jobs(repository: JobRepository) -> None:
    job = repository.enqueue_job(_job("long"))
    repository.claim_job()

    assert repository.fail_stale_running(stale_after=timedelta(minutes=10)) == []

    _backdate_start(repository, job.id, seconds=3600)
    recovered = repository.fail_stale_running(stale_after=timedelta(minutes=10))

    assert [item.id for item in recovered] == [job.id]
    assert recovered[0].status == JobStatus.FAILED
    assert recovered[0].error == INTERRUPTED_ERROR
    assert repository.stats().running == 0
