from __future__ import annotations

import time
from datetime import timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from session_queue.providers.registry import ProviderRegistry
from session_queue.queue.models import INTERRUPTED_ERROR, JobStatus
from session_queue.queue.notifications import JobReply
from session_queue.queue.services import QueueService, QueueSubmissionError
from session_queue.storage.common import to_db_datetime, utc_now
from session_queue.storage.sqlmodel_models import QueuedJob

pytestmark = [
    allure.epic("Session Queue"),
    allure.feature("Queue Service"),
]


@pytest.fixture()
def service(settings_factory, script_registry: ProviderRegistry):
    queue_service = QueueService(settings_factory(), providers=script_registry)
    queue_service.bootstrap()
    try:
        yield queue_service
    finally:
        queue_service.shutdown(timeout_seconds=15)


def _wait_for(predicate, *, timeout_seconds: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_enqueue_trims_prompt_and_uses_default_provider(service: QueueService) -> None:
    job = service.enqueue("  review the patch \n", channel_id="C1", channel_platform="slack")

    assert job.prompt == "review the patch"
    assert job.provider_name == "script"
    assert job.status == JobStatus.PENDING
    assert service.stats().pending == 1


@pytest.mark.parametrize("prompt", ["", "   ", "\n\t"])
def test_enqueue_rejects_blank_prompt_without_storing(service: QueueService, prompt: str) -> None:
    with pytest.raises(QueueSubmissionError, match="empty"):
        service.enqueue(prompt, channel_id="C1", channel_platform="slack")

    assert service.stats().total == 0


def test_enqueue_rejects_unknown_provider_without_storing(service: QueueService) -> None:
    with pytest.raises(QueueSubmissionError, match='Provider "gemini" not available'):
        service.enqueue("x", channel_id="C1", channel_platform="slack", provider_name="gemini")

    assert service.stats().total == 0


def test_list_limit_is_clamped(service: QueueService) -> None:
    for index in range(3):
        service.enqueue(f"job {index}", channel_id="C1", channel_platform="slack")

    assert len(service.list(limit=0)) == 1
    assert len(service.list(limit=-5)) == 1
    assert len(service.list(limit=1000)) == 3


def test_cancel_then_retry_creates_new_pending_job(service: QueueService, tmp_path) -> None:
    original = service.enqueue(
        "x",
        channel_id="C1",
        channel_platform="telegram",
        working_directory=str(tmp_path),
    )

    assert service.cancel(original.id) is True
    assert service.cancel(original.id) is False

    retried = service.retry(original.id)

    assert retried.id != original.id
    assert retried.status == JobStatus.PENDING
    assert (retried.prompt, retried.provider_name, retried.working_directory) == (
        original.prompt,
        original.provider_name,
        original.working_directory,
    )
    assert (retried.channel_id, retried.channel_platform) == ("C1", "telegram")
    stale = service.get(original.id)
    assert stale is not None
    assert stale.status == JobStatus.FAILED


def test_retry_refuses_jobs_that_did_not_fail(service: QueueService) -> None:
    job = service.enqueue("x", channel_id="C1", channel_platform="slack")

    with pytest.raises(QueueSubmissionError, match="Only failed jobs"):
        service.retry(job.id)
    with pytest.raises(QueueSubmissionError, match="not found"):
        service.retry(424242)


def test_worker_processes_job_and_notifies_registered_callback(service: QueueService) -> None:
    replies: list[tuple[str, str, JobReply]] = []
    service.register_notifier(
        lambda channel_id, platform, reply: replies.append((channel_id, platform, reply)),
    )
    job = service.enqueue("hello", channel_id="C9", channel_platform="discord")

    summary = service.worker.run_once()

    assert summary.succeeded == 1
    stored = service.get(job.id)
    assert stored is not None
    assert stored.result == "ok: hello"
    assert [(channel, platform) for channel, platform, _ in replies] == [("C9", "discord")]


def test_enqueue_starts_background_worker_when_auto_start_enabled(
    settings_factory,
    script_registry: ProviderRegistry,
) -> None:
    service = QueueService(
        settings_factory(auto_start=True),
        providers=script_registry,
    )
    service.bootstrap()
    try:
        assert service.worker.is_running is False
        job = service.enqueue("auto", channel_id="C1", channel_platform="slack")
        assert service.worker.is_running is True

        assert _wait_for(lambda: service.get(job.id).status == JobStatus.COMPLETED)
    finally:
        service.shutdown(timeout_seconds=15)


def test_bootstrap_fails_stale_running_jobs_and_resumes_pending(
    settings_factory,
    script_registry: ProviderRegistry,
) -> None:
    first = QueueService(settings_factory(), providers=script_registry)
    first.bootstrap()
    stuck = first.enqueue("stuck", channel_id="C1", channel_platform="slack")
    waiting = first.enqueue("waiting", channel_id="C2", channel_platform="slack")
    assert first.repository.claim_job() is not None
    with Session(first.repository.engine) as session:
        session.exec(
            sa_update(QueuedJob)
            .where(col(QueuedJob.id) == stuck.id)
            .values(started_at=to_db_datetime(utc_now() - timedelta(hours=1))),
        )
        session.commit()
    first.shutdown()

    restarted = QueueService(settings_factory(auto_start=True), providers=script_registry)
    replies: list[tuple[str, JobReply]] = []
    restarted.register_notifier(
        lambda channel_id, _platform, reply: replies.append((channel_id, reply)),
    )
    try:
        recovered = restarted.bootstrap()

        assert [job.id for job in recovered] == [stuck.id]
        interrupted = restarted.get(stuck.id)
        assert interrupted is not None
        assert interrupted.status == JobStatus.FAILED
        assert interrupted.error == INTERRUPTED_ERROR
        assert replies[0][0] == "C1"
        assert replies[0][1].text == f"Queue #{stuck.id} failed: {INTERRUPTED_ERROR}"

        assert _wait_for(lambda: restarted.get(waiting.id).status == JobStatus.COMPLETED)
    finally:
        restarted.shutdown(timeout_seconds=15)


def test_bootstrap_leaves_recent_running_job_alone(
    settings_factory,
    script_registry: ProviderRegistry,
) -> None:
    first = QueueService(settings_factory(), providers=script_registry)
    first.bootstrap()
    job = first.enqueue("in flight", channel_id="C1", channel_platform="slack")
    first.repository.claim_job()

    second = QueueService(settings_factory(), providers=script_registry)
    try:
        assert second.bootstrap() == []
        stored = second.get(job.id)
        assert stored is not None
        assert stored.status == JobStatus.RUNNING
    finally:
        second.shutdown()
        first.shutdown()


def test_clear_finished_removes_terminal_jobs(service: QueueService) -> None:
    done = service.enqueue("a", channel_id="C1", channel_platform="slack")
    service.worker.run_once()
    cancelled = service.enqueue("b", channel_id="C1", channel_platform="slack")
    service.cancel(cancelled.id)
    kept = service.enqueue("c", channel_id="C1", channel_platform="slack")

    assert service.clear_finished() == 2

    assert service.get(done.id) is None
    assert service.get(kept.id) is not None


def test_invalid_settings_are_rejected(settings_factory) -> None:
    with pytest.raises(ValueError, match="POLL_INTERVAL"):
        QueueService(settings_factory(poll_interval_seconds=0))


def test_worker_lease_and_model_follow_settings(settings_factory) -> None:
    service = QueueService(settings_factory(model="haiku"))
    disabled = QueueService(settings_factory(recover_stale_on_start=False))
    try:
        assert service.worker.stale_after_seconds == 11.0
        assert service.worker.executor.model == "haiku"
        assert disabled.worker.stale_after_seconds is None
    finally:
        service.shutdown()
        disabled.shutdown()
