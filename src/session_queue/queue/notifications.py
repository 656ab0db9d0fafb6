"""Best-effort delivery of job outcomes to the originating channel."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from session_queue.queue.models import JobStatus, JobView

logger = logging.getLogger(__name__)


class ReplyKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(slots=True, frozen=True)
class JobReply:
    """Plain-text notification payload."""

    text: str
    kind: ReplyKind


NotifyCallback = Callable[[str, str, JobReply], None]


def build_reply(job: JobView) -> JobReply:
    """Summarize a terminal job for delivery."""

    if not job.status.is_terminal:
        raise ValueError(f"Job #{job.id} is not terminal: status={job.status.value}")
    if job.status == JobStatus.COMPLETED:
        lines = [f"Queue #{job.id} completed", "", job.result or ""]
        if job.result_model:
            lines.extend(["", f"Model: {job.result_model}"])
        return JobReply(text="\n".join(lines).rstrip(), kind=ReplyKind.SUCCESS)
    return JobReply(
        text=f"Queue #{job.id} failed: {job.error or 'Unknown error'}",
        kind=ReplyKind.FAILURE,
    )


class NotificationDispatcher:
    """Holds the single delivery callback registered by the active delivery layer."""

    def __init__(self) -> None:
        self._callback: NotifyCallback | None = None
        self._lock = threading.Lock()

    @property
    def has_callback(self) -> bool:
        return self._callback is not None

    def register(self, callback: NotifyCallback | None) -> None:
        with self._lock:
            if self._callback is not None and callback is not None:
                logger.info("Replacing registered notification callback")
            self._callback = callback

    def dispatch(self, job: JobView) -> bool:
        """Deliver the outcome of ``job``; return whether the callback succeeded."""

        with self._lock:
            callback = self._callback
        if callback is None:
            logger.debug("No notification callback registered; skipping job #%d", job.id)
            return False

        reply = build_reply(job)
        try:
            callback(job.channel_id, job.channel_platform, reply)
        except Exception:
            logger.exception(
                "Failed to notify %s channel %s about job #%d",
                job.channel_platform,
                job.channel_id,
                job.id,
            )
            return False
        return True
