"""Domain models for the session queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


CANCELLED_ERROR = "Cancelled by user"
INTERRUPTED_ERROR = "Interrupted: worker stopped before the job finished"
NO_OUTPUT_RESULT = "(no output)"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    prompt: str
    channel_id: str
    channel_platform: str
    provider_name: str = "claude"
    working_directory: str | None = None


@dataclass(slots=True, frozen=True)
class JobView:
    """Readable job record for callers and the worker."""

    id: int
    prompt: str
    provider_name: str
    working_directory: str | None
    status: JobStatus
    result: str | None
    result_model: str | None
    error: str | None
    channel_id: str
    channel_platform: str
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True, frozen=True)
class QueueStats:
    """Job counts grouped by status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.running + self.completed + self.failed

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }
