"""Runtime configuration for the session queue and its worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from session_queue.providers.base import PermissionMode


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop and executor tunables."""

    poll_interval_seconds: float = 3.0
    job_timeout_seconds: float = 300.0
    kill_grace_seconds: float = 3.0
    permission_mode: PermissionMode = PermissionMode.PLAN
    auto_start: bool = True
    recover_stale_on_start: bool = True
    model: str | None = None

    @property
    def stale_after_seconds(self) -> float:
        """Age after which a running job cannot still have a live process."""

        return self.job_timeout_seconds + self.kill_grace_seconds


@dataclass(slots=True)
class ProviderSettings:
    """Provider adapter selection and binary overrides."""

    default_provider: str = "claude"
    claude_binary: str | None = None
    codex_binary: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".session_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("SESSION_QUEUE_DB_PATH", ".session_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SESSION_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                poll_interval_seconds=float(
                    os.getenv("SESSION_QUEUE_POLL_INTERVAL_SECONDS", "3.0"),
                ),
                job_timeout_seconds=float(os.getenv("SESSION_QUEUE_JOB_TIMEOUT_SECONDS", "300")),
                kill_grace_seconds=float(os.getenv("SESSION_QUEUE_KILL_GRACE_SECONDS", "3.0")),
                permission_mode=_env_permission_mode(
                    "SESSION_QUEUE_PERMISSION_MODE",
                    default=PermissionMode.PLAN,
                ),
                auto_start=_env_bool("SESSION_QUEUE_AUTO_START_WORKER", default=True),
                recover_stale_on_start=_env_bool(
                    "SESSION_QUEUE_RECOVER_STALE_ON_START",
                    default=True,
                ),
                model=_env_optional("SESSION_QUEUE_MODEL"),
            ),
            providers=ProviderSettings(
                default_provider=os.getenv("SESSION_QUEUE_DEFAULT_PROVIDER", "claude").strip()
                or "claude",
                claude_binary=_env_optional("SESSION_QUEUE_CLAUDE_BINARY"),
                codex_binary=_env_optional("SESSION_QUEUE_CODEX_BINARY"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the worker cannot run with."""

        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("SESSION_QUEUE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.job_timeout_seconds <= 0:
            raise ValueError("SESSION_QUEUE_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.worker.kill_grace_seconds < 0:
            raise ValueError("SESSION_QUEUE_KILL_GRACE_SECONDS must be >= 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SESSION_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_permission_mode(name: str, *, default: PermissionMode) -> PermissionMode:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return PermissionMode(raw)
    except ValueError as error:
        allowed = ", ".join(mode.value for mode in PermissionMode)
        raise ValueError(f"Invalid {name}: {raw!r}. Expected one of: {allowed}.") from error
