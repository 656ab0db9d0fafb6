"""Subprocess executor that runs one claimed job through its provider CLI."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import IO

from session_queue.providers.base import PermissionMode, ProviderAdapter, SpawnOptions
from session_queue.queue.models import NO_OUTPUT_RESULT, JobView
from session_queue.queue.stream import LineBuffer, ResultAccumulator

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 8192
_PUMP_JOIN_SECONDS = 5.0


class ExecutionErrorKind(str, Enum):
    SPAWN = "spawn"
    EXIT = "exit"
    TIMEOUT = "timeout"


class JobExecutionError(RuntimeError):
    """Execution failure with the reason category."""

    def __init__(
        self,
        message: str,
        *,
        kind: ExecutionErrorKind,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Successful run outcome."""

    text: str
    model: str | None
    exit_code: int


class JobExecutor:
    """Spawn the provider CLI for a job, stream its output, enforce the timeout."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 300.0,
        kill_grace_seconds: float = 3.0,
        permission_mode: PermissionMode = PermissionMode.PLAN,
        model: str | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.permission_mode = permission_mode
        self.model = model

    def run(self, job: JobView, provider: ProviderAdapter) -> ExecutionResult:
        """Execute ``job`` and return its text, or raise ``JobExecutionError``."""

        command = provider.build_command(
            job.prompt,
            SpawnOptions(
                cwd=job.working_directory,
                permission_mode=self.permission_mode,
                model=self.model,
            ),
        )
        try:
            process = subprocess.Popen(  # noqa: S603
                command.argv,
                cwd=job.working_directory or None,
                env=command.env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise JobExecutionError(
                f"Spawn error: {error.strerror or error}: {error.filename or command.binary}",
                kind=ExecutionErrorKind.SPAWN,
            ) from error
        except OSError as error:
            raise JobExecutionError(
                f"Spawn error: {error}",
                kind=ExecutionErrorKind.SPAWN,
            ) from error

        logger.debug("Job #%d spawned %s (pid=%d)", job.id, command.binary, process.pid)
        if process.stdin is not None:
            process.stdin.close()

        lines = LineBuffer()
        accumulator = ResultAccumulator(parser=provider.parse_event)
        stderr_chunks: list[bytes] = []
        pumps = [
            threading.Thread(
                target=_pump_stdout,
                args=(process.stdout, lines, accumulator),
                name=f"job-{job.id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_pump_stderr,
                args=(process.stderr, stderr_chunks),
                name=f"job-{job.id}-stderr",
                daemon=True,
            ),
        ]
        for pump in pumps:
            pump.start()

        try:
            returncode = process.wait(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as error:
            logger.warning("Job #%d exceeded %.0fs, terminating", job.id, self.timeout_seconds)
            _terminate_process(process, grace_seconds=self.kill_grace_seconds)
            _join_pumps(pumps)
            raise JobExecutionError(
                f"Job timed out ({_format_limit(self.timeout_seconds)} limit)",
                kind=ExecutionErrorKind.TIMEOUT,
            ) from error

        if _join_pumps(pumps):
            accumulator.feed_line(lines.flush())
        # An abandoned reader may still be appending; only its snapshot is used.
        output = accumulator.snapshot()
        stderr_bytes = b"".join(list(stderr_chunks))

        if output.text:
            return ExecutionResult(text=output.text, model=output.model, exit_code=returncode)
        if returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
            message = stderr or "; ".join(output.errors) or f"CLI exited with code {returncode}"
            raise JobExecutionError(message, kind=ExecutionErrorKind.EXIT, exit_code=returncode)
        return ExecutionResult(text=NO_OUTPUT_RESULT, model=output.model, exit_code=0)


def _pump_stdout(stream: IO[bytes], lines: LineBuffer, accumulator: ResultAccumulator) -> None:
    with stream:
        for chunk in _chunks(stream):
            for line in lines.feed(chunk):
                accumulator.feed_line(line)


def _pump_stderr(stream: IO[bytes], chunks: list[bytes]) -> None:
    with stream:
        chunks.extend(_chunks(stream))


def _chunks(stream: IO[bytes]) -> Iterator[bytes]:
    # read1 returns as soon as any bytes are available instead of filling the buffer.
    read1 = stream.read1  # type: ignore[attr-defined]
    yield from iter(lambda: read1(_READ_CHUNK_BYTES), b"")


def _join_pumps(pumps: list[threading.Thread]) -> bool:
    """Wait for the output readers; return False if any had to be abandoned."""

    drained = True
    for pump in pumps:
        pump.join(timeout=_PUMP_JOIN_SECONDS)
        if pump.is_alive():
            # A grandchild still holds the pipe open; stop waiting on it.
            logger.warning("Output reader %s did not finish", pump.name)
            drained = False
    return drained


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait()


def _format_limit(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)} min"
    return f"{seconds:g}s"
