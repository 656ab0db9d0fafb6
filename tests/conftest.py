"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest

from session_queue.config import ProviderSettings, Settings, WorkerSettings
from session_queue.providers.base import CommandSpec, EventType, NormalizedEvent, SpawnOptions
from session_queue.providers.registry import ProviderRegistry
from session_queue.queue.repository import JobRepository


class ScriptProvider:
    """Provider whose "CLI" is a Python snippet run by the current interpreter.

    The snippet receives the prompt as ``sys.argv[1]``. Stdout lines that are
    JSON objects map their ``text``/``delta``/``model``/``error`` keys onto a
    normalized event; any other line is taken as assistant text.
    """

    display_name = "Script"

    def __init__(self, script: str, *, name: str = "script") -> None:
        self.script = script
        self.name = name
        self.last_options: SpawnOptions | None = None

    def is_available(self) -> bool:
        return True

    def build_command(self, prompt: str, options: SpawnOptions) -> CommandSpec:
        self.last_options = options
        return CommandSpec(
            binary=sys.executable,
            args=["-c", self.script, prompt],
            env=dict(os.environ),
        )

    def parse_event(self, line: str) -> NormalizedEvent | None:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return NormalizedEvent(type=EventType.ASSISTANT, text=line)
        if not isinstance(payload, dict):
            return None
        return NormalizedEvent(
            type=EventType.ERROR if payload.get("error") else EventType.ASSISTANT,
            text=payload.get("text"),
            delta=payload.get("delta"),
            model=payload.get("model"),
            error=payload.get("error"),
            raw=payload,
        )


ECHO_SCRIPT = (
    "import json, sys\n"
    "print(json.dumps({'text': 'ok: ' + sys.argv[1], 'model': 'script-model'}), flush=True)\n"
)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def repository(db_path: Path):
    repo = JobRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def script_registry() -> ProviderRegistry:
    registry = ProviderRegistry(default_name="script")
    registry.register(ScriptProvider(ECHO_SCRIPT))
    return registry


def make_settings(db_path: Path, **worker_overrides) -> Settings:
    worker = WorkerSettings(
        poll_interval_seconds=0.05,
        job_timeout_seconds=10.0,
        kill_grace_seconds=1.0,
        auto_start=False,
    )
    for key, value in worker_overrides.items():
        setattr(worker, key, value)
    return Settings(
        db_path=db_path,
        worker=worker,
        providers=ProviderSettings(default_provider="script"),
    )


@pytest.fixture()
def script_provider():
    """Factory for providers that run a Python snippet as the agent CLI."""

    return ScriptProvider


@pytest.fixture()
def echo_provider() -> ScriptProvider:
    return ScriptProvider(ECHO_SCRIPT)


@pytest.fixture()
def settings_factory(db_path: Path):
    def _factory(**worker_overrides) -> Settings:
        return make_settings(db_path, **worker_overrides)

    return _factory
