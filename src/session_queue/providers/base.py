"""Provider adapter contract consumed by the job executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class PermissionMode(str, Enum):
    """Tool-permission policy passed to the agent CLI."""

    DEFAULT = "default"
    TRUST = "trust"
    ACCEPT_EDITS = "acceptEdits"
    READ_ONLY = "readOnly"
    PLAN = "plan"


class EventType(str, Enum):
    """Normalized kinds of provider output events."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    RESULT = "result"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class SpawnOptions:
    """Options for building one non-interactive CLI invocation."""

    cwd: str | None = None
    permission_mode: PermissionMode = PermissionMode.PLAN
    model: str | None = None


@dataclass(slots=True, frozen=True)
class CommandSpec:
    """Runnable command resolved by a provider."""

    binary: str
    args: list[str]
    env: dict[str, str]

    @property
    def argv(self) -> list[str]:
        return [self.binary, *self.args]


@dataclass(slots=True, frozen=True)
class NormalizedEvent:
    """One parsed stdout line.

    ``text`` carries a complete message body, ``delta`` an incremental
    fragment of one. Either, both, or neither may be set.
    """

    type: EventType
    text: str | None = None
    delta: str | None = None
    model: str | None = None
    error: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Strategy that turns a prompt into a command and parses its output."""

    @property
    def name(self) -> str:
        """Registry key, for example ``claude``."""

    @property
    def display_name(self) -> str:
        """Human-readable provider name."""

    def is_available(self) -> bool:
        """Return whether the CLI binary can be found on this system."""

    def build_command(self, prompt: str, options: SpawnOptions) -> CommandSpec:
        """Build argv and environment for a non-interactive run."""

    def parse_event(self, line: str) -> NormalizedEvent | None:
        """Parse one stdout line, ``None`` when the line carries nothing usable."""
