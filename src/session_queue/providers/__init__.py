"""CLI provider adapters."""

from session_queue.providers.base import (
    CommandSpec,
    EventType,
    NormalizedEvent,
    PermissionMode,
    ProviderAdapter,
    SpawnOptions,
)
from session_queue.providers.claude import ClaudeProvider
from session_queue.providers.codex import CodexProvider

__all__ = [
    "ClaudeProvider",
    "CodexProvider",
    "CommandSpec",
    "EventType",
    "NormalizedEvent",
    "PermissionMode",
    "ProviderAdapter",
    "SpawnOptions",
]
