"""OpenAI Codex CLI adapter (``codex exec --json``)."""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Any

from session_queue.providers.base import (
    CommandSpec,
    EventType,
    NormalizedEvent,
    PermissionMode,
    SpawnOptions,
)

_UNTRUSTED_DIR_PREFIX = "Not inside a trusted"


class CodexProvider:
    """Build and parse Codex non-interactive runs."""

    name = "codex"
    display_name = "OpenAI Codex"

    def __init__(self, *, binary: str | None = None) -> None:
        self._binary = binary

    @property
    def binary(self) -> str:
        return self._binary or _find_codex_binary()

    def is_available(self) -> bool:
        binary = self.binary
        if os.path.isabs(binary):
            return Path(binary).exists()
        return shutil.which(binary) is not None

    def build_command(self, prompt: str, options: SpawnOptions) -> CommandSpec:
        args = ["exec", "--json", "--skip-git-repo-check"]
        if options.permission_mode == PermissionMode.TRUST:
            args.append("--full-auto")
        if options.model:
            args.extend(["--model", options.model])
        # Prompt is positional and must come last.
        args.append(prompt)
        return CommandSpec(binary=self.binary, args=args, env=dict(os.environ))

    def parse_event(self, line: str) -> NormalizedEvent | None:  # noqa: PLR0911
        stripped = line.strip()
        if not stripped:
            return None
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            if stripped.startswith(_UNTRUSTED_DIR_PREFIX):
                return NormalizedEvent(type=EventType.ERROR, error=stripped)
            return NormalizedEvent(type=EventType.ASSISTANT, text=stripped)
        if not isinstance(parsed, dict):
            return None

        codex_type = str(parsed.get("type", ""))
        if codex_type == "error":
            return NormalizedEvent(
                type=EventType.ERROR,
                error=str(parsed.get("message") or parsed.get("error") or "Codex error"),
                raw=parsed,
            )
        if codex_type == "thread.started":
            return NormalizedEvent(type=EventType.SYSTEM, raw=parsed)
        if codex_type == "turn.completed":
            return NormalizedEvent(type=EventType.RESULT, raw=parsed)
        if codex_type == "item.completed":
            return _item_event(parsed)
        return None


def _item_event(parsed: dict[str, Any]) -> NormalizedEvent | None:
    item = parsed.get("item")
    if not isinstance(item, dict):
        return None
    if item.get("type") == "agent_message":
        text = item.get("text")
        return NormalizedEvent(
            type=EventType.ASSISTANT,
            text=text if isinstance(text, str) and text else None,
            raw=parsed,
        )
    if item.get("type") in {"reasoning", "tool_call", "function_call"}:
        return NormalizedEvent(type=EventType.ASSISTANT, raw=parsed)
    return None


def _find_codex_binary() -> str:
    exe = "codex.exe" if os.name == "nt" else "codex"
    for candidate in (
        Path.home() / ".local" / "bin" / exe,
        Path.home() / ".npm-global" / "bin" / exe,
    ):
        if candidate.exists():
            return str(candidate)
    return "codex"
