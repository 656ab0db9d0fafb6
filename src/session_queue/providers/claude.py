"""Claude Code CLI adapter (``claude -p --output-format stream-json``)."""

from __future__ import annotations

import json
import os
import re
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

_READ_ONLY_TOOLS = ("Read", "Glob", "Grep", "WebSearch", "WebFetch")
_KNOWN_TYPES = {event_type.value for event_type in EventType}
_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class ClaudeProvider:
    """Build and parse Claude Code non-interactive runs."""

    name = "claude"
    display_name = "Claude Code"

    def __init__(
        self,
        *,
        binary: str | None = None,
        allowed_tools: tuple[str, ...] = (),
    ) -> None:
        self._binary = binary
        self._allowed_tools = tuple(tool for tool in allowed_tools if _TOOL_NAME_RE.match(tool))

    @property
    def binary(self) -> str:
        return self._binary or _find_claude_binary()

    def is_available(self) -> bool:
        binary = self.binary
        if os.path.isabs(binary):
            return Path(binary).exists()
        return shutil.which(binary) is not None

    def build_command(self, prompt: str, options: SpawnOptions) -> CommandSpec:
        args = ["-p", prompt, "--output-format", "stream-json", "--verbose"]
        if options.model:
            args.extend(["--model", options.model])

        mode = options.permission_mode
        if mode == PermissionMode.TRUST:
            args.append("--dangerously-skip-permissions")
        elif mode == PermissionMode.ACCEPT_EDITS:
            args.extend(["--permission-mode", "acceptEdits"])
        elif mode == PermissionMode.READ_ONLY:
            args.extend(["--allowedTools", *_READ_ONLY_TOOLS])
        elif mode == PermissionMode.PLAN:
            args.extend(["--permission-mode", "plan"])

        if self._allowed_tools and mode not in {PermissionMode.READ_ONLY, PermissionMode.TRUST}:
            args.extend(["--allowedTools", *self._allowed_tools])

        # Inherited session variables would bind the child to the parent session.
        env = {
            key: value
            for key, value in os.environ.items()
            if key != "CLAUDECODE" and not key.startswith("CLAUDE_CODE")
        }
        return CommandSpec(binary=self.binary, args=args, env=env)

    def parse_event(self, line: str) -> NormalizedEvent | None:
        stripped = line.strip()
        if not stripped:
            return None
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None

        event_type = str(parsed.get("type", ""))
        if event_type == "content_block_delta":
            return NormalizedEvent(
                type=EventType.ASSISTANT,
                delta=_delta_text(parsed.get("delta")),
                raw=parsed,
            )
        if event_type == "stream_event" and isinstance(parsed.get("event"), dict):
            inner = parsed["event"]
            if inner.get("type") == "content_block_delta":
                return NormalizedEvent(
                    type=EventType.ASSISTANT,
                    delta=_delta_text(inner.get("delta")),
                    raw=parsed,
                )
            return None
        if event_type == "assistant":
            message = parsed.get("message")
            text, model = _message_text_and_model(message)
            return NormalizedEvent(type=EventType.ASSISTANT, text=text, model=model, raw=parsed)
        if event_type == "error":
            return NormalizedEvent(
                type=EventType.ERROR,
                error=str(parsed.get("error") or parsed.get("message") or "Claude error"),
                raw=parsed,
            )
        if event_type in _KNOWN_TYPES:
            return NormalizedEvent(
                type=EventType(event_type),
                model=_optional_str(parsed, "model"),
                raw=parsed,
            )
        # Unknown event types are forwarded without payload.
        return NormalizedEvent(type=EventType.ASSISTANT, raw=parsed)


def _find_claude_binary() -> str:
    exe = "claude.exe" if os.name == "nt" else "claude"
    local_bin = Path.home() / ".local" / "bin" / exe
    if local_bin.exists():
        return str(local_bin)
    return "claude"


def _message_text_and_model(message: Any) -> tuple[str | None, str | None]:
    if not isinstance(message, dict):
        return None, None
    parts: list[str] = []
    content = message.get("content")
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
    model = _optional_str(message, "model")
    return ("".join(parts) if parts else None), model


def _delta_text(delta: Any) -> str | None:
    if not isinstance(delta, dict):
        return None
    text = delta.get("text")
    return text if isinstance(text, str) and text else None


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) and value else None
