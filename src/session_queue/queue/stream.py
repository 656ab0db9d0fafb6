"""Incremental stdout decoding and result accumulation for one job run."""

from __future__ import annotations

import codecs
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from session_queue.providers.base import NormalizedEvent

EventParser = Callable[[str], NormalizedEvent | None]


class LineBuffer:
    """Split a chunked byte stream into complete text lines.

    Bytes are decoded with an incremental UTF-8 decoder so multi-byte
    characters split across chunks survive intact.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Return the lines completed by ``chunk``; keep the remainder buffered."""

        self._partial += self._decoder.decode(chunk)
        if "\n" not in self._partial:
            return []
        *lines, self._partial = self._partial.split("\n")
        return lines

    def flush(self) -> str:
        """Return whatever is left after the stream ended."""

        remainder = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return remainder


@dataclass(slots=True, frozen=True)
class ResultSnapshot:
    """Point-in-time copy of what an accumulator has collected."""

    text: str
    model: str | None
    errors: tuple[str, ...]


@dataclass(slots=True)
class ResultAccumulator:
    """Collect assistant text and the reported model from normalized events.

    The stdout reader thread feeds lines while the executor may read the
    outcome, so mutation and ``snapshot`` share a lock.
    """

    parser: EventParser
    model: str | None = None
    errors: list[str] = field(default_factory=list)
    _parts: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)

    def snapshot(self) -> ResultSnapshot:
        with self._lock:
            return ResultSnapshot(
                text="".join(self._parts),
                model=self.model,
                errors=tuple(self.errors),
            )

    def feed_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        event = self.parser(stripped)
        if event is None:
            return
        self.apply(event)

    def apply(self, event: NormalizedEvent) -> None:
        with self._lock:
            if event.text:
                self._parts.append(event.text)
            if event.delta:
                self._parts.append(event.delta)
            if event.model:
                self.model = event.model
            if event.error:
                self.errors.append(event.error)
