from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class TextDelta:
    delta: str


@dataclass(frozen=True, slots=True)
class ToolExecutionStart:
    pass


@dataclass(frozen=True, slots=True)
class UnrecognizedEvent:
    payload: Any = field(default=None, compare=False)


StreamEvent = TextDelta | ToolExecutionStart | UnrecognizedEvent


def parse_stream_line(line: str) -> StreamEvent | None:
    """Decode one stdout line from a worker.

    Returns ``None`` for blank lines and invalid JSON. Well-formed JSON of an
    unknown shape becomes an ``UnrecognizedEvent``.
    """
    if not line.strip():
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return UnrecognizedEvent(event)

    event_type = event.get("type")
    if event_type == "message_update":
        message_event = event.get("assistantMessageEvent")
        if isinstance(message_event, dict) and message_event.get("type") == "text_delta":
            delta = message_event.get("delta")
            return TextDelta(delta if isinstance(delta, str) else "")
        return UnrecognizedEvent(event)
    if event_type == "tool_execution_start":
        return ToolExecutionStart()
    return UnrecognizedEvent(event)


class LineBuffer:
    """Split a byte stream into text lines, keeping the trailing partial line."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    def flush(self) -> str:
        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return remainder
