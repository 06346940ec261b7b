"""Incremental server-sent-events parser."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEEvent:
    """A dispatched server-sent event."""

    data: str
    event: str = "message"
    id: str | None = None
    retry: int | None = None


class SSEParser:
    """Line-oriented SSE state machine fed with arbitrary text chunks.

    Events are dispatched on a blank line. Chunk boundaries never change the
    result: feeding a body in one piece or split at any offset yields the
    same events.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._pending_cr = False
        self._data: list[str] = []
        self._event = ""
        self._id: str | None = None
        self._retry: int | None = None
        self.last_event_id: str | None = None

    def feed(self, chunk: str) -> list[SSEEvent]:
        """Consume a chunk of decoded text and return completed events."""
        events: list[SSEEvent] = []
        if not chunk:
            return events

        # A CR ending the previous chunk may pair with an LF starting this one
        if self._pending_cr:
            self._pending_cr = False
            if chunk.startswith("\n"):
                chunk = chunk[1:]

        buffer = self._buffer + chunk
        start = 0
        i = 0
        length = len(buffer)
        while i < length:
            ch = buffer[i]
            if ch == "\n" or ch == "\r":
                line = buffer[start:i]
                if ch == "\r":
                    if i + 1 < length:
                        if buffer[i + 1] == "\n":
                            i += 1
                    else:
                        self._pending_cr = True
                event = self._process_line(line)
                if event is not None:
                    events.append(event)
                start = i + 1
            i += 1

        self._buffer = buffer[start:]
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field_name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field_name == "data":
            self._data.append(value)
        elif field_name == "event":
            self._event = value
        elif field_name == "id":
            if "\x00" not in value:
                self._id = value
        elif field_name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> SSEEvent | None:
        if self._id is not None:
            self.last_event_id = self._id

        if not self._data:
            self._event = ""
            self._retry = None
            return None

        event = SSEEvent(
            data="\n".join(self._data),
            event=self._event or "message",
            id=self.last_event_id,
            retry=self._retry,
        )
        self._data = []
        self._event = ""
        self._id = None
        self._retry = None
        return event


def extract_delta(data: str) -> str | None:
    """Turn one event payload into a text fragment.

    Returns None for the [DONE] sentinel, the first choice's delta content
    for JSON payloads (possibly empty), or the raw text when the payload is
    not JSON.
    """
    if data == DONE_SENTINEL:
        return None
    try:
        payload: Any = json.loads(data)
    except ValueError:
        return data

    try:
        content = payload["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
    return content if isinstance(content, str) else ""
