"""Server-Sent Events framing shared by the relay and the stream client.

The decoder is incremental: bytes arrive in arbitrary chunks (a chunk may end
mid-line or in the middle of a UTF-8 sequence) and complete events come out in
order. A blank line dispatches the pending event. ``event:`` names it and
``data:`` carries the payload (the last ``data:`` line of an event wins).
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class SSEEvent:
    data: str
    event: str | None = None

    def encode(self) -> str:
        head = f"event: {self.event}\n" if self.event else ""
        return f"{head}data: {self.data}\n\n"


def format_sse(event: str, payload: Any) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return SSEEvent(data=data, event=event).encode()


class SSEDecoder:
    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: str | None = None

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        lines = self._buffer.split("\n")
        # The last piece has no newline yet; keep it for the next chunk.
        self._buffer = lines.pop()
        events: list[SSEEvent] = []
        for line in lines:
            event = self._process_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        """Dispatch whatever is pending once the byte stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        events: list[SSEEvent] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            event = self._process_line(line.rstrip("\r"))
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if not line.strip():
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if field == "event":
            self._event = value.strip() or None
        elif field == "data":
            self._data = value.strip()
        return None

    def _dispatch(self) -> SSEEvent | None:
        event, data = self._event, self._data
        self._event = None
        self._data = None
        if data is None:
            return None
        return SSEEvent(data=data, event=event)
