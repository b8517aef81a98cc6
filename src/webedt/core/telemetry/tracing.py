"""Relay lifecycle traces.

Each trace is logged and also kept in a bounded in-memory buffer so the
diagnostics endpoint can show what recently happened to a session without a
log backend.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

TRACE_BUFFER_SIZE = 500

_TRACE_EVENTS: deque[dict[str, Any]] = deque(maxlen=TRACE_BUFFER_SIZE)


@dataclass(slots=True)
class TraceContext:
    request_id: str
    session_id: str
    user_id: str
    phase: str

    def fields(self) -> dict[str, str]:
        return asdict(self)


def trace_event(logger, ctx: TraceContext, event: str, status: str, extra: dict[str, Any] | None = None) -> None:
    payload: dict[str, Any] = {**ctx.fields(), "status": status}
    if extra:
        payload.update({k: v for k, v in extra.items() if v is not None})
    _TRACE_EVENTS.append({"event": event, **payload})
    if status == "error":
        logger.warning(event, **payload)
    else:
        logger.info(event, **payload)


def recent_traces(
    session_id: str | None = None,
    limit: int = 20,
    *,
    request_id: str | None = None,
) -> list[dict[str, Any]]:
    items = [
        item
        for item in _TRACE_EVENTS
        if (session_id is None or item.get("session_id") == session_id)
        and (request_id is None or item.get("request_id") == request_id)
    ]
    return items[-limit:] if limit > 0 else []


def clear_traces() -> None:
    _TRACE_EVENTS.clear()
