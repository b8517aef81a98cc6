from __future__ import annotations

import re


class WebEDTError(Exception):
    """Base class for errors raised by the relay and the stream client."""


class PreconditionError(WebEDTError):
    """Request rejected before any stream was opened."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UpstreamError(WebEDTError):
    """The worker could not be reached or rejected the execute request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StreamError(WebEDTError):
    """Application-level failure reported on an event stream."""

    def __init__(self, message: str, payload: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload


class ConnectionLostError(StreamError):
    """Transport dropped and no reconnect is pending."""


def _compact_message(message: str, max_len: int = 220) -> str:
    msg = re.sub(r"\s+", " ", message)
    return msg.strip()[:max_len]


def compact_error_summary(exc: BaseException, max_len: int = 220) -> str:
    return f"{exc.__class__.__name__}: {_compact_message(str(exc), max_len=max_len)}"
