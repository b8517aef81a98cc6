"""Consumer for relay event streams.

``StreamClient`` subscribes to one stream URL at a time. GET subscriptions
behave like a browser ``EventSource``: a dropped transport is retried with
exponential backoff until a terminal event arrives or the attempts run out.
POST subscriptions carry a side-effecting body and are never re-issued.

Usage::

    async with StreamClient(url, StreamClientOptions(on_message=print)) as client:
        await client.wait()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from webedt.core.relay.payloads import NOT_JSON, parse_payload
from webedt.core.relay.sse import SSEDecoder, SSEEvent
from webedt.core.runtime.errors import ConnectionLostError, StreamError, compact_error_summary
from webedt.core.runtime.retries import ReconnectPolicy
from webedt.core.telemetry.logging import get_logger


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    COMPLETED = "completed"
    ERRORED = "errored"
    CLOSED = "closed"


FINAL_STATES = frozenset({ConnectionState.COMPLETED, ConnectionState.ERRORED, ConnectionState.CLOSED})


@dataclass(slots=True)
class StreamMessage:
    event_type: str
    data: Any


@dataclass(slots=True)
class StreamClientOptions:
    on_message: Callable[[StreamMessage], Any] | None = None
    on_error: Callable[[StreamError], Any] | None = None
    on_connected: Callable[[], Any] | None = None
    on_completed: Callable[[Any], Any] | None = None
    auto_reconnect: bool = True
    max_reconnect_attempts: int = 5
    method: str = "GET"
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000


@dataclass(slots=True)
class StreamConnection:
    url: str
    state: ConnectionState = ConnectionState.IDLE
    reconnect_attempts: int = 0
    explicitly_closed: bool = False
    error: StreamError | None = None
    task: asyncio.Task | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED


class _Terminal(Exception):
    """Raised inside the read loop once a terminal event was dispatched."""


class StreamClient:
    def __init__(
        self,
        url: str | None,
        options: StreamClientOptions | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.options = options or StreamClientOptions()
        self.method = self.options.method.upper()
        self.policy = ReconnectPolicy(
            max_attempts=self.options.max_reconnect_attempts,
            base_delay_ms=self.options.base_delay_ms,
            max_delay_ms=self.options.max_delay_ms,
        )
        self._http_client = http_client
        self._sleep = sleep
        self._connection: StreamConnection | None = None
        self.logger = get_logger("webedt.stream_client")

    async def __aenter__(self) -> StreamClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    @property
    def connection(self) -> StreamConnection | None:
        return self._connection

    @property
    def state(self) -> ConnectionState:
        return self._connection.state if self._connection else ConnectionState.IDLE

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_connected

    @property
    def error(self) -> StreamError | None:
        return self._connection.error if self._connection else None

    async def connect(self) -> StreamConnection | None:
        """Start a subscription; a no-op while one is connecting or connected."""
        if not self.url:
            return None
        current = self._connection
        if current is not None and current.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return current

        conn = StreamConnection(url=self.url, state=ConnectionState.CONNECTING)
        self._connection = conn
        conn.task = asyncio.create_task(self._run(conn), name=f"stream-client:{self.url}")
        return conn

    async def disconnect(self) -> None:
        """Tear down the subscription. Safe to call any number of times."""
        conn = self._connection
        if conn is None:
            return
        conn.explicitly_closed = True
        if conn.state not in FINAL_STATES:
            conn.state = ConnectionState.CLOSED
        task = conn.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        conn.done.set()

    async def set_url(self, url: str | None) -> StreamConnection | None:
        if url == self.url:
            return self._connection
        await self.disconnect()
        self.url = url
        self._connection = None
        return await self.connect()

    async def wait(self) -> ConnectionState:
        conn = self._connection
        if conn is None:
            return ConnectionState.IDLE
        await conn.done.wait()
        return conn.state

    async def _run(self, conn: StreamConnection) -> None:
        try:
            if self._http_client is not None:
                await self._subscribe(conn, self._http_client)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None)) as client:
                    await self._subscribe(conn, client)
        except Exception as exc:  # noqa: BLE001
            # A caller callback raised; the subscription cannot continue.
            self.logger.exception("stream_client.handler_failed", url=conn.url)
            if conn.state != ConnectionState.ERRORED:
                try:
                    await self._fail(conn, StreamError(f"Stream handler failed: {compact_error_summary(exc)}"))
                except Exception:  # noqa: BLE001
                    self.logger.exception("stream_client.on_error_failed", url=conn.url)
        finally:
            conn.done.set()

    async def _subscribe(self, conn: StreamConnection, client: httpx.AsyncClient) -> None:
        while True:
            try:
                await self._open_once(conn, client)
                failure: Exception = ConnectionLostError("Stream ended before a terminal event")
            except _Terminal:
                return
            except StreamError as exc:
                # HTTP-level rejection of a POST subscription.
                await self._fail(conn, exc)
                return
            except httpx.HTTPError as exc:
                failure = exc

            if conn.explicitly_closed:
                return
            if not await self._schedule_reconnect(conn, failure):
                return

    async def _open_once(self, conn: StreamConnection, client: httpx.AsyncClient) -> None:
        headers = {"Accept": "text/event-stream", **self.options.headers}
        kwargs: dict[str, Any] = {"headers": headers}
        if self.options.cookies:
            client.cookies.update(self.options.cookies)
        if self.method == "POST":
            kwargs["json"] = self.options.body

        async with client.stream(self.method, conn.url, **kwargs) as response:
            if not response.is_success:
                if self.method == "POST":
                    raise StreamError(await self._rejection_reason(response))
                raise httpx.HTTPStatusError(
                    f"stream rejected with status {response.status_code}",
                    request=response.request,
                    response=response,
                )

            decoder = SSEDecoder()
            async for chunk in response.aiter_bytes():
                for event in decoder.feed(chunk):
                    if await self._dispatch(conn, event):
                        raise _Terminal()
            for event in decoder.flush():
                if await self._dispatch(conn, event):
                    raise _Terminal()

    @staticmethod
    async def _rejection_reason(response: httpx.Response) -> str:
        body = await response.aread()
        parsed = parse_payload(body.decode("utf-8", errors="replace"))
        if isinstance(parsed, dict):
            reason = parsed.get("error") or parsed.get("detail")
            if isinstance(reason, str) and reason:
                return reason
        return f"HTTP error! status: {response.status_code}"

    async def _dispatch(self, conn: StreamConnection, event: SSEEvent) -> bool:
        """Deliver one event; returns True once the stream must stop reading."""
        if conn.explicitly_closed:
            return True
        name = event.event or "message"
        payload = parse_payload(event.data)

        if name == "connected":
            conn.state = ConnectionState.CONNECTED
            conn.reconnect_attempts = 0
            conn.error = None
            await _fire(self.options.on_connected)
            return conn.explicitly_closed

        if name == "completed":
            conn.explicitly_closed = True
            conn.state = ConnectionState.COMPLETED
            await _fire(self.options.on_completed, None if payload is NOT_JSON else payload)
            return True

        if name == "error" and payload is not NOT_JSON:
            conn.explicitly_closed = True
            reason = payload.get("error") if isinstance(payload, dict) else None
            await self._fail(conn, StreamError(str(reason or "Stream error"), payload=payload))
            return True

        data = event.data if payload is NOT_JSON else payload
        await _fire(self.options.on_message, StreamMessage(event_type=name, data=data))
        return conn.explicitly_closed

    async def _schedule_reconnect(self, conn: StreamConnection, failure: Exception) -> bool:
        if self.method == "GET" and self.options.auto_reconnect and conn.reconnect_attempts < self.policy.max_attempts:
            conn.reconnect_attempts += 1
            delay_ms = self.policy.delay_ms(conn.reconnect_attempts)
            conn.state = ConnectionState.CONNECTING
            self.logger.info(
                "stream_client.reconnect_scheduled",
                url=conn.url,
                attempt=conn.reconnect_attempts,
                delay_ms=delay_ms,
                reason=str(failure),
            )
            await self._sleep(delay_ms / 1000)
            return not conn.explicitly_closed

        message = "Connection lost" if self.method == "GET" else f"Connection lost: {failure}"
        await self._fail(conn, ConnectionLostError(message))
        return False

    async def _fail(self, conn: StreamConnection, error: StreamError) -> None:
        conn.explicitly_closed = True
        conn.state = ConnectionState.ERRORED
        conn.error = error
        self.logger.warning("stream_client.failed", url=conn.url, error=error.message)
        await _fire(self.options.on_error, error)


async def _fire(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
