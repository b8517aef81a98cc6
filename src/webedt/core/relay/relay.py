from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError

from webedt.core.config.schema import WorkerConfig
from webedt.core.relay.payloads import (
    NOT_JSON,
    display_content,
    event_type_hint,
    parse_payload,
    split_user_request,
    worker_session_id,
)
from webedt.core.relay.schemas import ExecuteRequest
from webedt.core.relay.sse import SSEDecoder, SSEEvent, format_sse
from webedt.core.runtime.errors import PreconditionError, UpstreamError, compact_error_summary
from webedt.core.runtime.retries import RetryPolicy, connect_retrying
from webedt.core.sessions.store import SessionStore
from webedt.core.telemetry.logging import get_logger
from webedt.core.telemetry.tracing import TraceContext, trace_event
from webedt.db.models import User

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

STREAMING_FAILED = "Streaming failed"


@dataclass(slots=True)
class RelayRun:
    session_id: int
    payload: dict[str, Any]
    trace: TraceContext


def build_worker_payload(request: ExecuteRequest, user: User, provider: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "userRequest": request.user_request or "Resume previous session",
        "codingAssistantProvider": provider,
        "codingAssistantAuthentication": user.claude_auth,
    }
    if request.resume_session_id:
        payload["resumeSessionId"] = request.resume_session_id
    if request.repository_url and user.github_access_token:
        github: dict[str, Any] = {"repoUrl": request.repository_url, "accessToken": user.github_access_token}
        if request.branch:
            github["branch"] = request.branch
        payload["github"] = github
        payload["autoCommit"] = request.auto_commit
    return payload


class StreamRelay:
    """Records one execute request as a session and relays the worker's event stream.

    ``prepare`` runs the checks and the commits that must happen before the
    response starts. ``stream`` then yields SSE frames for the caller, one per
    upstream event, followed by a single terminal ``completed`` or ``error``
    frame.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        worker: WorkerConfig,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.worker = worker
        self.client_factory = client_factory or self._default_client
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=worker.connect_retry_attempts,
            base_backoff_seconds=worker.connect_retry_base_seconds,
        )
        self.logger = get_logger("webedt.relay")

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.worker.connect_timeout_seconds, read=None))

    @property
    def execute_url(self) -> str:
        return f"{self.worker.url.rstrip('/')}/execute"

    def prepare(self, request: ExecuteRequest, user: User, request_id: str | None = None) -> RelayRun:
        if not request.user_request and not request.resume_session_id:
            raise PreconditionError("userRequest or resumeSessionId is required")
        if not user.claude_auth:
            raise PreconditionError("Claude authentication not configured. Please add your Claude credentials.")
        if request.repository_url and request.branch:
            holder = self.store.find_active_lock(
                user_id=user.id,
                repository_url=request.repository_url,
                branch=request.branch,
            )
            if holder is not None:
                raise PreconditionError(
                    f"Repository {request.repository_url} on branch {request.branch} is locked by an existing "
                    "session. Please complete or delete the existing session first."
                )

        text, images = split_user_request(request.user_request)
        session = self.store.create_session(
            user_id=user.id,
            user_request=text or "Resumed session",
            repository_url=request.repository_url,
            branch=request.branch,
            auto_commit=request.auto_commit,
        )
        if request.user_request:
            self.store.add_user_message(session.id, text, images)

        trace = TraceContext(
            request_id=request_id or uuid.uuid4().hex[:12],
            session_id=str(session.id),
            user_id=str(user.id),
            phase="prepare",
        )
        trace_event(self.logger, trace, "relay.session_created", status="ok")
        return RelayRun(
            session_id=session.id,
            payload=build_worker_payload(request, user, self.worker.provider),
            trace=trace,
        )

    async def stream(self, run: RelayRun) -> AsyncIterator[str]:
        try:
            async with self.client_factory() as client:
                try:
                    response = await self._open_upstream(client, run.payload)
                except httpx.HTTPError as exc:
                    yield self._reject(run, f"AI worker unreachable: {compact_error_summary(exc)}")
                    return
                except UpstreamError as exc:
                    yield self._reject(run, exc.message, status_code=exc.status_code)
                    return

                try:
                    try:
                        self.store.mark_running(run.session_id)
                    except SQLAlchemyError as exc:
                        self._finalize_error(run)
                        trace_event(
                            self.logger,
                            run.trace,
                            "relay.upstream_open",
                            status="error",
                            extra={"error": compact_error_summary(exc)},
                        )
                        yield format_sse("error", {"error": STREAMING_FAILED})
                        return

                    run.trace.phase = "stream"
                    trace_event(self.logger, run.trace, "relay.upstream_open", status="ok")

                    decoder = SSEDecoder()
                    forwarded = 0
                    try:
                        async for chunk in response.aiter_bytes():
                            for event in decoder.feed(chunk):
                                forwarded += 1
                                yield self._relay_event(run, event)
                        for event in decoder.flush():
                            forwarded += 1
                            yield self._relay_event(run, event)
                    except Exception as exc:  # noqa: BLE001
                        self._finalize_error(run)
                        trace_event(
                            self.logger,
                            run.trace,
                            "relay.stream_failed",
                            status="error",
                            extra={"error": compact_error_summary(exc), "forwarded": forwarded},
                        )
                        yield format_sse("error", {"error": STREAMING_FAILED})
                        return

                    try:
                        self.store.mark_completed(run.session_id)
                    except SQLAlchemyError as exc:
                        self._finalize_error(run)
                        trace_event(
                            self.logger,
                            run.trace,
                            "relay.stream_failed",
                            status="error",
                            extra={"error": compact_error_summary(exc), "forwarded": forwarded},
                        )
                        yield format_sse("error", {"error": STREAMING_FAILED})
                        return

                    trace_event(
                        self.logger, run.trace, "relay.stream_completed", status="ok", extra={"forwarded": forwarded}
                    )
                    yield format_sse("completed", {"sessionId": run.session_id, "completed": True})
                finally:
                    await response.aclose()
        except (asyncio.CancelledError, GeneratorExit):
            # Caller went away mid-stream; a session must never stay running.
            if self._finalize_error(run):
                trace_event(self.logger, run.trace, "relay.client_disconnected", status="error")
            raise

    async def _open_upstream(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        request = client.build_request(
            "POST",
            self.execute_url,
            json=payload,
            headers={"Accept": "text/event-stream"},
        )
        retrying = connect_retrying(self.retry_policy)
        response = await retrying(client.send, request, stream=True)
        if response.is_success:
            return response
        try:
            body = (await response.aread()).decode("utf-8", errors="replace").strip()
        except httpx.HTTPError:
            body = ""
        finally:
            await response.aclose()
        raise UpstreamError(
            body or f"AI worker request failed with status {response.status_code}",
            status_code=response.status_code,
        )

    def _reject(self, run: RelayRun, detail: str, status_code: int | None = None) -> str:
        try:
            self.store.add_message(run.session_id, "error", detail)
        except SQLAlchemyError as exc:
            self.logger.warning("relay.persist_failed", session_id=run.session_id, error=compact_error_summary(exc))
        self._finalize_error(run)
        trace_event(
            self.logger,
            run.trace,
            "relay.upstream_open",
            status="error",
            extra={"error": detail[:220], "upstream_status": status_code},
        )
        return format_sse("error", {"error": detail})

    def _finalize_error(self, run: RelayRun) -> bool:
        try:
            return self.store.mark_error(run.session_id)
        except SQLAlchemyError as exc:
            self.logger.warning("relay.finalize_failed", session_id=run.session_id, error=compact_error_summary(exc))
            return False

    def _relay_event(self, run: RelayRun, event: SSEEvent) -> str:
        payload = parse_payload(event.data)
        name = event.event
        if payload is not NOT_JSON:
            name = name or event_type_hint(payload)
            try:
                self._persist(run, name, payload)
            except SQLAlchemyError as exc:
                self.logger.warning(
                    "relay.persist_failed",
                    session_id=run.session_id,
                    event_type=name,
                    error=compact_error_summary(exc),
                )
        return SSEEvent(data=event.data, event=name).encode()

    def _persist(self, run: RelayRun, name: str | None, payload: Any) -> None:
        worker_id = worker_session_id(payload)
        if worker_id is not None and self.store.capture_worker_session_id(run.session_id, worker_id):
            trace_event(self.logger, run.trace, "relay.worker_session", status="ok", extra={"worker_session_id": worker_id})

        content = display_content(payload)
        if content is not None:
            self.store.add_message(run.session_id, "error" if name == "error" else "assistant", content)
