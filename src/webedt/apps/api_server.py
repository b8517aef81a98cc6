from __future__ import annotations

import uuid
from typing import Any

import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from webedt import __version__
from webedt.apps.runtime_support import WebRuntime, build_runtime
from webedt.cli import base_parser
from webedt.core.auth.service import extract_claude_auth
from webedt.core.relay.relay import SSE_HEADERS
from webedt.core.relay.schemas import ExecuteRequest, SessionRenameRequest
from webedt.core.runtime.errors import PreconditionError
from webedt.core.telemetry.tracing import recent_traces
from webedt.db.models import ChatSession, Message, User


def _session_dict(row: ChatSession) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "worker_session_id": row.worker_session_id,
        "user_request": row.user_request,
        "status": row.status,
        "repository_url": row.repository_url,
        "branch": row.branch,
        "auto_commit": row.auto_commit,
        "locked": row.locked,
        "created_at": row.created_at,
        "completed_at": row.completed_at,
    }


def _message_dict(row: Message) -> dict[str, Any]:
    return {
        "id": row.id,
        "chat_session_id": row.chat_session_id,
        "type": row.type,
        "content": row.content,
        "images": row.images,
        "timestamp": row.timestamp,
    }


def create_app(config_path: str | None = None, runtime: WebRuntime | None = None) -> FastAPI:
    runtime = runtime or build_runtime(config_path=config_path)
    app = FastAPI(title="WebEDT API", version=__version__)

    def _current_user(request: Request) -> User:
        user = runtime.auth.validate_session(request.cookies.get(runtime.cfg.auth.cookie_name))
        if user is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user

    def _owned_session(session_id: int, user: User) -> ChatSession:
        row = runtime.store.get_session(session_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Session not found")
        if row.user_id != user.id:
            raise HTTPException(status_code=403, detail="Access denied")
        return row

    def _start_stream(payload: ExecuteRequest, user: User) -> StreamingResponse:
        try:
            run = runtime.relay.prepare(payload, user, request_id=uuid.uuid4().hex[:12])
        except PreconditionError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
        return StreamingResponse(runtime.relay.stream(run), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "version": __version__, "worker_url": runtime.cfg.worker.url}

    @app.post("/api/execute")
    def execute(payload: ExecuteRequest, user: User = Depends(_current_user)) -> StreamingResponse:
        return _start_stream(payload, user)

    @app.get("/api/execute")
    def execute_query(request: Request, user: User = Depends(_current_user)) -> StreamingResponse:
        try:
            payload = ExecuteRequest.model_validate(dict(request.query_params))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="invalid_execute_query") from exc
        return _start_stream(payload, user)

    @app.get("/api/sessions")
    def list_sessions(user: User = Depends(_current_user)) -> dict:
        rows = runtime.store.list_sessions(user.id)
        return {"items": [_session_dict(r) for r in rows], "total": len(rows)}

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: int, user: User = Depends(_current_user)) -> dict:
        return _session_dict(_owned_session(session_id, user))

    @app.get("/api/sessions/{session_id}/messages")
    def get_messages(session_id: int, user: User = Depends(_current_user)) -> dict:
        _owned_session(session_id, user)
        rows = runtime.store.list_messages(session_id)
        return {"items": [_message_dict(r) for r in rows], "total": len(rows)}

    @app.patch("/api/sessions/{session_id}")
    def rename_session(session_id: int, payload: SessionRenameRequest, user: User = Depends(_current_user)) -> dict:
        title = (payload.user_request or "").strip()
        if not title:
            raise HTTPException(status_code=400, detail="Invalid title")
        _owned_session(session_id, user)
        row = runtime.store.rename(session_id, title)
        if row is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_dict(row)

    @app.delete("/api/sessions/{session_id}")
    def delete_session(session_id: int, user: User = Depends(_current_user)) -> dict:
        _owned_session(session_id, user)
        runtime.store.delete_session(session_id)
        return {"deleted": True, "id": session_id}

    @app.post("/api/user/claude-auth")
    def update_claude_auth(body: Any = Body(default=None), user: User = Depends(_current_user)) -> dict:
        claude_auth = extract_claude_auth(body)
        if claude_auth is None:
            raise HTTPException(status_code=400, detail="Invalid Claude auth. Must include accessToken and refreshToken.")
        runtime.auth.set_claude_auth(user.id, claude_auth)
        return {"updated": True}

    @app.delete("/api/user/claude-auth")
    def remove_claude_auth(user: User = Depends(_current_user)) -> dict:
        runtime.auth.set_claude_auth(user.id, None)
        return {"removed": True}

    @app.post("/api/auth/logout")
    def logout(request: Request, response: Response, _user: User = Depends(_current_user)) -> dict:
        cookie_name = runtime.cfg.auth.cookie_name
        runtime.auth.invalidate_session(request.cookies[cookie_name])
        response.delete_cookie(cookie_name)
        return {"logged_out": True}

    @app.get("/api/diagnostics/traces")
    def diagnostics_traces(
        _user: User = Depends(_current_user),
        session_id: str | None = Query(default=None),
        request_id: str | None = Query(default=None),
        limit: int = Query(default=20, ge=1, le=200),
    ) -> dict:
        return {"items": recent_traces(session_id=session_id, limit=limit, request_id=request_id)}

    return app


def main() -> int:
    parser = base_parser("webedt-api", "WebEDT API server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=3001)
    args = parser.parse_args()

    api = create_app(config_path=args.config)
    uvicorn.run(api, host=args.host, port=args.port, log_level="info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
