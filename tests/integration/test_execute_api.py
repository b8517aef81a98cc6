from __future__ import annotations

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import chunked, decode_frames, mock_client_factory
from webedt.apps.api_server import create_app
from webedt.apps.runtime_support import build_runtime
from webedt.core.config.schema import AppConfig, DatabaseConfig, WorkerConfig

WORKER_STREAM = (
    b'event: connected\ndata: {"sessionId":"w-42"}\n\n'
    b'event: assistant_message\ndata: {"type":"message","message":"Adding the button"}\n\n'
    b'event: session_name\ndata: {"name":"Add button"}\n\n'
    b'event: result\ndata: {"text":"Done"}'
)


@pytest.fixture
def api(tmp_path):
    upstream: dict = {"requests": [], "response": None}

    def handler(request: httpx.Request) -> httpx.Response:
        upstream["requests"].append(request)
        if upstream["response"] is not None:
            return upstream["response"]
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=chunked([WORKER_STREAM]))

    cfg = AppConfig(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'api.db'}"),
        worker=WorkerConfig(url="http://worker.test", connect_retry_base_seconds=0),
    )
    runtime = build_runtime(cfg=cfg, client_factory=mock_client_factory(handler))
    app = create_app(runtime=runtime)

    owner = runtime.auth.create_user(
        "owner@example.com",
        claude_auth={"accessToken": "sk-test"},
        github_access_token="gh-token",
    )
    token = runtime.auth.create_session(owner.id).id

    with TestClient(app) as client:
        client.cookies.set(cfg.auth.cookie_name, token)
        yield client, runtime, upstream, owner


def test_execute_requires_login(api):
    client, _runtime, _upstream, _owner = api
    client.cookies.clear()
    resp = client.post("/api/execute", json={"userRequest": "add a button"})
    assert resp.status_code == 401


def test_execute_precondition_failures_are_400(api):
    client, runtime, upstream, owner = api
    resp = client.post("/api/execute", json={})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "userRequest or resumeSessionId is required"

    runtime.auth.set_claude_auth(owner.id, None)
    resp = client.post("/api/execute", json={"userRequest": "add a button"})
    assert resp.status_code == 400
    assert "Claude authentication not configured" in resp.json()["detail"]
    assert upstream["requests"] == []
    assert runtime.store.list_sessions(owner.id) == []


def test_execute_streams_and_records_session(api):
    client, runtime, upstream, owner = api
    resp = client.post(
        "/api/execute",
        json={"userRequest": "add a button", "repositoryUrl": "https://github.com/acme/app", "branch": "main"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")

    events = decode_frames(resp.text)
    assert [e.event for e in events] == ["connected", "assistant_message", "session_name", "result", "completed"]
    session_id = json.loads(events[-1].data)["sessionId"]

    sent = json.loads(upstream["requests"][0].content)
    assert upstream["requests"][0].url == "http://worker.test/execute"
    assert upstream["requests"][0].headers["accept"] == "text/event-stream"
    assert sent["codingAssistantProvider"] == "ClaudeAgentSDK"
    assert sent["codingAssistantAuthentication"] == {"accessToken": "sk-test"}
    assert sent["github"]["repoUrl"] == "https://github.com/acme/app"

    session = client.get(f"/api/sessions/{session_id}").json()
    assert session["status"] == "completed"
    assert session["worker_session_id"] == "w-42"
    assert session["locked"] is True

    messages = client.get(f"/api/sessions/{session_id}/messages").json()["items"]
    assert [(m["type"], m["content"]) for m in messages] == [
        ("user", "add a button"),
        ("assistant", "Adding the button"),
        ("assistant", "Done"),
    ]


def test_execute_query_form_for_event_source(api):
    client, _runtime, _upstream, _owner = api
    resp = client.get("/api/execute", params={"userRequest": "hello", "autoCommit": "true"})
    assert resp.status_code == 200
    assert decode_frames(resp.text)[-1].event == "completed"


def test_upstream_503_reports_error_frame(api):
    client, runtime, upstream, owner = api
    upstream["response"] = httpx.Response(503, text="Service Unavailable")

    resp = client.post("/api/execute", json={"userRequest": "add a button"})

    assert resp.status_code == 200
    events = decode_frames(resp.text)
    assert [(e.event, json.loads(e.data)) for e in events] == [("error", {"error": "Service Unavailable"})]
    session = runtime.store.list_sessions(owner.id)[0]
    assert session.status == "error"
    errors = [m for m in runtime.store.list_messages(session.id) if m.type == "error"]
    assert len(errors) == 1


def test_sessions_are_private_and_manageable(api):
    client, runtime, _upstream, owner = api
    client.post("/api/execute", json={"userRequest": "first"})
    listed = client.get("/api/sessions").json()
    assert listed["total"] == 1
    session_id = listed["items"][0]["id"]

    renamed = client.patch(f"/api/sessions/{session_id}", json={"userRequest": "  Renamed  "})
    assert renamed.status_code == 200
    assert renamed.json()["user_request"] == "Renamed"
    assert client.patch(f"/api/sessions/{session_id}", json={"userRequest": "   "}).status_code == 400

    stranger = runtime.auth.create_user("stranger@example.com", claude_auth={"accessToken": "x"})
    client.cookies.set(runtime.cfg.auth.cookie_name, runtime.auth.create_session(stranger.id).id)
    assert client.get(f"/api/sessions/{session_id}").status_code == 403
    assert client.delete(f"/api/sessions/{session_id}").status_code == 403
    assert client.get("/api/sessions/9999").status_code == 404

    client.cookies.set(runtime.cfg.auth.cookie_name, runtime.auth.create_session(owner.id).id)
    assert client.delete(f"/api/sessions/{session_id}").json() == {"deleted": True, "id": session_id}
    assert client.get("/api/sessions").json()["total"] == 0


def test_health_and_traces(api):
    client, _runtime, _upstream, _owner = api
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["worker_url"] == "http://worker.test"

    client.post("/api/execute", json={"userRequest": "trace me"})
    traces = client.get("/api/diagnostics/traces", params={"limit": 50}).json()["items"]
    assert any(t["event"] == "relay.stream_completed" for t in traces)


def test_claude_credential_can_be_uploaded_and_removed(api):
    client, runtime, _upstream, _owner = api
    token = client.cookies.get(runtime.cfg.auth.cookie_name)

    bad = client.post("/api/user/claude-auth", json={"accessToken": "only-access"})
    assert bad.status_code == 400
    assert "accessToken and refreshToken" in bad.json()["detail"]

    uploaded = client.post(
        "/api/user/claude-auth",
        json={"claudeAiOauth": {"accessToken": "sk-new", "refreshToken": "rt-new", "expiresAt": 1}},
    )
    assert uploaded.json() == {"updated": True}
    assert runtime.auth.validate_session(token).claude_auth["accessToken"] == "sk-new"

    assert client.delete("/api/user/claude-auth").json() == {"removed": True}
    assert runtime.auth.validate_session(token).claude_auth is None
    resp = client.post("/api/execute", json={"userRequest": "add a button"})
    assert resp.status_code == 400
    assert "Claude authentication not configured" in resp.json()["detail"]


def test_logout_ends_the_login_session(api):
    client, runtime, _upstream, _owner = api
    cookie_name = runtime.cfg.auth.cookie_name
    token = client.cookies.get(cookie_name)

    resp = client.post("/api/auth/logout")
    assert resp.status_code == 200
    assert resp.json() == {"logged_out": True}
    assert runtime.auth.validate_session(token) is None

    client.cookies.set(cookie_name, token)
    assert client.get("/api/sessions").status_code == 401
