from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable

import httpx
import pytest

from webedt.core.auth.service import AuthService
from webedt.core.relay.sse import SSEDecoder, SSEEvent
from webedt.core.sessions.store import SessionStore
from webedt.db.session import create_session_factory, init_db


@pytest.fixture
def db_factory(tmp_path):
    factory, engine = create_session_factory(f"sqlite:///{tmp_path / 'webedt.db'}")
    init_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def store(db_factory) -> SessionStore:
    return SessionStore(db_factory)


@pytest.fixture
def auth(db_factory) -> AuthService:
    return AuthService(db_session_factory=db_factory)


@pytest.fixture
def user(auth):
    return auth.create_user(
        "dev@example.com",
        claude_auth={"accessToken": "sk-test", "refreshToken": "rt", "expiresAt": 0},
        github_access_token="gh-token",
    )


async def chunked(parts: Iterable[bytes], fail_with: Exception | None = None) -> AsyncIterator[bytes]:
    for part in parts:
        yield part
    if fail_with is not None:
        raise fail_with


def mock_client_factory(handler: Callable) -> Callable[[], httpx.AsyncClient]:
    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


def decode_frames(text: str) -> list[SSEEvent]:
    decoder = SSEDecoder()
    return [*decoder.feed(text), *decoder.flush()]
