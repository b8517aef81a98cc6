from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update

from webedt.db.models import (
    MESSAGE_TYPES,
    SESSION_COMPLETED,
    SESSION_ERROR,
    SESSION_PENDING,
    SESSION_RUNNING,
    TERMINAL_STATUSES,
    ChatSession,
    Message,
)
from webedt.db.session import session_scope

_ALLOWED_PRIOR = {
    SESSION_RUNNING: (SESSION_PENDING,),
    SESSION_COMPLETED: (SESSION_PENDING, SESSION_RUNNING),
    SESSION_ERROR: (SESSION_PENDING, SESSION_RUNNING),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Persistence for chat sessions and their message log.

    Every status change is a conditional update on the states it may come
    from, so a session never moves backwards and a terminal session is never
    touched again.
    """

    def __init__(self, db_session_factory) -> None:
        self.db_session_factory = db_session_factory

    def create_session(
        self,
        *,
        user_id: int,
        user_request: str,
        repository_url: str | None = None,
        branch: str | None = None,
        auto_commit: bool = False,
    ) -> ChatSession:
        with self.db_session_factory() as db:
            row = ChatSession(
                user_id=user_id,
                user_request=user_request,
                status=SESSION_PENDING,
                repository_url=repository_url or None,
                branch=branch or None,
                auto_commit=auto_commit,
                locked=False,
                created_at=_utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def add_user_message(
        self,
        session_id: int,
        content: str,
        images: list[dict[str, Any]] | None = None,
    ) -> Message | None:
        """Store the prompt and lock the session when it targets a repository branch."""
        with self.db_session_factory() as db:
            session = db.get(ChatSession, session_id)
            if session is None or session.status in TERMINAL_STATUSES:
                return None
            row = Message(
                chat_session_id=session_id,
                type="user",
                content=content,
                images=images or None,
                timestamp=_utcnow(),
            )
            db.add(row)
            if session.repository_url and session.branch:
                session.locked = True
            db.commit()
            db.refresh(row)
            return row

    def add_message(
        self,
        session_id: int,
        message_type: str,
        content: str,
        images: list[dict[str, Any]] | None = None,
    ) -> Message | None:
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"unknown message type: {message_type}")
        with self.db_session_factory() as db:
            status = db.execute(select(ChatSession.status).where(ChatSession.id == session_id)).scalar_one_or_none()
            if status is None or status in TERMINAL_STATUSES:
                return None
            row = Message(
                chat_session_id=session_id,
                type=message_type,
                content=content,
                images=images or None,
                timestamp=_utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def _transition(self, session_id: int, status: str) -> bool:
        values: dict[str, Any] = {"status": status}
        if status in TERMINAL_STATUSES:
            values["completed_at"] = _utcnow()
        with self.db_session_factory() as db:
            result = db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id, ChatSession.status.in_(_ALLOWED_PRIOR[status]))
                .values(**values)
            )
            db.commit()
            return result.rowcount == 1

    def mark_running(self, session_id: int) -> bool:
        return self._transition(session_id, SESSION_RUNNING)

    def mark_completed(self, session_id: int) -> bool:
        return self._transition(session_id, SESSION_COMPLETED)

    def mark_error(self, session_id: int) -> bool:
        return self._transition(session_id, SESSION_ERROR)

    def capture_worker_session_id(self, session_id: int, worker_session_id: str) -> bool:
        """First writer wins; returns False when an id was already stored."""
        with self.db_session_factory() as db:
            result = db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id, ChatSession.worker_session_id.is_(None))
                .values(worker_session_id=worker_session_id)
            )
            db.commit()
            return result.rowcount == 1

    def find_active_lock(self, *, user_id: int, repository_url: str, branch: str) -> ChatSession | None:
        with self.db_session_factory() as db:
            return (
                db.execute(
                    select(ChatSession)
                    .where(
                        ChatSession.user_id == user_id,
                        ChatSession.repository_url == repository_url,
                        ChatSession.branch == branch,
                        ChatSession.locked.is_(True),
                        ChatSession.status.not_in(tuple(TERMINAL_STATUSES)),
                    )
                    .limit(1)
                )
                .scalars()
                .first()
            )

    def get_session(self, session_id: int) -> ChatSession | None:
        with self.db_session_factory() as db:
            return db.get(ChatSession, session_id)

    def list_sessions(self, user_id: int) -> list[ChatSession]:
        with self.db_session_factory() as db:
            return list(
                db.execute(
                    select(ChatSession)
                    .where(ChatSession.user_id == user_id)
                    .order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
                ).scalars()
            )

    def list_messages(self, session_id: int) -> list[Message]:
        with self.db_session_factory() as db:
            return list(
                db.execute(
                    select(Message)
                    .where(Message.chat_session_id == session_id)
                    .order_by(Message.id.asc())
                ).scalars()
            )

    def rename(self, session_id: int, user_request: str) -> ChatSession | None:
        with self.db_session_factory() as db:
            row = db.get(ChatSession, session_id)
            if row is None:
                return None
            row.user_request = user_request
            db.commit()
            db.refresh(row)
            return row

    def delete_session(self, session_id: int) -> bool:
        with session_scope(self.db_session_factory) as db:
            db.execute(delete(Message).where(Message.chat_session_id == session_id))
            result = db.execute(delete(ChatSession).where(ChatSession.id == session_id))
        return result.rowcount == 1
