from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select

from webedt.db.models import AuthSession, User
from webedt.db.session import session_scope


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_claude_auth(body: Any) -> dict[str, Any] | None:
    """Pull the credential out of an upload; None when it lacks either token.

    The credential may arrive bare or wrapped in ``claudeAuth``; the Claude CLI
    credentials file nests it under ``claudeAiOauth``.
    """
    if not isinstance(body, dict):
        return None
    claude_auth = body.get("claudeAuth") or body
    if isinstance(claude_auth, dict) and isinstance(claude_auth.get("claudeAiOauth"), dict):
        claude_auth = claude_auth["claudeAiOauth"]
    if not isinstance(claude_auth, dict):
        return None
    if not claude_auth.get("accessToken") or not claude_auth.get("refreshToken"):
        return None
    return claude_auth


def _as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class AuthService:
    """Cookie-backed login sessions and the credentials attached to a user."""

    def __init__(self, *, db_session_factory, session_ttl_hours: int = 720) -> None:
        self.db_session_factory = db_session_factory
        self.session_ttl = timedelta(hours=session_ttl_hours)

    def create_user(
        self,
        email: str,
        *,
        claude_auth: dict[str, Any] | None = None,
        github_access_token: str | None = None,
    ) -> User:
        with self.db_session_factory() as db:
            row = User(
                email=email.strip().lower(),
                claude_auth=claude_auth,
                github_access_token=github_access_token,
                created_at=_utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def set_claude_auth(self, user_id: int, claude_auth: dict[str, Any] | None) -> User | None:
        with self.db_session_factory() as db:
            row = db.get(User, user_id)
            if row is None:
                return None
            row.claude_auth = claude_auth
            db.commit()
            db.refresh(row)
            return row

    def create_session(self, user_id: int) -> AuthSession:
        with self.db_session_factory() as db:
            row = AuthSession(
                id=secrets.token_urlsafe(32),
                user_id=user_id,
                expires_at=_utcnow() + self.session_ttl,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def validate_session(self, session_id: str | None) -> User | None:
        if not session_id:
            return None
        with self.db_session_factory() as db:
            row = db.get(AuthSession, session_id)
            if row is None:
                return None
            if _as_aware(row.expires_at) <= _utcnow():
                db.delete(row)
                db.commit()
                return None
            return db.execute(select(User).where(User.id == row.user_id)).scalar_one_or_none()

    def invalidate_session(self, session_id: str) -> None:
        with session_scope(self.db_session_factory) as db:
            db.execute(delete(AuthSession).where(AuthSession.id == session_id))
