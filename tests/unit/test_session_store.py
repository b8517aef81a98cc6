from __future__ import annotations

import pytest

from webedt.db.models import ChatSession


def test_status_moves_forward_only(store, user):
    session = store.create_session(user_id=user.id, user_request="hello")
    assert session.status == "pending"

    assert store.mark_running(session.id) is True
    assert store.mark_running(session.id) is False
    assert store.mark_completed(session.id) is True

    row = store.get_session(session.id)
    assert row.status == "completed"
    assert row.completed_at is not None
    first_completed_at = row.completed_at

    assert store.mark_error(session.id) is False
    assert store.mark_running(session.id) is False
    row = store.get_session(session.id)
    assert row.status == "completed"
    assert row.completed_at == first_completed_at


def test_pending_session_can_fail_directly(store, user):
    session = store.create_session(user_id=user.id, user_request="hello")
    assert store.mark_error(session.id) is True
    assert store.get_session(session.id).status == "error"


def test_worker_session_id_first_writer_wins(store, user):
    session = store.create_session(user_id=user.id, user_request="hello")
    assert store.capture_worker_session_id(session.id, "worker-a") is True
    assert store.capture_worker_session_id(session.id, "worker-b") is False
    assert store.get_session(session.id).worker_session_id == "worker-a"


def test_terminal_session_accepts_no_messages(store, user):
    session = store.create_session(user_id=user.id, user_request="hello")
    assert store.add_message(session.id, "assistant", "one") is not None
    store.mark_error(session.id)
    assert store.add_message(session.id, "assistant", "two") is None
    assert store.add_user_message(session.id, "again") is None
    assert [m.content for m in store.list_messages(session.id)] == ["one"]


def test_user_message_locks_repository_session(store, user):
    session = store.create_session(
        user_id=user.id,
        user_request="fix",
        repository_url="https://github.com/acme/app",
        branch="main",
    )
    store.add_user_message(session.id, "fix")
    holder = store.find_active_lock(user_id=user.id, repository_url="https://github.com/acme/app", branch="main")
    assert holder is not None and holder.id == session.id

    store.mark_completed(session.id)
    assert store.find_active_lock(user_id=user.id, repository_url="https://github.com/acme/app", branch="main") is None


def test_unknown_message_type_rejected(store, user):
    session = store.create_session(user_id=user.id, user_request="hello")
    with pytest.raises(ValueError, match="unknown message type"):
        store.add_message(session.id, "tool", "x")


def test_rename_and_delete(store, user, db_factory):
    session = store.create_session(user_id=user.id, user_request="hello")
    store.add_message(session.id, "assistant", "hi")
    assert store.rename(session.id, "Better title").user_request == "Better title"
    assert store.delete_session(session.id) is True
    assert store.list_messages(session.id) == []
    with db_factory() as db:
        assert db.get(ChatSession, session.id) is None
