"""Tests for bootstrap session selection."""

from chatsync.storage import select_bootstrap_sessions
from shared.contracts import ChatMeta


def remote(chat_id, updated_at, character_id=None):
    return ChatMeta(
        id=chat_id,
        type="group",
        created_at=1,
        updated_at=updated_at,
        character_id=character_id,
    )


REMOTE = [remote("b", 300, "X"), remote("c", 500, "Y"), remote("d", 200, "Z")]


def test_active_then_character_then_recency():
    assert select_bootstrap_sessions(REMOTE, "X", "a") == ["a", "b", "c"]


def test_without_active_session():
    assert select_bootstrap_sessions(REMOTE, "Z", None) == ["d", "c", "b"]


def test_active_session_is_not_duplicated():
    assert select_bootstrap_sessions(REMOTE, "X", "b") == ["b", "c", "d"]


def test_metas_without_character_count_as_default():
    metas = [remote("x", 900, "other"), remote("y", 100)]
    assert select_bootstrap_sessions(metas, "default", None, limit=1) == ["y"]


def test_limit_and_empty_input():
    assert select_bootstrap_sessions(REMOTE, "nobody", None, limit=2) == ["c", "b"]
    assert select_bootstrap_sessions([], "X", None) == []
    assert select_bootstrap_sessions([], "X", "a") == ["a"]
