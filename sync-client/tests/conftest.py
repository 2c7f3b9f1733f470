"""Pytest configuration and fixtures for client tests."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Make `shared` and `chatsync` importable when running from the project directory
REPO_ROOT = Path(__file__).resolve().parents[2]
SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
for path in (REPO_ROOT, SRC_ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from chatsync.config import SessionSettings  # noqa: E402
from chatsync.hub import HubClient  # noqa: E402
from chatsync.storage import LocalSessionStore, SQLiteSessionCache  # noqa: E402
from shared.contracts import ChatMessageInfo, ChatMeta, ChatSnapshot, ChatSyncResponse  # noqa: E402


def make_snapshot(chat_id, updated_at, character_id=None, contents=("hello",)):
    """Build a Hub snapshot with one user message per content string."""
    return ChatSnapshot(
        chat=ChatMeta(
            id=chat_id,
            type="group",
            created_at=100,
            updated_at=updated_at,
            character_id=character_id,
        ),
        messages=[
            ChatMessageInfo(id=f"{chat_id}-{i}", role="user", content=text, created_at=100 + i)
            for i, text in enumerate(contents)
        ],
    )


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
def session_settings():
    """Session settings with a recognisable system prompt."""
    return SessionSettings(system_prompt="You are a helpful assistant.")


@pytest.fixture
async def cache(tmp_path):
    """SQLite cache in a temporary directory."""
    cache = SQLiteSessionCache(tmp_path / "sessions.db")
    yield cache
    await cache.close()


@pytest.fixture
def hub():
    """Hub client double with empty remote state."""
    hub = MagicMock(spec=HubClient)
    hub.list_chats = AsyncMock(return_value=[])
    hub.get_chat_snapshot = AsyncMock(return_value=None)
    hub.sync_chat = AsyncMock(side_effect=lambda request: ChatSyncResponse(chat_id=request.chat.id))
    return hub


@pytest.fixture
def make_store(cache, session_settings):
    """Factory for stores sharing the test cache."""

    def factory(hub=None, cache_override=None, **kwargs):
        return LocalSessionStore(
            cache_override or cache,
            hub,
            settings=session_settings,
            **kwargs,
        )

    return factory
