"""Local-first session storage and Hub synchronization."""

from .bootstrap import select_bootstrap_sessions
from .conflict import (
    GenerationToken,
    SessionGenerations,
    reconcile_meta,
    remote_meta_to_session_meta,
    should_hydrate,
)
from .models import (
    EXPORT_FORMAT,
    CharacterSessions,
    ChatItem,
    ChatSessionMeta,
    ChatSessionRecord,
    ChatSessionsExport,
    ChatSessionsIndex,
)
from .session_cache import SessionCache, SQLiteSessionCache
from .session_store import LocalSessionStore, StoreState
from .task_queue import SerialTaskQueue

__all__ = [
    "EXPORT_FORMAT",
    "CharacterSessions",
    "ChatItem",
    "ChatSessionMeta",
    "ChatSessionRecord",
    "ChatSessionsExport",
    "ChatSessionsIndex",
    "GenerationToken",
    "LocalSessionStore",
    "SQLiteSessionCache",
    "SerialTaskQueue",
    "SessionCache",
    "SessionGenerations",
    "StoreState",
    "reconcile_meta",
    "remote_meta_to_session_meta",
    "select_bootstrap_sessions",
    "should_hydrate",
]
