"""On-device cache for session records and the session index."""

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .models import ChatSessionRecord, ChatSessionsIndex

logger = logging.getLogger(__name__)


class SessionCache(ABC):
    """Get/save/delete primitives used by the session store."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ChatSessionRecord]:
        """Load a session record, or None if it is not cached."""

    @abstractmethod
    async def save_session(self, session_id: str, record: ChatSessionRecord) -> None:
        """Store a session record, replacing any previous one."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Remove a session record."""

    @abstractmethod
    async def get_index(self, user_id: str) -> Optional[ChatSessionsIndex]:
        """Load a user's session index, or None if it is not cached."""

    @abstractmethod
    async def save_index(self, index: ChatSessionsIndex) -> None:
        """Store a user's session index."""

    async def close(self) -> None:
        """Release resources."""


class SQLiteSessionCache(SessionCache):
    """SQLite-backed cache.

    Records are stored as JSON documents. Blocking sqlite calls run in a worker
    thread; a lock serializes access to the shared connection.
    """

    def __init__(self, db_path: Path):
        """Initialize the cache.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._ensure_tables()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _ensure_tables(self) -> None:
        """Create tables if they don't exist."""
        with self._lock:
            conn = self._get_conn()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    character_id TEXT NOT NULL,
                    updated_at INTEGER NOT NULL,
                    record TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chat_session_indexes (
                    user_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_chat_sessions_user
                    ON chat_sessions(user_id);
                """
            )
            conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # =========================================================================
    # Sessions
    # =========================================================================

    async def get_session(self, session_id: str) -> Optional[ChatSessionRecord]:
        return await asyncio.to_thread(self._get_session, session_id)

    async def save_session(self, session_id: str, record: ChatSessionRecord) -> None:
        payload = json.dumps(record.to_dict())
        await asyncio.to_thread(self._save_session, session_id, record, payload)

    async def delete_session(self, session_id: str) -> None:
        await asyncio.to_thread(self._delete_session, session_id)

    def _get_session(self, session_id: str) -> Optional[ChatSessionRecord]:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT record FROM chat_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return ChatSessionRecord.from_dict(json.loads(row["record"]))

    def _save_session(self, session_id: str, record: ChatSessionRecord, payload: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                """
                INSERT INTO chat_sessions (session_id, user_id, character_id, updated_at, record)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    user_id = excluded.user_id,
                    character_id = excluded.character_id,
                    updated_at = excluded.updated_at,
                    record = excluded.record
                """,
                (
                    session_id,
                    record.meta.user_id,
                    record.meta.character_id,
                    record.meta.updated_at,
                    payload,
                ),
            )
            conn.commit()
        logger.debug("Cached session %s (%d messages)", session_id, len(record.messages))

    def _delete_session(self, session_id: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute("DELETE FROM chat_sessions WHERE session_id = ?", (session_id,))
            conn.commit()

    # =========================================================================
    # Index
    # =========================================================================

    async def get_index(self, user_id: str) -> Optional[ChatSessionsIndex]:
        return await asyncio.to_thread(self._get_index, user_id)

    async def save_index(self, index: ChatSessionsIndex) -> None:
        payload = json.dumps(index.to_dict())
        await asyncio.to_thread(self._save_index, index.user_id, payload)

    def _get_index(self, user_id: str) -> Optional[ChatSessionsIndex]:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT payload FROM chat_session_indexes WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return ChatSessionsIndex.from_dict(json.loads(row["payload"]))

    def _save_index(self, user_id: str, payload: str) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                """
                INSERT INTO chat_session_indexes (user_id, payload) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET payload = excluded.payload
                """,
                (user_id, payload),
            )
            conn.commit()
