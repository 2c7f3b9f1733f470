"""Local-first chat session store.

The store owns the in-memory working copy of every session it has touched and
is the only writer of the local cache. Each mutation:

1. updates in-memory state synchronously,
2. queues a cache write on `persist_queue`,
3. queues a best-effort push to the Hub on `sync_queue`.

Both queues run their tasks strictly in submission order and keep going after
a failed task. Hub failures are logged and dropped; the next local mutation
pushes the session again. Cache failures are not guarded.

At startup the store pulls the remote chat list, reconciles metadata with
last-write-wins and hydrates a few sessions (see `bootstrap`).
"""

import asyncio
import copy
import logging
import uuid
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Union

import httpx

from shared.contracts import (
    ChatMeta,
    ChatSyncRequest,
    SyncChatInfo,
    SyncChatMember,
    SyncChatMessage,
)

from ..config import SessionSettings, Settings, get_settings
from ..hub import HubClient, HubConfig, HubError
from .bootstrap import select_bootstrap_sessions
from .conflict import (
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
    now_ms,
)
from .session_cache import SessionCache, SQLiteSessionCache
from .task_queue import SerialTaskQueue

logger = logging.getLogger(__name__)

LOCAL_USER_ID = "local"

CODE_BLOCK_PROMPT = (
    "- For any programming code block, always name the language after the "
    "opening fence, eg. ```python ... ```\n"
)
MATH_SYNTAX_PROMPT = (
    "- For any math equation, use LaTeX format, eg: $ x^3 $, and escape dollar "
    "signs outside math equations\n"
)

# Hub failures that the store logs instead of raising
NETWORK_ERRORS = (HubError, httpx.HTTPError)


class StoreState(str, Enum):
    """Lifecycle of a LocalSessionStore."""

    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    READY = "ready"


class LocalSessionStore:
    """In-memory session state backed by a local cache and synced to the Hub."""

    def __init__(
        self,
        cache: SessionCache,
        hub: Optional[HubClient] = None,
        *,
        user_id: Optional[str] = None,
        character_id: Optional[str] = None,
        settings: Optional[SessionSettings] = None,
    ):
        """Initialize the store.

        Args:
            cache: Local cache for session records and the index
            hub: Hub client; None keeps the store local-only
            user_id: Authenticated user (defaults to "local")
            character_id: Active character (defaults to the configured one)
            settings: Session settings (defaults to the loaded config)
        """
        self.cache = cache
        self.hub = hub
        self.settings = settings or get_settings().sessions
        self._user_id = user_id
        self._character_id = character_id

        self.state = StoreState.NOT_INITIALIZED
        self.active_session_id = ""

        self._messages: Dict[str, List[ChatItem]] = {}
        self._metas: Dict[str, ChatSessionMeta] = {}
        self._generations = SessionGenerations()
        self._loaded: Set[str] = set()
        self._loading: Dict[str, asyncio.Task] = {}
        self._index: Optional[ChatSessionsIndex] = None
        self._init_task: Optional[asyncio.Task] = None

        self.persist_queue = SerialTaskQueue("persist")
        self.sync_queue = SerialTaskQueue("sync")

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        user_id: Optional[str] = None,
        character_id: Optional[str] = None,
    ) -> "LocalSessionStore":
        """Build a store with a SQLite cache and, if configured, a Hub client."""
        settings = settings or get_settings()
        hub_config = HubConfig.from_settings(settings)
        return cls(
            SQLiteSessionCache(Path(settings.storage.db_path)),
            HubClient(hub_config) if hub_config else None,
            user_id=user_id,
            character_id=character_id,
            settings=settings.sessions,
        )

    # =========================================================================
    # Identity & state
    # =========================================================================

    @property
    def user_id(self) -> str:
        return self._user_id or LOCAL_USER_ID

    @property
    def character_id(self) -> str:
        return self._character_id or self.settings.default_character_id

    @property
    def is_ready(self) -> bool:
        return self.state is StoreState.READY

    @property
    def index(self) -> Optional[ChatSessionsIndex]:
        return self._index

    @property
    def messages(self) -> List[ChatItem]:
        """Messages of the active session."""
        if not self.active_session_id:
            return []
        return self._messages.get(self.active_session_id, [])

    def set_active_messages(self, messages: Sequence[ChatItem]) -> Optional[asyncio.Task]:
        """Replace the active session's messages."""
        if not self.active_session_id:
            return None
        return self.set_session_messages(self.active_session_id, messages)

    async def set_user(self, user_id: Optional[str]) -> None:
        """Switch the signed-in user and resolve their active session."""
        self._user_id = user_id
        if self.is_ready:
            await self._ensure_active_session_for_character()

    async def set_character(self, character_id: Optional[str]) -> None:
        """Switch the active character and resolve its active session."""
        self._character_id = character_id
        if self.is_ready:
            await self._ensure_active_session_for_character()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Load the index, pull remote sessions, and pick an active session.

        Concurrent callers share one in-flight initialization. Once ready,
        calling again does nothing.
        """
        if self.state is StoreState.READY:
            return

        if self._init_task is None:
            self.state = StoreState.INITIALIZING
            self._init_task = asyncio.ensure_future(self._initialize())

        task = self._init_task
        try:
            await task
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None
                if self.state is not StoreState.READY:
                    self.state = StoreState.NOT_INITIALIZED

    async def _initialize(self) -> None:
        await self._load_index_for_user(self.user_id)

        if self.hub is not None:
            try:
                await self.pull_remote_sessions()
            except NETWORK_ERRORS as e:
                logger.warning("Failed to pull remote chat sessions: %s", e)

        await self._ensure_active_session_for_character()
        self.state = StoreState.READY
        logger.info(
            "Session store ready (user=%s, character=%s, active=%s)",
            self.user_id,
            self.character_id,
            self.active_session_id,
        )

    async def flush(self) -> None:
        """Wait for all queued cache writes and Hub pushes."""
        await self.persist_queue.drain()
        await self.sync_queue.drain()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        character_id: str,
        *,
        set_active: bool = True,
        messages: Optional[Sequence[ChatItem]] = None,
        title: Optional[str] = None,
    ) -> str:
        """Create a session for a character.

        Args:
            character_id: Owning character
            set_active: Make it the character's (and the store's) active session
            messages: Initial messages; a system preamble when empty
            title: Optional title

        Returns:
            The new session id
        """
        session_id = str(uuid.uuid4())
        now = now_ms()
        meta = ChatSessionMeta(
            session_id=session_id,
            user_id=self.user_id,
            character_id=character_id,
            title=title,
            created_at=now,
            updated_at=now,
        )

        initial = list(messages) if messages else [self._initial_message()]
        self._metas[session_id] = meta
        self._messages[session_id] = initial
        self._generations.get(session_id)
        self._loaded.add(session_id)
        self._ensure_message_ids(session_id)

        if self._index is None:
            self._index = ChatSessionsIndex(user_id=self.user_id)
        character = self._index.characters.setdefault(
            character_id, CharacterSessions(active_session_id=session_id)
        )
        character.sessions[session_id] = meta
        if set_active:
            character.active_session_id = session_id

        record = self._snapshot_record(session_id)
        persisted = self.persist_queue.submit(lambda: self.cache.save_session(session_id, record))
        await persisted
        await self._persist_index()
        self._schedule_sync(session_id, after=persisted)

        if set_active:
            self.active_session_id = session_id

        logger.debug("Created session %s for character %s", session_id, character_id)
        return session_id

    async def set_active_session(self, session_id: str) -> None:
        """Switch the visible session and remember it for the current character."""
        self.active_session_id = session_id

        character = self._index.characters.get(self.character_id) if self._index else None
        if character is not None:
            character.active_session_id = session_id
            self._persist_index()

        # Load before seeding so a cached session is never overwritten by a preamble
        await self.load_session(session_id)
        self.ensure_session(session_id)

    def set_session_messages(
        self, session_id: str, messages: Sequence[ChatItem]
    ) -> Optional[asyncio.Task]:
        """Replace a session's messages, persist them and schedule a push.

        Returns:
            The queued cache write, or None for an unknown session
        """
        self._messages[session_id] = list(messages)
        self._loaded.add(session_id)
        return self._persist_session(session_id)

    def persist_session_messages(self, session_id: str) -> Optional[asyncio.Task]:
        """Persist a session after its message list was edited in place."""
        return self._persist_session(session_id)

    def ensure_session(self, session_id: str) -> Optional[asyncio.Task]:
        """Seed a system preamble into a session that has no messages."""
        self._generations.get(session_id)
        if self._messages.get(session_id):
            return None
        self._messages[session_id] = [self._initial_message()]
        return self._persist_session(session_id)

    def get_session_messages(self, session_id: str) -> List[ChatItem]:
        return self._messages.get(session_id, [])

    def get_session_meta(self, session_id: str) -> Optional[ChatSessionMeta]:
        return self._metas.get(session_id)

    def get_all_sessions(self) -> Dict[str, List[ChatItem]]:
        """Copy of every in-memory session's messages."""
        return copy.deepcopy(self._messages)

    async def fork_session(self, from_session_id: str, at_index: Optional[int] = None) -> str:
        """Create an inactive session from a prefix of another one.

        Args:
            from_session_id: Session to copy from
            at_index: Number of leading messages to keep (default: all)

        Returns:
            The new session id
        """
        await self.load_session(from_session_id)
        parent = self._messages.get(from_session_id, [])
        cut = len(parent) if at_index is None else at_index

        # Message ids are globally unique on the Hub, so copies get new ones
        forked = [replace(item, id=str(uuid.uuid4())) for item in copy.deepcopy(parent[:cut])]
        return await self.create_session(self.character_id, set_active=False, messages=forked)

    def cleanup_messages(self, session_id: Optional[str] = None) -> Optional[asyncio.Task]:
        """Reset a session to a fresh preamble and invalidate in-flight work."""
        session_id = session_id or self.active_session_id
        self._generations.bump(session_id)
        return self.set_session_messages(session_id, [self._initial_message()])

    def get_session_generation(self, session_id: Optional[str] = None) -> int:
        return self._generations.get(session_id or self.active_session_id)

    def bump_session_generation(self, session_id: str) -> int:
        return self._generations.bump(session_id)

    async def load_session(self, session_id: str) -> None:
        """Load a session from the cache once; concurrent calls share the load."""
        if session_id in self._loaded:
            return

        task = self._loading.get(session_id)
        if task is None:
            task = asyncio.ensure_future(self._load_session(session_id))
            self._loading[session_id] = task
        try:
            await task
        finally:
            if self._loading.get(session_id) is task and task.done():
                del self._loading[session_id]

    async def _load_session(self, session_id: str) -> None:
        token = self._generations.capture(session_id)
        stored = await self.cache.get_session(session_id)

        # Skip if the session was written or reset while the read was in flight
        if session_id in self._loaded or not self._generations.is_current(token):
            return

        if stored is not None:
            current = self._metas.get(session_id)
            self._metas[session_id] = (
                stored.meta if current is None else reconcile_meta(stored.meta, current)
            )
            self._messages[session_id] = stored.messages
        self._loaded.add(session_id)

    async def reset_all_sessions(self) -> str:
        """Delete every cached session of the user and start a fresh one.

        Returns:
            The new active session id
        """
        session_ids: List[str] = []
        if self._index is not None and self._index.user_id == self.user_id:
            session_ids = self._index.session_ids()

        for session_id in session_ids:
            self._generations.bump(session_id)
            await self.persist_queue.submit(
                lambda sid=session_id: self.cache.delete_session(sid)
            )

        self._clear_sessions()
        self._index = ChatSessionsIndex(user_id=self.user_id)
        logger.info("Reset %d local sessions for user %s", len(session_ids), self.user_id)

        return await self.create_session(self.character_id)

    # =========================================================================
    # Export / import
    # =========================================================================

    async def export_sessions(self) -> ChatSessionsExport:
        """Snapshot the index and every indexed session."""
        if not self.is_ready:
            await self.initialize()
        await self.persist_queue.drain()

        if self._index is None:
            return ChatSessionsExport(index=ChatSessionsIndex(user_id=self.user_id))

        sessions: Dict[str, ChatSessionRecord] = {}
        for session_id in self._index.session_ids():
            stored = await self.cache.get_session(session_id)
            if stored is not None:
                sessions[session_id] = stored
            elif session_id in self._metas and session_id in self._messages:
                sessions[session_id] = self._snapshot_record(session_id)

        return ChatSessionsExport(index=copy.deepcopy(self._index), sessions=sessions)

    async def import_sessions(
        self, payload: Union[ChatSessionsExport, Dict[str, Any]]
    ) -> bool:
        """Replace all local sessions with an export.

        Returns:
            False if the payload's format is not recognised
        """
        if isinstance(payload, dict):
            if payload.get("format") != EXPORT_FORMAT:
                logger.warning("Ignoring session import with format %r", payload.get("format"))
                return False
            payload = ChatSessionsExport.from_dict(payload)
        elif payload.format != EXPORT_FORMAT:
            logger.warning("Ignoring session import with format %r", payload.format)
            return False

        stale: List[str] = []
        if self._index is not None:
            stale = [sid for sid in self._index.session_ids() if sid not in payload.sessions]
        for session_id in list(self._messages) + stale:
            self._generations.bump(session_id)

        # Imported sessions belong to whoever is signed in now
        index = copy.deepcopy(payload.index)
        index.user_id = self.user_id
        self._clear_sessions()
        self._index = index

        for session_id in stale:
            await self.persist_queue.submit(lambda sid=session_id: self.cache.delete_session(sid))
        await self._persist_index()

        for session_id, record in payload.sessions.items():
            record = copy.deepcopy(record)
            self._metas[session_id] = record.meta
            self._messages[session_id] = record.messages
            self._generations.get(session_id)
            self._loaded.add(session_id)
            await self.persist_queue.submit(
                lambda sid=session_id, rec=record: self.cache.save_session(sid, rec)
            )

        logger.info("Imported %d sessions", len(payload.sessions))
        await self._ensure_active_session_for_character()
        return True

    # =========================================================================
    # Remote pull
    # =========================================================================

    async def pull_remote_sessions(self) -> List[str]:
        """Reconcile remote chat metas and hydrate the bootstrap selection.

        Returns:
            Ids of the sessions that were hydrated
        """
        if self.hub is None:
            return []

        remote_metas = await self.hub.list_chats(limit=self.settings.remote_list_limit)
        for remote in remote_metas:
            self._reconcile_remote_meta(remote)

        selected = select_bootstrap_sessions(
            remote_metas,
            self.character_id,
            self.active_session_id or self._indexed_active_session_id(),
            limit=self.settings.bootstrap_limit,
            default_character_id=self.settings.default_character_id,
        )

        hydrated = []
        try:
            for session_id in selected:
                if await self.hydrate_session_from_remote(session_id):
                    hydrated.append(session_id)
        finally:
            # Reconciled remote metas are kept even if a hydration fails
            await self._persist_index()

        logger.debug("Pulled %d remote chats, hydrated %s", len(remote_metas), hydrated)
        return hydrated

    async def hydrate_session_from_remote(self, session_id: str) -> bool:
        """Replace a session with the Hub's snapshot unless the local copy is ahead.

        Local state includes edits still queued for the cache. Nothing is
        touched when the session's generation moves while the snapshot is in
        flight.

        Returns:
            True if the session was replaced
        """
        if self.hub is None:
            return False

        token = self._generations.capture(session_id)
        try:
            snapshot = await self.hub.get_chat_snapshot(
                session_id, limit=self.settings.snapshot_limit
            )
        except HubError as e:
            if e.is_retryable:
                raise
            logger.debug("Snapshot of %s unavailable: %s", session_id, e)
            return False
        if snapshot is None:
            return False

        remote = remote_meta_to_session_meta(
            snapshot.chat, self.user_id, self.settings.default_character_id
        )
        local = await self._latest_local_meta(session_id)

        if not self._generations.is_current(token):
            logger.debug("Discarding stale snapshot of %s", session_id)
            return False
        if local is not None and not should_hydrate(local, remote):
            logger.debug("Keeping local session %s: newer than remote", session_id)
            return False

        self._reconcile_remote_meta(snapshot.chat)
        self._messages[session_id] = [
            ChatItem(
                id=message.id,
                role=message.role,
                content=message.content,
                created_at=message.created_at,
            )
            for message in snapshot.messages
        ]
        self._generations.get(session_id)

        record = self._snapshot_record(session_id)
        await self.persist_queue.submit(lambda: self.cache.save_session(session_id, record))
        self._loaded.add(session_id)
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _initial_message(self) -> ChatItem:
        return ChatItem(
            role="system",
            content=CODE_BLOCK_PROMPT + MATH_SYNTAX_PROMPT + self.settings.system_prompt,
            id=str(uuid.uuid4()),
            created_at=now_ms(),
        )

    def _clear_sessions(self) -> None:
        self._messages.clear()
        self._metas.clear()
        self._loaded.clear()
        self._loading.clear()

    def _indexed_active_session_id(self) -> str:
        if self._index is None:
            return ""
        character = self._index.characters.get(self.character_id)
        return character.active_session_id if character else ""

    async def _latest_local_meta(self, session_id: str) -> Optional[ChatSessionMeta]:
        """Newest local meta of a session, counting queued and in-memory edits."""
        await self.persist_queue.drain()
        stored = await self.cache.get_session(session_id)

        candidates = [stored.meta] if stored is not None else []
        if session_id in self._loaded and session_id in self._metas:
            candidates.append(self._metas[session_id])
        return max(candidates, key=lambda meta: meta.updated_at, default=None)

    async def _load_index_for_user(self, user_id: str) -> None:
        stored = await self.cache.get_index(user_id)
        self._index = stored or ChatSessionsIndex(user_id=user_id)

    async def _ensure_active_session_for_character(self) -> None:
        if self._index is None or self._index.user_id != self.user_id:
            await self._load_index_for_user(self.user_id)

        active = self._indexed_active_session_id()
        if not active:
            await self.create_session(self.character_id)
            return

        self.active_session_id = active
        await self.load_session(active)
        self.ensure_session(active)

    def _reconcile_remote_meta(self, remote: ChatMeta) -> None:
        incoming = remote_meta_to_session_meta(
            remote, self.user_id, self.settings.default_character_id
        )
        self._metas[incoming.session_id] = reconcile_meta(
            self._metas.get(incoming.session_id), incoming
        )
        self._upsert_meta_into_index(incoming)

    def _upsert_meta_into_index(self, meta: ChatSessionMeta) -> None:
        if self._index is None:
            return
        character = self._index.characters.setdefault(
            meta.character_id, CharacterSessions(active_session_id=meta.session_id)
        )
        character.sessions[meta.session_id] = reconcile_meta(
            character.sessions.get(meta.session_id), meta
        )
        if not character.active_session_id:
            character.active_session_id = meta.session_id

    def _ensure_message_ids(self, session_id: str) -> List[ChatItem]:
        messages = self._messages.get(session_id, [])
        if any(item.id is None for item in messages):
            messages = [
                item if item.id else replace(item, id=str(uuid.uuid4())) for item in messages
            ]
            self._messages[session_id] = messages
        return messages

    def _snapshot_record(self, session_id: str) -> ChatSessionRecord:
        return ChatSessionRecord(
            meta=replace(self._metas[session_id]),
            messages=copy.deepcopy(self._messages.get(session_id, [])),
        )

    def _persist_index(self) -> Optional[asyncio.Task]:
        """Queue a snapshot of the index as one cache write."""
        if self._index is None:
            return None
        snapshot = copy.deepcopy(self._index)
        return self.persist_queue.submit(lambda: self.cache.save_index(snapshot))

    def _persist_session(self, session_id: str) -> Optional[asyncio.Task]:
        meta = self._metas.get(session_id)
        if meta is None:
            return None

        self._ensure_message_ids(session_id)
        updated = replace(meta, updated_at=max(now_ms(), meta.updated_at))
        self._metas[session_id] = updated
        character = self._index.characters.get(meta.character_id) if self._index else None
        if character is not None:
            character.sessions[session_id] = updated

        record = self._snapshot_record(session_id)
        persisted = self.persist_queue.submit(lambda: self.cache.save_session(session_id, record))
        self._persist_index()
        self._schedule_sync(session_id, after=persisted)
        return persisted

    def _schedule_sync(
        self, session_id: str, after: Optional[asyncio.Task] = None
    ) -> Optional[asyncio.Task]:
        if self.hub is None:
            return None
        return self.sync_queue.submit(lambda: self._sync_task(session_id, after))

    async def _sync_task(self, session_id: str, after: Optional[asyncio.Task]) -> None:
        if after is not None and not after.done():
            # Push only what has reached the cache
            await asyncio.wait([after])
        try:
            await self._sync_session_to_remote(session_id)
        except NETWORK_ERRORS as e:
            logger.warning("Failed to sync chat session %s: %s", session_id, e)

    async def _sync_session_to_remote(self, session_id: str) -> None:
        record = await self.cache.get_session(session_id)
        if record is None or self.hub is None:
            return

        await self.hub.sync_chat(self._build_sync_request(record))
        logger.debug("Synced session %s (%d messages)", session_id, len(record.messages))

    def _build_sync_request(self, record: ChatSessionRecord) -> ChatSyncRequest:
        meta = record.meta
        members = [SyncChatMember(type="user", user_id=self.user_id)]
        if meta.character_id and meta.character_id != self.settings.default_character_id:
            members.append(SyncChatMember(type="character", character_id=meta.character_id))

        return ChatSyncRequest(
            chat=SyncChatInfo(
                id=meta.session_id,
                type="group",
                title=meta.title,
                created_at=meta.created_at,
                updated_at=meta.updated_at,
            ),
            members=members,
            messages=[
                SyncChatMessage(
                    id=item.id,
                    role=item.role,
                    content=item.text,
                    created_at=item.created_at,
                )
                for item in record.messages
            ],
        )
