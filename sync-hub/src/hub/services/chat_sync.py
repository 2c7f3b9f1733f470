"""Sync merge engine - applies client sync payloads to durable storage.

Each `sync_chat` call runs in a single transaction:
- Creates the chat or partially updates it (only supplied fields)
- Adds missing memberships (never removes any)
- Upserts messages by globally unique id

Resubmitting an identical payload only moves `updated_at` columns.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.contracts import (
    ChatSyncRequest,
    ChatSyncResponse,
    SyncChatInfo,
    SyncChatMember,
    SyncChatMessage,
)
from shared.errors import ConflictError, ForbiddenError

from ..database import Chat, ChatMember, ChatMessage, now_ms

logger = logging.getLogger(__name__)

DEFAULT_CHAT_TYPE = "group"


def resolve_sender_id(role: str, user_id: str, character_id: Optional[str]) -> str:
    """Pick the sender id stored with a message.

    User messages belong to the caller. Everything else is attributed to the
    chat's character, falling back to the literal role name.
    """
    if role == "user":
        return user_id
    return character_id or role


def pick_character_id(members: Iterable[SyncChatMember]) -> Optional[str]:
    """Return the first character member id declared in a payload."""
    for member in members:
        if member.type == "character" and member.character_id:
            return member.character_id
    return None


def member_identity(member: SyncChatMember) -> Optional[Tuple[str, str]]:
    """Return the (column, value) pair identifying a member within a chat.

    Returns None when the member carries no usable id and must be skipped.
    """
    if member.type == "user":
        return ("user_id", member.user_id) if member.user_id else None
    if member.type == "character":
        return ("character_id", member.character_id) if member.character_id else None
    # Bots are keyed by character id when present, else by user id
    if member.character_id:
        return ("character_id", member.character_id)
    if member.user_id:
        return ("user_id", member.user_id)
    return None


async def has_user_membership(db: AsyncSession, chat_id: str, user_id: str) -> bool:
    """Check whether a user holds a `user` membership on a chat."""
    member_id = await db.scalar(
        select(ChatMember.id).where(
            ChatMember.chat_id == chat_id,
            ChatMember.member_type == "user",
            ChatMember.user_id == user_id,
        ).limit(1)
    )
    return member_id is not None


async def first_character_id(db: AsyncSession, chat_id: str) -> Optional[str]:
    """Return the earliest stored character member id of a chat."""
    return await db.scalar(
        select(ChatMember.character_id)
        .where(
            ChatMember.chat_id == chat_id,
            ChatMember.member_type == "character",
            ChatMember.character_id.is_not(None),
        )
        .order_by(ChatMember.id)
        .limit(1)
    )


class SyncMergeEngine:
    """Merges inbound sync payloads into the chat tables."""

    def __init__(self, session_factory: async_sessionmaker):
        """Initialize the engine.

        Args:
            session_factory: Factory producing async database sessions
        """
        self.session_factory = session_factory

    async def sync_chat(self, user_id: str, payload: ChatSyncRequest) -> ChatSyncResponse:
        """Apply a sync payload atomically.

        If another writer inserts the same chat or message id between our
        read and our insert, the payload is merged once more against the
        committed rows.

        Args:
            user_id: Authenticated caller
            payload: Chat, members and messages to merge

        Returns:
            The synced chat id

        Raises:
            ForbiddenError: The chat exists and the caller is not a member
            ConflictError: A message id already belongs to another chat
        """
        chat_id = payload.chat.id
        try:
            created, added_members = await self._merge(user_id, payload)
        except IntegrityError as e:
            logger.info("Concurrent insert while syncing chat %s, merging again: %s", chat_id, e.orig)
            created, added_members = await self._merge(user_id, payload)

        logger.info(
            "Synced chat %s for user %s (created=%s, new_members=%d, messages=%d)",
            chat_id,
            user_id,
            created,
            added_members,
            len(payload.messages),
        )
        return ChatSyncResponse(chat_id=chat_id)

    async def _merge(self, user_id: str, payload: ChatSyncRequest) -> Tuple[bool, int]:
        """Run one merge transaction. Returns (created, added_members)."""
        chat_id = payload.chat.id
        members = payload.members or []

        async with self.session_factory() as db:
            async with db.begin():
                now = now_ms()
                chat = await db.scalar(select(Chat).where(Chat.id == chat_id))

                if chat is None:
                    db.add(self._new_chat(payload.chat, now))
                    created = True
                else:
                    if not await has_user_membership(db, chat_id, user_id):
                        raise ForbiddenError(chat_id, user_id)
                    self._apply_chat_update(chat, payload.chat, now)
                    created = False

                added_members = await self._merge_members(db, chat_id, user_id, members)

                character_id = pick_character_id(members)
                if character_id is None:
                    character_id = await first_character_id(db, chat_id)

                for message in payload.messages:
                    await self._upsert_message(db, chat_id, user_id, character_id, message, now)

        return created, added_members

    # =========================================================================
    # Chat
    # =========================================================================

    @staticmethod
    def _new_chat(info: SyncChatInfo, now: int) -> Chat:
        return Chat(
            id=info.id,
            type=info.type or DEFAULT_CHAT_TYPE,
            title=info.title,
            created_at=info.created_at if info.created_at is not None else now,
            updated_at=info.updated_at if info.updated_at is not None else now,
        )

    @staticmethod
    def _apply_chat_update(chat: Chat, info: SyncChatInfo, now: int) -> None:
        """Apply only the fields present in the payload."""
        if info.type is not None:
            chat.type = info.type
        if "title" in info.model_fields_set:
            chat.title = info.title

        incoming = info.updated_at if info.updated_at is not None else now
        # Never move updated_at backwards
        chat.updated_at = max(chat.updated_at, incoming)

    # =========================================================================
    # Members
    # =========================================================================

    async def _merge_members(
        self,
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        members: List[SyncChatMember],
    ) -> int:
        """Insert missing memberships. Returns the number added."""
        desired = [SyncChatMember(type="user", user_id=user_id)]
        desired.extend(member for member in members if member.type != "user")

        added = 0
        for member in desired:
            identity = member_identity(member)
            if identity is None:
                logger.debug("Skipping %s member without id in chat %s", member.type, chat_id)
                continue

            column, value = identity
            existing = await db.scalar(
                select(ChatMember.id).where(
                    ChatMember.chat_id == chat_id,
                    ChatMember.member_type == member.type,
                    getattr(ChatMember, column) == value,
                ).limit(1)
            )
            if existing is not None:
                continue

            db.add(
                ChatMember(
                    chat_id=chat_id,
                    member_type=member.type,
                    user_id=value if column == "user_id" else None,
                    character_id=value if column == "character_id" else None,
                )
            )
            added += 1
        return added

    # =========================================================================
    # Messages
    # =========================================================================

    async def _upsert_message(
        self,
        db: AsyncSession,
        chat_id: str,
        user_id: str,
        character_id: Optional[str],
        message: SyncChatMessage,
        now: int,
    ) -> None:
        sender_id = resolve_sender_id(message.role, user_id, character_id)
        existing = await db.scalar(select(ChatMessage).where(ChatMessage.id == message.id))

        if existing is not None:
            if existing.chat_id != chat_id:
                raise ConflictError(message.id, existing.chat_id, chat_id)

            # created_at is immutable once set
            existing.sender_id = sender_id
            existing.role = message.role
            existing.content = message.content
            existing.updated_at = max(existing.updated_at, now)
            return

        db.add(
            ChatMessage(
                id=message.id,
                chat_id=chat_id,
                sender_id=sender_id,
                role=message.role,
                content=message.content,
                created_at=message.created_at if message.created_at is not None else now,
                updated_at=now,
            )
        )
