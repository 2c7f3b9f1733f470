"""Chat read paths: list, delta, snapshot, message pages and soft delete.

Message pages are cursor based: rows are fetched newest-first with a strict
`created_at < before_created_at` bound, then reversed so responses are
oldest-first. The next page's cursor is the `created_at` of the oldest item
in the previous page.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.contracts import ChatDeletion, ChatDelta, ChatMessageInfo, ChatMeta, ChatSnapshot
from shared.errors import ForbiddenError, NotFoundError

from ..database import Chat, ChatMember, ChatMessage, now_ms
from .chat_sync import has_user_membership

logger = logging.getLogger(__name__)

# Chat list / delta pages
DEFAULT_CHAT_LIMIT = 50
DEFAULT_DELTA_LIMIT = 200
MAX_CHAT_LIMIT = 200

# Message pages
DEFAULT_MESSAGE_LIMIT = 200
MAX_MESSAGE_LIMIT = 1000


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    """Clamp a requested page size into [1, maximum]."""
    if limit is None:
        return default
    return min(max(limit, 1), maximum)


def to_chat_meta(chat: Chat, character_id: Optional[str] = None) -> ChatMeta:
    """Convert a Chat row to its wire representation."""
    return ChatMeta(
        id=chat.id,
        type=chat.type,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        deleted_at=chat.deleted_at,
        character_id=character_id,
    )


def _user_membership_join(user_id: str):
    return and_(
        ChatMember.chat_id == Chat.id,
        ChatMember.member_type == "user",
        ChatMember.user_id == user_id,
    )


class ChatQueryService:
    """Membership-checked reads over the chat tables."""

    def __init__(self, session_factory: async_sessionmaker):
        """Initialize the query service.

        Args:
            session_factory: Factory producing async database sessions
        """
        self.session_factory = session_factory

    async def list_chats(
        self,
        user_id: str,
        limit: Optional[int] = None,
        before_updated_at: Optional[int] = None,
    ) -> List[ChatMeta]:
        """List live chats the user belongs to, most recently updated first.

        Args:
            user_id: Authenticated caller
            limit: Page size in [1, 200] (default 50)
            before_updated_at: Strict upper bound on updated_at (cursor)

        Returns:
            Chat metas annotated with their first character member
        """
        limit = clamp_limit(limit, DEFAULT_CHAT_LIMIT, MAX_CHAT_LIMIT)

        query = (
            select(Chat)
            .join(ChatMember, _user_membership_join(user_id))
            .where(Chat.deleted_at.is_(None))
        )
        if before_updated_at is not None:
            query = query.where(Chat.updated_at < before_updated_at)

        async with self.session_factory() as db:
            result = await db.execute(
                query.order_by(Chat.updated_at.desc(), Chat.id.desc()).limit(limit)
            )
            chats = result.scalars().all()
            character_ids = await self._character_ids(db, [chat.id for chat in chats])

        return [to_chat_meta(chat, character_ids.get(chat.id)) for chat in chats]

    async def list_chat_delta(
        self,
        user_id: str,
        since_updated_at: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> ChatDelta:
        """List chats changed or tombstoned after a watermark.

        Results are ordered by updated_at ascending so a client can advance
        its watermark to the last chat returned and resume from there.

        Args:
            user_id: Authenticated caller
            since_updated_at: Watermark (exclusive); defaults to 0
            limit: Page size in [1, 200] (default 200)

        Returns:
            Changed chats (tombstones included) and the ids tombstoned since
            the watermark
        """
        since = since_updated_at or 0
        limit = clamp_limit(limit, DEFAULT_DELTA_LIMIT, MAX_CHAT_LIMIT)

        query = (
            select(Chat)
            .join(ChatMember, _user_membership_join(user_id))
            .where(
                or_(
                    Chat.updated_at > since,
                    and_(Chat.deleted_at.is_not(None), Chat.deleted_at > since),
                )
            )
            .order_by(Chat.updated_at.asc(), Chat.id.asc())
            .limit(limit)
        )

        async with self.session_factory() as db:
            chats = (await db.execute(query)).scalars().all()
            character_ids = await self._character_ids(db, [chat.id for chat in chats])

        return ChatDelta(
            chats=[to_chat_meta(chat, character_ids.get(chat.id)) for chat in chats],
            deleted_chat_ids=[
                chat.id
                for chat in chats
                if chat.deleted_at is not None and chat.deleted_at > since
            ],
        )

    async def get_chat_snapshot(
        self,
        user_id: str,
        chat_id: str,
        limit: Optional[int] = None,
        before_created_at: Optional[int] = None,
    ) -> Optional[ChatSnapshot]:
        """Read chat metadata plus one page of messages.

        Returns:
            The snapshot, or None if the chat is absent or tombstoned

        Raises:
            ForbiddenError: The caller is not a member of the chat
        """
        async with self.session_factory() as db:
            await self._ensure_membership(db, user_id, chat_id)

            chat = await db.scalar(
                select(Chat).where(Chat.id == chat_id, Chat.deleted_at.is_(None))
            )
            if chat is None:
                return None

            character_ids = await self._character_ids(db, [chat_id])
            messages = await self._list_messages_by_cursor(db, chat_id, limit, before_created_at)

        return ChatSnapshot(
            chat=to_chat_meta(chat, character_ids.get(chat_id)),
            messages=messages,
        )

    async def list_chat_messages(
        self,
        user_id: str,
        chat_id: str,
        limit: Optional[int] = None,
        before_created_at: Optional[int] = None,
    ) -> List[ChatMessageInfo]:
        """Read one page of messages, oldest first.

        Raises:
            ForbiddenError: The caller is not a member of the chat
        """
        async with self.session_factory() as db:
            await self._ensure_membership(db, user_id, chat_id)
            return await self._list_messages_by_cursor(db, chat_id, limit, before_created_at)

    async def soft_delete_chat(self, user_id: str, chat_id: str) -> ChatDeletion:
        """Tombstone a chat.

        Deleting an already tombstoned chat returns its original deletion
        timestamp.

        Raises:
            ForbiddenError: The caller is not a member of the chat
        """
        async with self.session_factory() as db:
            async with db.begin():
                await self._ensure_membership(db, user_id, chat_id)

                chat = await db.scalar(select(Chat).where(Chat.id == chat_id))
                if chat is None:
                    raise NotFoundError(chat_id)

                if chat.deleted_at is None:
                    now = now_ms()
                    chat.deleted_at = now
                    chat.updated_at = max(chat.updated_at, now)
                    logger.info("Tombstoned chat %s for user %s", chat_id, user_id)

                deletion = ChatDeletion(chat_id=chat_id, deleted_at=chat.deleted_at)

        return deletion

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _ensure_membership(self, db: AsyncSession, user_id: str, chat_id: str) -> None:
        if not await has_user_membership(db, chat_id, user_id):
            raise ForbiddenError(chat_id, user_id)

    async def _character_ids(self, db: AsyncSession, chat_ids: List[str]) -> Dict[str, str]:
        """Map chat id -> first character member id."""
        if not chat_ids:
            return {}

        result = await db.execute(
            select(ChatMember.chat_id, ChatMember.character_id)
            .where(
                ChatMember.chat_id.in_(chat_ids),
                ChatMember.member_type == "character",
                ChatMember.character_id.is_not(None),
            )
            .order_by(ChatMember.id)
        )

        character_ids: Dict[str, str] = {}
        for chat_id, character_id in result.all():
            character_ids.setdefault(chat_id, character_id)
        return character_ids

    async def _list_messages_by_cursor(
        self,
        db: AsyncSession,
        chat_id: str,
        limit: Optional[int],
        before_created_at: Optional[int],
    ) -> List[ChatMessageInfo]:
        limit = clamp_limit(limit, DEFAULT_MESSAGE_LIMIT, MAX_MESSAGE_LIMIT)

        query = select(ChatMessage).where(
            ChatMessage.chat_id == chat_id,
            ChatMessage.deleted_at.is_(None),
        )
        if before_created_at is not None:
            query = query.where(ChatMessage.created_at < before_created_at)

        result = await db.execute(
            query.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit)
        )
        newest_first = result.scalars().all()

        return [
            ChatMessageInfo(
                id=message.id,
                role=message.role,
                content=message.content,
                created_at=message.created_at,
            )
            for message in reversed(newest_first)
        ]
