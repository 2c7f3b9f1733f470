"""Database setup and models."""

import time
from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .config import settings


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Chat(Base):
    """Chat (conversation). Soft-deleted only so deltas can report removals."""

    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(16), default="group")  # private, bot, group, channel
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps (epoch ms)
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms, index=True)
    deleted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)

    # Relationships
    members: Mapped[list["ChatMember"]] = relationship(back_populates="chat")
    messages: Mapped[list["ChatMessage"]] = relationship(back_populates="chat")


class ChatMember(Base):
    """Chat membership. Identity is (chat_id, member_type, user_id|character_id)."""

    __tablename__ = "chat_members"
    __table_args__ = (
        UniqueConstraint("chat_id", "member_type", "user_id", "character_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(ForeignKey("chats.id"), index=True)
    member_type: Mapped[str] = mapped_column(String(16))  # user, character, bot
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    character_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    chat: Mapped["Chat"] = relationship(back_populates="members")


class ChatMessage(Base):
    """Message in a chat. Ids are globally unique across chats."""

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_chat_created", "chat_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    chat_id: Mapped[str] = mapped_column(ForeignKey("chats.id"), index=True)
    sender_id: Mapped[str] = mapped_column(String(64))

    # Content
    role: Mapped[str] = mapped_column(String(16))  # system, user, assistant, tool, error
    content: Mapped[str] = mapped_column(Text)

    # Timestamps (epoch ms); created_at never changes after insert
    created_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    deleted_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    chat: Mapped["Chat"] = relationship(back_populates="messages")


# Database engine and session factory (created lazily)
_engine = None
_session_factory = None


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        connect_args = {}
        if settings.is_sqlite:
            # Writers wait this long for a concurrent sync to commit
            connect_args["timeout"] = settings.database_busy_timeout_seconds
        _engine = create_async_engine(
            settings.database_url, echo=settings.debug, connect_args=connect_args
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Get or create the session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db():
    """Initialize database tables."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    """Dependency to get database session."""
    factory = get_session_factory()
    async with factory() as session:
        yield session


async def dispose_engine() -> None:
    """Dispose the global SQLAlchemy engine (if created)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def reset_engine():
    """Reset engine for testing - allows reconfiguration."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
