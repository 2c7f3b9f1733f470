"""Shared Pydantic models for Hub/client chat sync contracts.

These models define the canonical schema for:
- The sync payload pushed by clients (POST /chats/sync)
- Chat metadata returned by list/delta/snapshot reads
- Message pages and soft-delete receipts

Field names are snake_case in Python and camelCase on the wire. All
timestamps are integer epoch milliseconds.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChatType = Literal["private", "bot", "group", "channel"]
MessageRole = Literal["system", "user", "assistant", "tool", "error"]
MemberType = Literal["user", "character", "bot"]

Timestamp = int


class WireModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Dump using wire (camelCase) keys, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Sync payload ---


class SyncChatInfo(WireModel):
    """Chat fields carried by a sync payload.

    Only fields explicitly present in the payload are applied to an existing
    chat (see `model_fields_set`).
    """

    id: str = Field(min_length=1)
    type: Optional[ChatType] = None
    title: Optional[str] = None
    created_at: Optional[Timestamp] = Field(default=None, ge=0)
    updated_at: Optional[Timestamp] = Field(default=None, ge=0)


class SyncChatMember(WireModel):
    """Member declared by a sync payload."""

    type: MemberType
    user_id: Optional[str] = None
    character_id: Optional[str] = None


class SyncChatMessage(WireModel):
    """Message upserted by a sync payload."""

    id: str = Field(min_length=1)
    role: MessageRole
    content: str
    created_at: Optional[Timestamp] = Field(default=None, ge=0)


class ChatSyncRequest(WireModel):
    """Full sync payload for one chat."""

    chat: SyncChatInfo
    members: Optional[List[SyncChatMember]] = None
    messages: List[SyncChatMessage]


class ChatSyncResponse(WireModel):
    """Result of a successful sync."""

    chat_id: str


# --- Reads ---


class ChatMeta(WireModel):
    """Chat metadata, annotated with its first character member."""

    id: str
    type: ChatType
    title: Optional[str] = None
    created_at: Timestamp
    updated_at: Timestamp
    deleted_at: Optional[Timestamp] = None
    character_id: Optional[str] = None


class ChatMessageInfo(WireModel):
    """Message as returned by paginated reads."""

    id: str
    role: MessageRole
    content: str
    created_at: Timestamp


class ChatSnapshot(WireModel):
    """Chat metadata plus one page of messages (oldest first)."""

    chat: ChatMeta
    messages: List[ChatMessageInfo]


class ChatDelta(WireModel):
    """Chats changed or tombstoned since a watermark."""

    chats: List[ChatMeta] = Field(default_factory=list)
    deleted_chat_ids: List[str] = Field(default_factory=list)


class ChatDeletion(WireModel):
    """Receipt returned by a soft delete."""

    chat_id: str
    deleted_at: Timestamp
