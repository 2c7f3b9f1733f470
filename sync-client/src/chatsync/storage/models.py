"""Local session records, index and export envelope.

Everything here serializes to camelCase dicts, the same shape used by the
local cache and by session exports.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

EXPORT_FORMAT = "chat-sessions-index:v1"

Content = Union[str, List[Any]]


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def content_text(content: Content) -> str:
    """Flatten message content (string or list of parts) to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and "text" in part:
                parts.append(str(part.get("text") or ""))
        return "".join(parts)
    return ""


@dataclass
class ChatItem:
    """One message in a local session."""

    role: str
    content: Content
    id: Optional[str] = None
    created_at: Optional[int] = None

    @property
    def text(self) -> str:
        return content_text(self.content)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.id is not None:
            data["id"] = self.id
        if self.created_at is not None:
            data["createdAt"] = self.created_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatItem":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            id=data.get("id"),
            created_at=data.get("createdAt"),
        )


@dataclass
class ChatSessionMeta:
    """Local projection of a remote chat, scoped to a character."""

    session_id: str
    user_id: str
    character_id: str
    created_at: int
    updated_at: int
    title: Optional[str] = None
    deleted_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "characterId": self.character_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.title is not None:
            data["title"] = self.title
        if self.deleted_at is not None:
            data["deletedAt"] = self.deleted_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSessionMeta":
        return cls(
            session_id=data["sessionId"],
            user_id=data["userId"],
            character_id=data["characterId"],
            created_at=data["createdAt"],
            updated_at=data["updatedAt"],
            title=data.get("title"),
            deleted_at=data.get("deletedAt"),
        )


@dataclass
class ChatSessionRecord:
    """A session's metadata plus its ordered messages."""

    meta: ChatSessionMeta
    messages: List[ChatItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meta": self.meta.to_dict(),
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSessionRecord":
        return cls(
            meta=ChatSessionMeta.from_dict(data["meta"]),
            messages=[ChatItem.from_dict(item) for item in data.get("messages", [])],
        )


@dataclass
class CharacterSessions:
    """Sessions belonging to one character and which one is active."""

    active_session_id: str = ""
    sessions: Dict[str, ChatSessionMeta] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activeSessionId": self.active_session_id,
            "sessions": {sid: meta.to_dict() for sid, meta in self.sessions.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterSessions":
        return cls(
            active_session_id=data.get("activeSessionId", ""),
            sessions={
                sid: ChatSessionMeta.from_dict(meta)
                for sid, meta in data.get("sessions", {}).items()
            },
        )


@dataclass
class ChatSessionsIndex:
    """Per-user index of sessions grouped by character."""

    user_id: str
    characters: Dict[str, CharacterSessions] = field(default_factory=dict)

    def session_ids(self) -> List[str]:
        """All session ids across characters."""
        return [sid for character in self.characters.values() for sid in character.sessions]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "characters": {cid: chars.to_dict() for cid, chars in self.characters.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSessionsIndex":
        return cls(
            user_id=data["userId"],
            characters={
                cid: CharacterSessions.from_dict(chars)
                for cid, chars in data.get("characters", {}).items()
            },
        )


@dataclass
class ChatSessionsExport:
    """Bulk export envelope."""

    index: ChatSessionsIndex
    sessions: Dict[str, ChatSessionRecord] = field(default_factory=dict)
    format: str = EXPORT_FORMAT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "index": self.index.to_dict(),
            "sessions": {sid: record.to_dict() for sid, record in self.sessions.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSessionsExport":
        return cls(
            format=data.get("format", ""),
            index=ChatSessionsIndex.from_dict(data["index"]),
            sessions={
                sid: ChatSessionRecord.from_dict(record)
                for sid, record in data.get("sessions", {}).items()
            },
        )
