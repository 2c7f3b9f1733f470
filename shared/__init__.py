"""Shared contracts and errors for Hub and client.

This module provides:
- Pydantic models for the chat sync API payloads
- Error types mapped to HTTP status codes

Both the Hub (sync-hub) and the client (sync-client) import from this module
to ensure consistent contracts.
"""

from .contracts import (
    ChatDeletion,
    ChatDelta,
    ChatMessageInfo,
    ChatMeta,
    ChatSnapshot,
    ChatSyncRequest,
    ChatSyncResponse,
    SyncChatInfo,
    SyncChatMember,
    SyncChatMessage,
)
from .errors import (
    ChatSyncError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    # Contracts
    "ChatDeletion",
    "ChatDelta",
    "ChatMessageInfo",
    "ChatMeta",
    "ChatSnapshot",
    "ChatSyncRequest",
    "ChatSyncResponse",
    "SyncChatInfo",
    "SyncChatMember",
    "SyncChatMessage",
    # Errors
    "ChatSyncError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "ValidationError",
]
