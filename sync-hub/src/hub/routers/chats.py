"""Chat sync endpoints.

Query parameters and JSON bodies use camelCase names; timestamps are epoch
milliseconds. Service errors (403/404/409) are converted to JSON responses by
the app-level exception handlers.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from shared.contracts import (
    ChatDeletion,
    ChatDelta,
    ChatMessageInfo,
    ChatMeta,
    ChatSnapshot,
    ChatSyncRequest,
    ChatSyncResponse,
)
from shared.errors import NotFoundError

from ..auth import get_current_user_id
from ..database import get_session_factory
from ..services import ChatQueryService, SyncMergeEngine
from ..services.chat_queries import MAX_CHAT_LIMIT, MAX_MESSAGE_LIMIT

router = APIRouter(prefix="/chats", tags=["chats"])


def get_query_service() -> ChatQueryService:
    """Dependency providing the chat query service."""
    return ChatQueryService(get_session_factory())


def get_sync_engine() -> SyncMergeEngine:
    """Dependency providing the sync merge engine."""
    return SyncMergeEngine(get_session_factory())


@router.get("", response_model=List[ChatMeta], response_model_exclude_none=True)
async def list_chats(
    user_id: str = Depends(get_current_user_id),
    service: ChatQueryService = Depends(get_query_service),
    limit: Optional[int] = Query(None, ge=1, le=MAX_CHAT_LIMIT),
    before_updated_at: Optional[int] = Query(None, ge=0, alias="beforeUpdatedAt"),
):
    """List the caller's live chats, most recently updated first."""
    return await service.list_chats(user_id, limit=limit, before_updated_at=before_updated_at)


@router.get("/delta", response_model=ChatDelta, response_model_exclude_none=True)
async def list_chat_delta(
    user_id: str = Depends(get_current_user_id),
    service: ChatQueryService = Depends(get_query_service),
    since_updated_at: Optional[int] = Query(None, ge=0, alias="sinceUpdatedAt"),
    limit: Optional[int] = Query(None, ge=1, le=MAX_CHAT_LIMIT),
):
    """List chats changed or tombstoned since a watermark."""
    return await service.list_chat_delta(
        user_id, since_updated_at=since_updated_at, limit=limit
    )


@router.get("/{chat_id}/messages", response_model=List[ChatMessageInfo])
async def list_chat_messages(
    chat_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ChatQueryService = Depends(get_query_service),
    limit: Optional[int] = Query(None, ge=1, le=MAX_MESSAGE_LIMIT),
    before_created_at: Optional[int] = Query(None, ge=0, alias="beforeCreatedAt"),
):
    """Get one page of messages, oldest first."""
    return await service.list_chat_messages(
        user_id, chat_id, limit=limit, before_created_at=before_created_at
    )


@router.get("/{chat_id}/snapshot", response_model=ChatSnapshot, response_model_exclude_none=True)
async def get_chat_snapshot(
    chat_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ChatQueryService = Depends(get_query_service),
    limit: Optional[int] = Query(None, ge=1, le=MAX_MESSAGE_LIMIT),
    before_created_at: Optional[int] = Query(None, ge=0, alias="beforeCreatedAt"),
):
    """Get chat metadata plus a page of messages."""
    snapshot = await service.get_chat_snapshot(
        user_id, chat_id, limit=limit, before_created_at=before_created_at
    )
    if snapshot is None:
        raise NotFoundError(chat_id)
    return snapshot


@router.delete("/{chat_id}", response_model=ChatDeletion)
async def delete_chat(
    chat_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ChatQueryService = Depends(get_query_service),
):
    """Soft-delete (tombstone) a chat."""
    return await service.soft_delete_chat(user_id, chat_id)


@router.post("/sync", response_model=ChatSyncResponse)
async def sync_chat(
    request: ChatSyncRequest,
    user_id: str = Depends(get_current_user_id),
    engine: SyncMergeEngine = Depends(get_sync_engine),
):
    """Merge a chat, its members and messages from a client."""
    return await engine.sync_chat(user_id, request)
