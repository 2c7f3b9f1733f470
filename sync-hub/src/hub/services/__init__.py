"""Chat sync services used by the Hub routers."""

from .chat_queries import ChatQueryService
from .chat_sync import SyncMergeEngine

__all__ = [
    "ChatQueryService",
    "SyncMergeEngine",
]
