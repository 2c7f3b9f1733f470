"""API routers for the Hub."""

from .chats import router as chats_router

__all__ = [
    "chats_router",
]
