"""Shared error types for Hub and client.

These exceptions provide consistent error handling across the system.
Each error type maps to a specific HTTP status code and error code; the Hub
converts them into JSON responses at the routing boundary.
"""

from typing import Optional


class ChatSyncError(Exception):
    """Base exception for all chat sync errors."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Serialize the error into the JSON error body."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ChatSyncError):
    """Raised when a request is malformed or out of range.

    HTTP: 400 Bad Request
    """

    status_code = 400
    error_code = "INVALID_REQUEST"

    def __init__(self, message: str = "Invalid Request", issues: Optional[list] = None):
        details = {"issues": issues} if issues else None
        super().__init__(message, details)
        self.issues = issues or []


class ForbiddenError(ChatSyncError):
    """Raised when the caller lacks a `user` membership on a chat.

    HTTP: 403 Forbidden
    """

    status_code = 403
    error_code = "FORBIDDEN"

    def __init__(self, chat_id: str, user_id: Optional[str] = None):
        details = {"chat_id": chat_id}
        if user_id:
            details["user_id"] = user_id
        super().__init__(f"Not a member of chat: {chat_id}", details)
        self.chat_id = chat_id


class ConflictError(ChatSyncError):
    """Raised when a message id is already bound to a different chat.

    HTTP: 409 Conflict
    """

    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, message_id: str, existing_chat_id: str, target_chat_id: str):
        message = (
            f"Message {message_id} already belongs to another chat"
            f" ({existing_chat_id}), cannot bind it to {target_chat_id}"
        )
        details = {
            "message_id": message_id,
            "existing_chat_id": existing_chat_id,
            "target_chat_id": target_chat_id,
        }
        super().__init__(message, details)
        self.message_id = message_id


class NotFoundError(ChatSyncError):
    """Raised when a chat is absent or tombstoned.

    HTTP: 404 Not Found
    """

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, chat_id: str):
        super().__init__(f"Chat not found: {chat_id}", {"chat_id": chat_id})
        self.chat_id = chat_id
