"""HTTP client for the chat sync Hub."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.contracts import (
    ChatDeletion,
    ChatDelta,
    ChatMessageInfo,
    ChatMeta,
    ChatSnapshot,
    ChatSyncRequest,
    ChatSyncResponse,
)

logger = logging.getLogger(__name__)


def _normalize_hub_url(url: str) -> str:
    """Normalize Hub base URL.

    The HubClient expects a base URL at the server root (no /api suffix).
    Users often paste URLs like https://host/api; chat routes are mounted at
    the root so that suffix is dropped.
    """
    raw = (url or "").strip()
    if not raw:
        return raw

    parsed = urlparse(raw)
    path = (parsed.path or "").rstrip("/")
    if path in {"/api", "/api/v1"}:
        parsed = parsed._replace(path="")

    return urlunparse(parsed).rstrip("/")


@dataclass
class HubConfig:
    """Configuration for Hub connection."""
    url: str
    token: str
    timeout: float = 30.0

    def __post_init__(self) -> None:
        self.url = _normalize_hub_url(self.url)

    @classmethod
    def from_settings(cls, settings) -> Optional["HubConfig"]:
        """Create config from settings if Hub is configured."""
        hub = settings.hub
        if not hub.url or not hub.token:
            return None
        return cls(url=hub.url, token=hub.token, timeout=hub.timeout_seconds)


class HubError(Exception):
    """Error from Hub API."""
    def __init__(self, message: str, status_code: int = 0, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_retryable(self) -> bool:
        """Check if this error should be retried."""
        # Retry server errors (5xx) but not client errors (4xx)
        return self.status_code >= 500


class RetryableHubError(HubError):
    """Hub error that should be retried."""
    pass


# Retry configuration for idempotent Hub reads
_retry_config = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((RetryableHubError, httpx.TransportError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def _params(**values: Any) -> Dict[str, Any]:
    """Drop unset query parameters."""
    return {key: value for key, value in values.items() if value is not None}


class HubClient:
    """Client for the Hub's chat sync endpoints.

    Read calls retry server and transport errors. `sync_chat` is never
    retried here: a failed push is retried by the next local mutation.
    """

    def __init__(self, config: HubConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.url,
                headers={"Authorization": f"Bearer {self.config.token}"},
                timeout=self.config.timeout,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # Health
    # =========================================================================

    async def health(self) -> bool:
        """Check if Hub is healthy."""
        try:
            response = await self.client.get("/health")
            return response.status_code == 200
        except httpx.RequestError as e:
            logger.warning("Hub health check request error: %s", e)
            return False

    # =========================================================================
    # Chats
    # =========================================================================

    @_retry_config
    async def list_chats(
        self,
        limit: Optional[int] = None,
        before_updated_at: Optional[int] = None,
    ) -> List[ChatMeta]:
        """List live chats, most recently updated first.

        Args:
            limit: Page size in [1, 200]
            before_updated_at: Return chats updated strictly before this

        Returns:
            Chat metas
        """
        response = await self.client.get(
            "/chats",
            params=_params(limit=limit, beforeUpdatedAt=before_updated_at),
        )
        self._check_response(response)
        return [ChatMeta.model_validate(item) for item in response.json()]

    @_retry_config
    async def list_chat_delta(
        self,
        since_updated_at: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> ChatDelta:
        """List chats changed or tombstoned after a watermark."""
        response = await self.client.get(
            "/chats/delta",
            params=_params(sinceUpdatedAt=since_updated_at, limit=limit),
        )
        self._check_response(response)
        return ChatDelta.model_validate(response.json())

    @_retry_config
    async def get_chat_snapshot(
        self,
        chat_id: str,
        limit: Optional[int] = None,
        before_created_at: Optional[int] = None,
    ) -> Optional[ChatSnapshot]:
        """Fetch chat metadata plus a page of messages.

        Returns:
            The snapshot, or None if the chat is absent or tombstoned
        """
        response = await self.client.get(
            f"/chats/{chat_id}/snapshot",
            params=_params(limit=limit, beforeCreatedAt=before_created_at),
        )
        if response.status_code == 404:
            return None
        self._check_response(response)
        return ChatSnapshot.model_validate(response.json())

    @_retry_config
    async def list_chat_messages(
        self,
        chat_id: str,
        limit: Optional[int] = None,
        before_created_at: Optional[int] = None,
    ) -> List[ChatMessageInfo]:
        """Fetch one page of messages, oldest first.

        The next page's cursor is the `created_at` of the first item.
        """
        response = await self.client.get(
            f"/chats/{chat_id}/messages",
            params=_params(limit=limit, beforeCreatedAt=before_created_at),
        )
        self._check_response(response)
        return [ChatMessageInfo.model_validate(item) for item in response.json()]

    async def delete_chat(self, chat_id: str) -> ChatDeletion:
        """Tombstone a chat on the Hub."""
        response = await self.client.delete(f"/chats/{chat_id}")
        self._check_response(response)
        return ChatDeletion.model_validate(response.json())

    async def sync_chat(self, request: ChatSyncRequest) -> ChatSyncResponse:
        """Push a chat with its members and messages.

        Args:
            request: Sync payload

        Returns:
            The synced chat id

        Raises:
            HubError: The Hub rejected the payload (403 not a member,
                409 message id conflict, ...)
        """
        response = await self.client.post("/chats/sync", json=request.to_wire())
        self._check_response(response)
        return ChatSyncResponse.model_validate(response.json())

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_response(self, response: httpx.Response):
        """Check response for errors and raise HubError if needed.

        Raises RetryableHubError for 5xx errors (server errors).
        Raises HubError for 4xx errors (client errors).
        """
        if response.status_code < 400:
            return

        message, error_code = self._error_detail(response)
        if response.status_code >= 500:
            raise RetryableHubError(
                f"Hub server error: {message}", response.status_code, error_code
            )
        raise HubError(f"Hub API error: {message}", response.status_code, error_code)

    @staticmethod
    def _error_detail(response: httpx.Response):
        """Extract (message, error_code) from an error body."""
        try:
            body = response.json()
        except ValueError:
            return response.text, None

        if not isinstance(body, dict):
            return response.text, None
        if "error" in body:
            return body.get("message", body["error"]), body["error"]
        return body.get("detail", response.text), None
