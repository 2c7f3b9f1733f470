"""Hub client for chat synchronization."""

from .client import HubClient, HubConfig, HubError, RetryableHubError

__all__ = ["HubClient", "HubConfig", "HubError", "RetryableHubError"]
