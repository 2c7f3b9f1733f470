"""Configuration management for the chat sync client."""

from .loader import get_settings, load_config, reset_settings
from .settings import HubSettings, SessionSettings, Settings, StorageSettings

__all__ = [
    "Settings",
    "HubSettings",
    "StorageSettings",
    "SessionSettings",
    "load_config",
    "get_settings",
    "reset_settings",
]
