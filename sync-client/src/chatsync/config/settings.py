"""Configuration settings models using Pydantic."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class HubSettings(BaseModel):
    """Hub connection settings."""
    url: str = "http://localhost:8000"
    token: Optional[str] = None
    timeout_seconds: float = 30.0


class StorageSettings(BaseModel):
    """Local storage settings."""
    db_path: str = "./data/sessions.db"


class SessionSettings(BaseModel):
    """Chat session behaviour."""
    system_prompt: str = ""
    default_character_id: str = "default"
    bootstrap_limit: int = 3  # Sessions hydrated from the Hub at startup
    remote_list_limit: int = 200
    snapshot_limit: int = 500  # Messages fetched per hydrated session


class Settings(BaseModel):
    """Root configuration model."""
    model_config = ConfigDict(extra="ignore")  # Ignore unknown fields in config file

    hub: HubSettings = Field(default_factory=HubSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
