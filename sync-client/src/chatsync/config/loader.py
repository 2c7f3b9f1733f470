"""Configuration file loader.

Settings come from a YAML file whose string values may reference environment
variables as ``${VAR}`` or ``${VAR:-fallback}``. A ``.env`` file is loaded
first so it can supply those variables.
"""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .settings import Settings

CONFIG_PATH_ENV = "CHATSYNC_CONFIG"
DEFAULT_CONFIG_PATH = Path("config/config.yaml")

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

# Global settings instance
_settings: Optional[Settings] = None


def _expand_env_vars(obj):
    """Recursively expand ${VAR} patterns in strings."""
    if isinstance(obj, str):
        return _ENV_PATTERN.sub(
            lambda match: os.environ.get(match.group(1), match.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    return obj


def _resolve_config_path(config_path: Optional[Path]) -> Path:
    if config_path is not None:
        return Path(config_path)
    from_env = os.environ.get(CONFIG_PATH_ENV)
    return Path(from_env) if from_env else DEFAULT_CONFIG_PATH


def load_config(
    config_path: Optional[Path] = None,
    env_path: Optional[Path] = None,
) -> Settings:
    """Load configuration from YAML file and environment.

    Args:
        config_path: Path to config.yaml (default: $CHATSYNC_CONFIG, then
            config/config.yaml)
        env_path: Path to .env file (default: .env)

    Returns:
        Loaded Settings instance
    """
    global _settings

    env_path = Path(".env") if env_path is None else Path(env_path)
    if env_path.exists():
        load_dotenv(env_path)

    config_data = {}
    config_path = _resolve_config_path(config_path)
    if config_path.exists():
        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}

    _settings = Settings(**_expand_env_vars(config_data))
    return _settings


def get_settings() -> Settings:
    """Get the current settings instance, loading defaults on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Forget the loaded settings (for testing)."""
    global _settings
    _settings = None
