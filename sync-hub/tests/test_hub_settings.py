"""Tests for Hub settings."""

from pathlib import Path

from hub.config import HUB_ROOT, Settings, anchor_sqlite_url


def test_relative_sqlite_path_is_anchored_to_hub_root():
    url = anchor_sqlite_url("sqlite+aiosqlite:///data/chats.db")

    assert url == f"sqlite+aiosqlite:///{(HUB_ROOT / 'data' / 'chats.db').resolve().as_posix()}"


def test_absolute_memory_and_other_urls_pass_through():
    for url in (
        "sqlite+aiosqlite:////var/lib/hub/chats.db",
        "sqlite+aiosqlite:///:memory:",
        "postgresql+asyncpg://hub@db/chats",
    ):
        assert anchor_sqlite_url(url) == url


def test_settings_resolve_paths_and_prefix(tmp_path):
    settings = Settings(
        database_url="sqlite+aiosqlite:///chats.db",
        log_dir="logs",
        api_prefix="v2/",
        cors_origins=["http://localhost:5173"],
        _env_file=None,
    )

    assert settings.database_url.endswith(f"{HUB_ROOT.as_posix()}/chats.db")
    assert settings.is_sqlite
    assert settings.log_dir == (HUB_ROOT / "logs").resolve()
    assert settings.api_prefix == "/v2"
    assert settings.cors_origins == ["http://localhost:5173"]

    absolute = Settings(log_dir=tmp_path, api_prefix="", _env_file=None)
    assert absolute.log_dir == Path(tmp_path)
    assert absolute.api_prefix == ""
