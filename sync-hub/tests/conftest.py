"""Pytest configuration and fixtures for Hub tests."""

import os
import sys
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the repo root is on sys.path so we can import the top-level `shared`
# package when tests are executed from the sync-hub project directory.
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Set test database BEFORE importing any hub modules
TEST_DB_PATH = Path(__file__).parent / "test.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"

# Now import hub modules
from hub import database  # noqa: E402 - ignore import order so we can set test database
from hub.auth import create_access_token  # noqa: E402
from hub.database import dispose_engine, reset_engine  # noqa: E402
from hub.services import ChatQueryService, SyncMergeEngine  # noqa: E402
from shared.contracts import ChatSyncRequest  # noqa: E402


@pytest.fixture(scope="function")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function", autouse=True)
async def setup_test_db():
    """Set up and tear down test database for each test."""
    # Remove old test db if exists
    if TEST_DB_PATH.exists():
        await dispose_engine()
        TEST_DB_PATH.unlink()

    # Reset engine to pick up test DATABASE_URL
    reset_engine()

    # Initialize database tables
    await database.init_db()

    yield

    # Cleanup - reset engine and remove test db
    await dispose_engine()
    reset_engine()
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()


@pytest.fixture
def sync_engine(setup_test_db) -> SyncMergeEngine:
    """Sync merge engine bound to the test database."""
    return SyncMergeEngine(database.get_session_factory())


@pytest.fixture
def query_service(setup_test_db) -> ChatQueryService:
    """Chat query service bound to the test database."""
    return ChatQueryService(database.get_session_factory())


def make_payload(
    chat_id: str = "chat-1",
    messages=None,
    members=None,
    **chat_fields,
) -> ChatSyncRequest:
    """Build a sync payload from wire-format (camelCase) fields."""
    chat = {"id": chat_id, **chat_fields}
    body = {"chat": chat, "messages": messages or []}
    if members is not None:
        body["members"] = members
    return ChatSyncRequest.model_validate(body)


@pytest.fixture
def build_payload():
    """Expose the payload builder to test modules."""
    return make_payload


@pytest.fixture
async def seeded_chat(sync_engine):
    """A chat owned by user-1 with a character member and two messages."""
    await sync_engine.sync_chat(
        "user-1",
        make_payload(
            "chat-1",
            title="Daily Log",
            type="group",
            createdAt=1_700_000_000_000,
            updatedAt=1_700_000_000_500,
            members=[{"type": "character", "characterId": "char-1"}],
            messages=[
                {"id": "m-1", "role": "user", "content": "hello", "createdAt": 1_700_000_000_100},
                {"id": "m-2", "role": "assistant", "content": "hi", "createdAt": 1_700_000_000_200},
            ],
        ),
    )
    return "chat-1"


@pytest.fixture(scope="function")
async def client(setup_test_db):
    """Create test client."""
    from hub.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    """Bearer headers for user-1."""
    return {"Authorization": f"Bearer {create_access_token('user-1')}"}


@pytest.fixture
async def auth_client(client, auth_headers):
    """Test client authenticated as user-1."""
    client.headers.update(auth_headers)
    yield client
