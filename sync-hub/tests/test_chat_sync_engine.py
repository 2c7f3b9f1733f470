"""Tests for the sync merge engine."""

import pytest
from sqlalchemy import select

from hub import database
from hub.database import Chat, ChatMember, ChatMessage
from hub.services import SyncMergeEngine
from hub.services.chat_sync import member_identity, resolve_sender_id
from shared.contracts import SyncChatMember
from shared.errors import ConflictError, ForbiddenError


async def fetch_all(model, *where):
    """Load rows of a model from the test database."""
    async with database.get_session_factory()() as db:
        result = await db.execute(select(model).where(*where))
        return result.scalars().all()


async def fetch_chat(chat_id: str) -> Chat:
    rows = await fetch_all(Chat, Chat.id == chat_id)
    return rows[0] if rows else None


async def fetch_message(message_id: str) -> ChatMessage:
    rows = await fetch_all(ChatMessage, ChatMessage.id == message_id)
    return rows[0] if rows else None


def test_resolve_sender_id():
    """User messages belong to the caller, others to the character or role."""
    assert resolve_sender_id("user", "user-1", "char-1") == "user-1"
    assert resolve_sender_id("assistant", "user-1", "char-1") == "char-1"
    assert resolve_sender_id("tool", "user-1", None) == "tool"


def test_member_identity():
    """Members without their identifying id are skipped."""
    assert member_identity(SyncChatMember(type="user", user_id="u")) == ("user_id", "u")
    assert member_identity(SyncChatMember(type="character", character_id="c")) == ("character_id", "c")
    assert member_identity(SyncChatMember(type="character")) is None
    assert member_identity(SyncChatMember(type="bot", user_id="b")) == ("user_id", "b")


@pytest.mark.asyncio
async def test_sync_creates_chat_with_defaults(sync_engine, build_payload):
    """A new chat defaults to type=group and gets timestamps."""
    result = await sync_engine.sync_chat("user-1", build_payload("fresh"))

    assert result.chat_id == "fresh"
    chat = await fetch_chat("fresh")
    assert chat.type == "group"
    assert chat.title is None
    assert chat.created_at > 0
    assert chat.updated_at >= chat.created_at

    members = await fetch_all(ChatMember, ChatMember.chat_id == "fresh")
    assert [(m.member_type, m.user_id) for m in members] == [("user", "user-1")]


@pytest.mark.asyncio
async def test_sync_stores_payload_fields(seeded_chat):
    """Provided chat fields, members and messages are stored."""
    chat = await fetch_chat(seeded_chat)
    assert chat.title == "Daily Log"
    assert chat.created_at == 1_700_000_000_000
    assert chat.updated_at == 1_700_000_000_500

    members = await fetch_all(ChatMember, ChatMember.chat_id == seeded_chat)
    assert {(m.member_type, m.user_id, m.character_id) for m in members} == {
        ("user", "user-1", None),
        ("character", None, "char-1"),
    }

    user_message = await fetch_message("m-1")
    assistant_message = await fetch_message("m-2")
    assert user_message.sender_id == "user-1"
    assert assistant_message.sender_id == "char-1"
    assert assistant_message.created_at == 1_700_000_000_200


@pytest.mark.asyncio
async def test_sync_is_idempotent(sync_engine, build_payload):
    """Resubmitting an identical payload never duplicates members or messages."""
    payload = build_payload(
        "chat-idem",
        title="Same",
        createdAt=1_000,
        updatedAt=2_000,
        members=[{"type": "character", "characterId": "char-1"}],
        messages=[
            {"id": "idem-1", "role": "user", "content": "a", "createdAt": 1_100},
            {"id": "idem-2", "role": "assistant", "content": "b", "createdAt": 1_200},
        ],
    )

    await sync_engine.sync_chat("user-1", payload)
    first_members = await fetch_all(ChatMember, ChatMember.chat_id == "chat-idem")
    first_messages = await fetch_all(ChatMessage, ChatMessage.chat_id == "chat-idem")

    await sync_engine.sync_chat("user-1", payload)
    second_members = await fetch_all(ChatMember, ChatMember.chat_id == "chat-idem")
    second_messages = await fetch_all(ChatMessage, ChatMessage.chat_id == "chat-idem")

    assert len(second_members) == len(first_members) == 2
    assert len(second_messages) == len(first_messages) == 2

    def stable(messages):
        return sorted(
            (m.id, m.chat_id, m.sender_id, m.role, m.content, m.created_at)
            for m in messages
        )

    assert stable(second_messages) == stable(first_messages)

    chat = await fetch_chat("chat-idem")
    assert (chat.title, chat.type, chat.created_at) == ("Same", "group", 1_000)


@pytest.mark.asyncio
async def test_sync_partial_update(sync_engine, seeded_chat, build_payload):
    """Only supplied chat fields change on an existing chat."""
    await sync_engine.sync_chat("user-1", build_payload(seeded_chat, type="private"))

    chat = await fetch_chat(seeded_chat)
    assert chat.type == "private"
    assert chat.title == "Daily Log"
    assert chat.created_at == 1_700_000_000_000

    await sync_engine.sync_chat("user-1", build_payload(seeded_chat, title="Renamed"))
    chat = await fetch_chat(seeded_chat)
    assert chat.title == "Renamed"
    assert chat.type == "private"


@pytest.mark.asyncio
async def test_sync_never_moves_updated_at_backwards(sync_engine, seeded_chat, build_payload):
    """An older payload timestamp does not rewind the chat."""
    await sync_engine.sync_chat("user-1", build_payload(seeded_chat, updatedAt=10))
    chat = await fetch_chat(seeded_chat)
    assert chat.updated_at == 1_700_000_000_500

    await sync_engine.sync_chat("user-1", build_payload(seeded_chat, updatedAt=1_700_000_009_000))
    chat = await fetch_chat(seeded_chat)
    assert chat.updated_at == 1_700_000_009_000


@pytest.mark.asyncio
async def test_sync_forbidden_for_non_member(sync_engine, seeded_chat, build_payload):
    """Syncing someone else's existing chat fails without changing it."""
    with pytest.raises(ForbiddenError):
        await sync_engine.sync_chat(
            "user-2",
            build_payload(
                seeded_chat,
                title="Hijacked",
                messages=[{"id": "m-x", "role": "user", "content": "nope"}],
            ),
        )

    chat = await fetch_chat(seeded_chat)
    assert chat.title == "Daily Log"
    assert await fetch_message("m-x") is None
    members = await fetch_all(ChatMember, ChatMember.user_id == "user-2")
    assert members == []


@pytest.mark.asyncio
async def test_sync_rejects_message_owned_by_other_chat(sync_engine, seeded_chat, build_payload):
    """A message id bound to chat A cannot be moved into chat B."""
    with pytest.raises(ConflictError):
        await sync_engine.sync_chat(
            "user-1",
            build_payload(
                "chat-b",
                messages=[
                    {"id": "b-1", "role": "user", "content": "first"},
                    {"id": "m-1", "role": "user", "content": "stolen"},
                ],
            ),
        )

    original = await fetch_message("m-1")
    assert original.chat_id == seeded_chat
    assert original.content == "hello"

    # The whole merge was rolled back
    assert await fetch_chat("chat-b") is None
    assert await fetch_message("b-1") is None


@pytest.mark.asyncio
async def test_sync_updates_message_but_keeps_created_at(sync_engine, seeded_chat, build_payload):
    """Upserting an existing message changes content but not created_at."""
    before = await fetch_message("m-1")

    await sync_engine.sync_chat(
        "user-1",
        build_payload(
            seeded_chat,
            messages=[{"id": "m-1", "role": "user", "content": "edited", "createdAt": 5}],
        ),
    )

    after = await fetch_message("m-1")
    assert after.content == "edited"
    assert after.created_at == before.created_at
    assert after.updated_at >= before.updated_at


@pytest.mark.asyncio
async def test_sync_members_are_additive(sync_engine, seeded_chat, build_payload):
    """Omitted members stay; payload `user` members other than the caller are ignored."""
    await sync_engine.sync_chat(
        "user-1",
        build_payload(
            seeded_chat,
            members=[
                {"type": "user", "userId": "user-9"},
                {"type": "bot", "userId": "bot-1"},
            ],
        ),
    )

    members = await fetch_all(ChatMember, ChatMember.chat_id == seeded_chat)
    identities = {(m.member_type, m.user_id or m.character_id) for m in members}
    assert identities == {
        ("user", "user-1"),
        ("character", "char-1"),
        ("bot", "bot-1"),
    }


@pytest.mark.asyncio
async def test_sender_falls_back_to_stored_character(sync_engine, seeded_chat, build_payload):
    """Without a character in the payload, the chat's stored character is used."""
    await sync_engine.sync_chat(
        "user-1",
        build_payload(
            seeded_chat,
            messages=[{"id": "m-3", "role": "assistant", "content": "again"}],
        ),
    )

    message = await fetch_message("m-3")
    assert message.sender_id == "char-1"


@pytest.mark.asyncio
async def test_sender_falls_back_to_role_without_character(sync_engine, build_payload):
    """Non-user roles in a chat without characters use the role as sender."""
    await sync_engine.sync_chat(
        "user-1",
        build_payload(
            "plain",
            messages=[
                {"id": "p-1", "role": "system", "content": "prompt"},
                {"id": "p-2", "role": "tool", "content": "result"},
            ],
        ),
    )

    assert (await fetch_message("p-1")).sender_id == "system"
    assert (await fetch_message("p-2")).sender_id == "tool"


@pytest.mark.asyncio
async def test_concurrent_first_sync_of_same_chat_merges(sync_engine, build_payload, monkeypatch):
    """A chat created by another device mid-merge is merged into, not a 500."""
    other_device = build_payload(
        "shared-chat",
        title="From laptop",
        messages=[{"id": "laptop-1", "role": "user", "content": "first", "createdAt": 100}],
    )
    this_device = build_payload(
        "shared-chat",
        messages=[{"id": "phone-1", "role": "user", "content": "second", "createdAt": 200}],
    )

    merge_members = sync_engine._merge_members
    raced = []

    async def merge_members_after_other_device(db, chat_id, user_id, members):
        # The other device commits between our chat lookup and our insert
        if not raced:
            raced.append(chat_id)
            await SyncMergeEngine(database.get_session_factory()).sync_chat("user-1", other_device)
        return await merge_members(db, chat_id, user_id, members)

    monkeypatch.setattr(sync_engine, "_merge_members", merge_members_after_other_device)

    result = await sync_engine.sync_chat("user-1", this_device)

    assert result.chat_id == "shared-chat"
    assert raced == ["shared-chat"]
    chat = await fetch_chat("shared-chat")
    assert chat.title == "From laptop"
    messages = await fetch_all(ChatMessage, ChatMessage.chat_id == "shared-chat")
    assert sorted(m.id for m in messages) == ["laptop-1", "phone-1"]
    members = await fetch_all(ChatMember, ChatMember.chat_id == "shared-chat")
    assert [(m.member_type, m.user_id) for m in members] == [("user", "user-1")]
