import asyncio

import pytest

from chatgate.errors import StorageFailure
from chatgate.schemas import ChatMessage, IdempotencyEntry
from chatgate.store import ConversationStore


@pytest.mark.asyncio
async def test_get_or_create_then_reload(store):
    record, created = await store.get_or_create("alice", "c1")
    assert created is True
    assert record.revision == 1
    again, created_again = await store.get_or_create("alice", "c1")
    assert created_again is False
    assert again.chat_id == "c1"
    assert await store.load("alice", "other") is None


@pytest.mark.asyncio
async def test_update_persists_messages_and_idempotency(store):
    await store.get_or_create("alice", "c1")

    def apply(record):
        record.raw_messages.append(ChatMessage(role="user", content="hi", ts=10, message_id="m1"))
        record.raw_messages.append(ChatMessage(role="assistant", content="hello", ts=11, polished=False))
        record.idempotency["m1"] = IdempotencyEntry(answer="hello", ts=11)
        record.last_message_ts = 11

    saved = await store.update("alice", "c1", apply)
    assert saved is not None
    loaded = await store.load("alice", "c1")
    assert [m.content for m in loaded.raw_messages] == ["hi", "hello"]
    assert loaded.raw_messages[0].message_id == "m1"
    assert loaded.idempotency["m1"].answer == "hello"
    assert loaded.revision == 2


@pytest.mark.asyncio
async def test_update_returning_false_skips_save(store):
    await store.get_or_create("alice", "c1")

    def apply(record):
        record.title = "ignored"
        return False

    assert await store.update("alice", "c1", apply) is None
    loaded = await store.load("alice", "c1")
    assert loaded.title == ""
    assert await store.update("alice", "missing", apply) is None


@pytest.mark.asyncio
async def test_concurrent_updates_do_not_lose_fields(store):
    await store.get_or_create("alice", "c1")

    async def set_title(record):
        await asyncio.sleep(0.01)
        record.title = "Title"

    def set_topic(record):
        record.topic = "Topic"

    await asyncio.gather(store.update("alice", "c1", set_title), store.update("alice", "c1", set_topic))
    loaded = await store.load("alice", "c1")
    assert loaded.title == "Title"
    assert loaded.topic == "Topic"
    assert loaded.revision == 3


@pytest.mark.asyncio
async def test_list_for_owner_sorted_by_recency_and_scoped(store):
    for chat_id, ts in (("old", 100), ("new", 300), ("mid", 200)):
        await store.get_or_create("alice", chat_id)

        def apply(record, ts=ts):
            record.last_message_ts = ts

        await store.update("alice", chat_id, apply)
    await store.get_or_create("bob", "other")

    chats = await store.list_for_owner("alice")
    assert [c["chat_id"] for c in chats] == ["new", "mid", "old"]
    assert chats[0]["raw_count"] == 0


@pytest.mark.asyncio
async def test_delete(store):
    await store.get_or_create("alice", "c1")
    assert await store.delete("alice", "c1") is True
    assert await store.delete("alice", "c1") is False
    assert await store.load("alice", "c1") is None


@pytest.mark.asyncio
async def test_unwritable_path_raises_storage_failure(tmp_path):
    broken = ConversationStore(str(tmp_path / "missing-dir" / "db.sqlite"))
    with pytest.raises(StorageFailure):
        await broken.init()
