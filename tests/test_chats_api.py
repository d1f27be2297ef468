import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from chatgate.main import sse_format, stream_chat_info
from chatgate.schemas import ChatMessage


def _decode(chunk) -> str:
    return chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk


def _sse_payload(chunk) -> dict:
    data_line = next(line for line in _decode(chunk).splitlines() if line.startswith("data:"))
    return json.loads(data_line[len("data:") :].strip())


@pytest.mark.asyncio
async def test_health_and_models(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["inference"]["busy"] is False
    res = await client.get("/api/models")
    assert res.json() == {"data": [{"id": "test-model"}]}


@pytest.mark.asyncio
async def test_chat_listing_requires_user_and_defaults_title(client):
    res = await client.get("/api/chats")
    assert res.status_code == 400
    assert res.json()["detail"] == "Missing user_id."

    await client.post(
        "/api/chat",
        json={"user_id": "u1", "chat_id": "c1", "prompt": "hello", "message_id": "m1", "use_web": False},
    )
    await client.app.state.enrichment.drain()
    await client.get("/api/chats/empty", params={"user_id": "u1"})

    res = await client.get("/api/chats", params={"user_id": "u1"})
    chats = {c["chat_id"]: c for c in res.json()["chats"]}
    assert chats["c1"]["title"] == "Test Title"
    assert chats["c1"]["raw_count"] == 2
    assert chats["empty"]["title"] == "New chat"
    assert (await client.get("/api/chats", params={"user_id": "someone-else"})).json()["chats"] == []


@pytest.mark.asyncio
async def test_get_chat_creates_record_on_first_view(client):
    res = await client.get("/api/chats/fresh", params={"user_id": "u1"})
    assert res.status_code == 200
    body = res.json()
    assert body["chat_id"] == "fresh"
    assert body["raw_count"] == 0
    assert await client.app.state.store.load("u1", "fresh") is not None


@pytest.mark.asyncio
async def test_messages_pagination(client):
    store = client.app.state.store
    await store.get_or_create("u1", "c1")

    def apply(record):
        for idx in range(5):
            record.raw_messages.append(ChatMessage(role="user", content=f"msg {idx}", ts=idx + 1))

    await store.update("u1", "c1", apply)
    res = await client.get("/api/chats/c1/messages", params={"user_id": "u1", "offset": 1, "limit": 2})
    body = res.json()
    assert body["total"] == 5
    assert body["offset"] == 1
    assert body["limit"] == 2
    assert [m["content"] for m in body["messages"]] == ["msg 1", "msg 2"]
    res = await client.get("/api/chats/c1/messages", params={"user_id": "u1", "offset": 3})
    assert [m["content"] for m in res.json()["messages"]] == ["msg 3", "msg 4"]
    res = await client.get("/api/chats/none/messages", params={"user_id": "u1"})
    assert res.json()["total"] == 0


@pytest.mark.asyncio
async def test_delete_chat(client):
    await client.app.state.store.get_or_create("u1", "c1")
    res = await client.delete("/api/chats/c1", params={"user_id": "u1"})
    assert res.status_code == 200
    res = await client.delete("/api/chats/c1", params={"user_id": "u1"})
    assert res.status_code == 404
    assert res.json()["detail"] == "Chat not found."


def test_sse_format_with_event_name():
    assert sse_format({"a": 1}) == 'data: {"a": 1}\n\n'
    assert sse_format({"a": 1}, "ready") == 'event: ready\ndata: {"a": 1}\n\n'


@pytest.mark.asyncio
async def test_chat_info_stream_sends_current_state_then_updates(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        store = app.state.store
        bus = app.state.bus
        await store.get_or_create("u1", "c1")

        def apply(record):
            record.title = "Existing"

        await store.update("u1", "c1", apply)
        response = await stream_chat_info("c1", user_id="u1", store=store, bus=bus)

        ready = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert _decode(ready).startswith("event: ready\n")
        title = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert _decode(title).startswith("event: chatinfoupdate\n")
        assert _sse_payload(title)["content"] == {"title": "Existing"}

        async def publish():
            await asyncio.sleep(0.01)
            await bus.publish("u1:c1", "topic", "u1", "c1", {"topic": "tides", "ts": 5})

        task = asyncio.create_task(publish())
        update = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert _sse_payload(update) == {"type": "topic", "user_id": "u1", "chat_id": "c1", "content": {"topic": "tides", "ts": 5}}
        await task
        assert bus.listener_count("u1:c1") == 1
        await response.body_iterator.aclose()
        assert bus.listener_count("u1:c1") == 0


@pytest.mark.asyncio
async def test_chat_info_stream_heartbeat(app_factory, monkeypatch):
    monkeypatch.setattr("chatgate.main.HEARTBEAT_SECONDS", 0.01)
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        response = await stream_chat_info("c9", user_id="u1", store=app.state.store, bus=app.state.bus)
        await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        ping = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert _decode(ping) == ": ping\n\n"
        await response.body_iterator.aclose()
