import json

import httpx
import pytest
import respx
from httpx import Response

from chatgate.errors import (
    ChatGateError,
    InvalidInferenceRequest,
    MalformedUpstreamResponse,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from chatgate.llm import LLMClient

BASE = "http://lm.test/v1"


@pytest.mark.asyncio
async def test_chat_payload_caps_tokens_and_filters_options():
    client = LLMClient(BASE, max_output_tokens=256)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"choices": [{"message": {"content": "hi there"}}]})

            respx_mock.post(f"{BASE}/chat/completions").mock(side_effect=handler)
            reply = await client.chat(
                "test-model",
                [
                    {"role": "system", "content": "sys"},
                    {"role": "tool", "content": "dropped"},
                    {"role": "user", "content": "   "},
                    {"role": "user", "content": "hello"},
                ],
                max_tokens=1024,
                options={"top_p": 0.1, "response_format": {"type": "json_object"}},
            )
    finally:
        await client.close()
    assert reply == "hi there"
    payload = captured["json"]
    assert payload["max_tokens"] == 256
    assert payload["stream"] is False
    assert payload["top_p"] == 0.1
    assert "response_format" not in payload
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_chat_falls_back_to_reasoning_content():
    client = LLMClient(BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(
                return_value=Response(
                    200, json={"choices": [{"message": {"content": "", "reasoning_content": "thought"}}]}
                )
            )
            assert await client.chat("m", [{"role": "user", "content": "q"}]) == "thought"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_error_taxonomy():
    client = LLMClient(BASE)
    try:
        with respx.mock() as respx_mock:
            route = respx_mock.post(f"{BASE}/chat/completions")
            route.mock(return_value=Response(500, json={"error": "model not loaded"}))
            with pytest.raises(UpstreamUnavailable) as exc:
                await client.chat("m", [{"role": "user", "content": "q"}])
            assert "model not loaded" in exc.value.message

            route.mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(UpstreamTimeout):
                await client.chat("m", [{"role": "user", "content": "q"}])

            route.mock(return_value=Response(200, json={"choices": []}))
            with pytest.raises(MalformedUpstreamResponse):
                await client.chat("m", [{"role": "user", "content": "q"}])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_stream_chat_yields_deltas_until_done():
    client = LLMClient(BASE)
    body = "".join(
        [
            'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n',
            'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n',
            ": keep-alive\n\n",
            'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n',
            "data: [DONE]\n\n",
            'data: {"choices":[{"delta":{"content":"ignored"}}]}\n\n',
        ]
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(
                return_value=Response(200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"})
            )
            deltas = [d async for d in client.stream_chat("m", [{"role": "user", "content": "q"}])]
    finally:
        await client.close()
    assert deltas == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_stream_chat_http_error_raises_unavailable():
    client = LLMClient(BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/chat/completions").mock(return_value=Response(503, text="busy"))
            with pytest.raises(UpstreamUnavailable):
                async for _ in client.stream_chat("m", [{"role": "user", "content": "q"}]):
                    pass
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_models():
    client = LLMClient(BASE)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/models").mock(return_value=Response(200, json={"data": [{"id": "llama3"}]}))
            assert await client.list_models() == {"data": [{"id": "llama3"}]}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_invalid_completion_requests_raise_chatgate_errors():
    client = LLMClient(BASE)
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post(f"{BASE}/chat/completions")
            with pytest.raises(InvalidInferenceRequest) as exc:
                await client.chat("  ", [{"role": "user", "content": "q"}])
            assert isinstance(exc.value, ChatGateError)
            assert exc.value.status_code == 400
            with pytest.raises(InvalidInferenceRequest):
                async for _ in client.stream_chat("m", [{"role": "tool", "content": "x"}]):
                    pass
            assert not route.called
    finally:
        await client.close()
