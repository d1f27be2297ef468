import json

import httpx
import pytest
import respx
from httpx import Response

from chatgate.errors import UpstreamTimeout, UpstreamUnavailable
from chatgate.web_agent import (
    SearchProgress,
    TavilyWebAgent,
    WebAgentClient,
    build_search_agent,
    pick_freshness,
)
from tests.conftest import make_settings
from tests.fakes import FakeTavilyClient

AGENT_URL = "http://agent.test/search"


def test_pick_freshness():
    assert pick_freshness("what happened today") == "pd"
    assert pick_freshness("latest rust release") == "pw"
    assert pick_freshness("events this month") == "pm"
    assert pick_freshness("best laptops 2026") == "py"
    assert pick_freshness("how do magnets work") == ""


def test_search_progress_forces_done_false_and_tracks_completion():
    progress = SearchProgress()
    relayed = progress.observe({"stage": "search_started", "done": False})
    assert relayed["done"] is False
    assert not progress.completed
    relayed = progress.observe(
        {"stage": "sources", "sources": [{"title": "A", "url": "https://a", "description": "d"}], "done": True}
    )
    assert relayed["done"] is False
    assert progress.completed
    assert progress.sources == [{"title": "A", "url": "https://a", "summary": "d"}]
    progress.observe({"stage": "error", "error": "late failure"})
    assert not progress.completed


@pytest.mark.asyncio
async def test_web_agent_search_posts_context_and_normalizes_sources():
    agent = WebAgentClient(AGENT_URL, timeout=5)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json={"sources": [{"url": "https://x", "description": "snippet"}, {"title": "no url"}]},
                )

            respx_mock.post(AGENT_URL).mock(side_effect=handler)
            sources = await agent.search("rust news", {"user_id": "u", "chat_id": "c", "message_id": "m1"})
    finally:
        await agent.close()
    assert sources == [{"title": "Untitled", "url": "https://x", "summary": "snippet"}]
    assert captured["json"]["query"] == "rust news"
    assert captured["json"]["stream"] is False
    assert captured["json"]["message_id"] == "m1"


@pytest.mark.asyncio
async def test_web_agent_stream_parses_ndjson_and_skips_noise():
    agent = WebAgentClient(AGENT_URL, timeout=5)
    body = "\n".join(
        [
            json.dumps({"stage": "search_started", "query": "q", "done": False}),
            "not json",
            "",
            json.dumps({"stage": "sources", "sources": [{"title": "A", "url": "https://a"}], "done": True}),
        ]
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(AGENT_URL).mock(return_value=Response(200, content=body.encode("utf-8")))
            events = [e async for e in agent.stream_search("q")]
    finally:
        await agent.close()
    assert [e["stage"] for e in events] == ["search_started", "sources"]


@pytest.mark.asyncio
async def test_web_agent_errors_map_to_taxonomy():
    agent = WebAgentClient(AGENT_URL, timeout=5)
    try:
        with respx.mock() as respx_mock:
            route = respx_mock.post(AGENT_URL)
            route.mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(UpstreamTimeout):
                await agent.search("q")
            route.mock(return_value=Response(502, text="bad gateway"))
            with pytest.raises(UpstreamUnavailable):
                await agent.search("q")
            with pytest.raises(UpstreamUnavailable):
                async for _ in agent.stream_search("q"):
                    pass
    finally:
        await agent.close()


@pytest.mark.asyncio
async def test_tavily_agent_emits_stage_events():
    tavily = FakeTavilyClient(
        api_key="k",
        search_response={
            "results": [
                {"title": "Rust 1.80", "url": "https://blog.rust-lang.org/x", "content": "Released   today."},
                {"title": "skip", "url": ""},
            ]
        },
    )
    agent = TavilyWebAgent(tavily, max_results=3)
    events = [e async for e in agent.stream_search("latest rust release")]
    assert [e["stage"] for e in events] == ["digest_prompt", "search_started", "search_summary", "sources"]
    assert events[1]["freshness"] == "pw"
    assert tavily.search_calls[0]["time_range"] == "week"
    assert tavily.search_calls[0]["max_results"] == 3
    assert events[2]["items"] == [{"title": "Rust 1.80", "source": "blog.rust-lang.org"}]
    assert events[3]["sources"] == [
        {"title": "Rust 1.80", "url": "https://blog.rust-lang.org/x", "summary": "Released today."}
    ]


@pytest.mark.asyncio
async def test_tavily_agent_raises_on_search_error():
    agent = TavilyWebAgent(FakeTavilyClient(api_key="k", search_response={"error": "timeout"}))
    with pytest.raises(UpstreamTimeout):
        await agent.search("q")
    agent = TavilyWebAgent(FakeTavilyClient(api_key="k", search_response={"error": "http_status"}))
    with pytest.raises(UpstreamUnavailable):
        await agent.search("q")


@pytest.mark.asyncio
async def test_build_search_agent_prefers_remote_then_tavily(tmp_path):
    remote = build_search_agent(make_settings(tmp_path, web_agent_url=AGENT_URL), FakeTavilyClient(api_key="k"))
    assert isinstance(remote, WebAgentClient)
    await remote.close()
    assert isinstance(build_search_agent(make_settings(tmp_path), FakeTavilyClient(api_key="k")), TavilyWebAgent)
    assert build_search_agent(make_settings(tmp_path), FakeTavilyClient(api_key=None)) is None
