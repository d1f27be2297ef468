import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from .config import AppSettings
from .errors import MalformedUpstreamResponse, UpstreamTimeout, UpstreamUnavailable
from .schemas import normalize_sources
from .tavily import TavilyClient, time_range_for, usable_results
from .text_utils import collapse_whitespace, trim_to_char_budget

logger = logging.getLogger("uvicorn.error")

MAX_QUERY_CHARS = 512
DIGEST_MAX_CHARS = 180
SOURCE_SUMMARY_MAX_CHARS = 360


def pick_freshness(text: str) -> str:
    lowered = str(text or "").lower()
    if any(p in lowered for p in ("today", "right now", "breaking", "just announced")):
        return "pd"
    if any(
        p in lowered
        for p in ("this week", "recent", "latest", "news", "what's new", "what is new", "current")
    ):
        return "pw"
    if "this month" in lowered:
        return "pm"
    if "this year" in lowered or any(f"202{d}" in lowered for d in range(5, 10)):
        return "py"
    return ""


def digest_prompt(text: str) -> str:
    return trim_to_char_budget(collapse_whitespace(text), DIGEST_MAX_CHARS)


def _hostname(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


class SearchProgress:
    """Tracks what a relayed search event stream has delivered so far."""

    def __init__(self) -> None:
        self.sources: List[Dict[str, str]] = []
        self.saw_sources = False
        self.saw_done = False
        self.saw_error = False

    def observe(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Record the event and return the copy to relay (never marked done)."""
        if isinstance(event.get("sources"), list):
            self.sources = normalize_sources(event["sources"])
            self.saw_sources = True
        stage = event.get("stage")
        if stage == "sources":
            self.saw_sources = True
        elif stage == "error":
            self.saw_error = True
        if event.get("done") is True:
            self.saw_done = True
        relayed = dict(event)
        if relayed.get("done") is True:
            relayed["done"] = False
        return relayed

    @property
    def completed(self) -> bool:
        return (self.saw_done or self.saw_sources) and not self.saw_error


class WebAgentClient:
    """Remote search agent speaking JSON (``stream=false``) or NDJSON stage events."""

    def __init__(self, url: str, timeout: float = 120.0):
        self.url = url
        self.client = httpx.AsyncClient(timeout=timeout)

    def _payload(self, query: str, context: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        return {
            "query": query,
            "user_id": context.get("user_id"),
            "chat_id": context.get("chat_id"),
            "message_id": context.get("message_id"),
            "client_ts": context.get("client_ts"),
            "model_id": context.get("model_id"),
            "stream": stream,
        }

    async def search(self, query: str, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
        try:
            resp = await self.client.post(self.url, json=self._payload(query, context or {}, False))
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout("Web agent request timed out.") from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamUnavailable(f"Web agent error {exc.response.status_code}: {exc.response.text}") from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Web agent unreachable: {exc}") from exc
        except ValueError as exc:
            raise MalformedUpstreamResponse("Web agent returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise MalformedUpstreamResponse("Web agent returned an unexpected body")
        return normalize_sources(data.get("sources"))

    async def stream_search(
        self, query: str, context: Optional[Dict[str, Any]] = None
    ) -> AsyncGenerator[Dict[str, Any], None]:
        payload = self._payload(query, context or {}, True)
        try:
            async with self.client.stream("POST", self.url, json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise UpstreamUnavailable(
                        f"Web agent error {response.status_code}: {body.decode('utf-8', 'replace')}"
                    )
                async for line in response.aiter_lines():
                    trimmed = line.strip()
                    if not trimmed:
                        continue
                    try:
                        event = json.loads(trimmed)
                    except ValueError:
                        continue
                    if isinstance(event, dict):
                        yield event
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout("Web agent request timed out.") from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Web agent unreachable: {exc}") from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class TavilyWebAgent:
    """In-process search agent emitting the same stage events as the remote agent."""

    def __init__(self, tavily: TavilyClient, max_results: int = 5):
        self.tavily = tavily
        self.max_results = min(5, max(1, max_results))

    async def stream_search(
        self, query: str, context: Optional[Dict[str, Any]] = None
    ) -> AsyncGenerator[Dict[str, Any], None]:
        trimmed = trim_to_char_budget(collapse_whitespace(query), MAX_QUERY_CHARS)
        yield {"stage": "digest_prompt", "content": digest_prompt(trimmed), "done": False}
        freshness = pick_freshness(trimmed)
        yield {"stage": "search_started", "query": trimmed, "freshness": freshness, "done": False}
        resp = await self.tavily.search(
            trimmed,
            max_results=self.max_results,
            time_range=time_range_for(freshness),
        )
        if resp.get("error"):
            if resp["error"] == "timeout":
                raise UpstreamTimeout("Tavily search timed out.")
            raise UpstreamUnavailable(f"Tavily search failed: {resp['error']}")
        results = usable_results(resp)
        yield {
            "stage": "search_summary",
            "items": [{"title": r.get("title") or "Untitled", "source": _hostname(r["url"])} for r in results[:5]],
            "done": False,
        }
        sources = [
            {
                "title": r.get("title") or "Untitled",
                "url": r["url"],
                "summary": trim_to_char_budget(collapse_whitespace(r.get("content") or ""), SOURCE_SUMMARY_MAX_CHARS),
            }
            for r in results[: self.max_results]
        ]
        yield {"stage": "sources", "sources": sources, "done": False}

    async def search(self, query: str, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
        progress = SearchProgress()
        async for event in self.stream_search(query, context):
            progress.observe(event)
        return progress.sources

    async def close(self) -> None:
        await self.tavily.close()


def build_search_agent(settings: AppSettings, tavily_client: TavilyClient):
    """Remote agent when configured, else Tavily when keyed, else no search."""
    if settings.web_agent_url:
        return WebAgentClient(settings.web_agent_url, timeout=settings.web_agent_timeout_s)
    if tavily_client.enabled:
        return TavilyWebAgent(tavily_client, max_results=settings.web_agent_max_results)
    return None
