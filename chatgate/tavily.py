import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
SEARCH_TOPICS = ("general", "news", "finance")
# Brave-style freshness codes used by the search agents, mapped to Tavily's time_range.
FRESHNESS_TIME_RANGES = {"pd": "day", "pw": "week", "pm": "month", "py": "year"}


def time_range_for(freshness: Optional[str]) -> Optional[str]:
    return FRESHNESS_TIME_RANGES.get(freshness or "")


def usable_results(resp: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Result rows that carry a URL, in ranking order."""
    rows = resp.get("results") if isinstance(resp, dict) else None
    return [r for r in (rows or []) if isinstance(r, dict) and r.get("url")]


class TavilyClient:
    """Thin Tavily search client; failures come back as ``{"error": ...}`` dicts."""

    def __init__(self, api_key: Optional[str], timeout: float = 60.0):
        self.api_key = api_key
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
        time_range: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        body: Dict[str, Any] = {"query": query, "search_depth": search_depth, "max_results": max_results}
        wanted_topic = str(topic or "").strip().lower()
        if wanted_topic in SEARCH_TOPICS:
            body["topic"] = wanted_topic
        if time_range in FRESHNESS_TIME_RANGES.values():
            body["time_range"] = time_range
        result = await self._request(TAVILY_SEARCH_URL, body)
        if "error" in result:
            logger.warning("Tavily search for %r failed: %s", query[:80], result["error"])
        return result

    async def _request(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        # Development keys are read from the body, production keys from the header.
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key or ""}
        try:
            resp = await self.client.post(url, json={**body, "api_key": self.api_key}, headers=headers)
        except httpx.TimeoutException as exc:
            return {"error": "timeout", "detail": str(exc)}
        except httpx.RequestError as exc:
            return {"error": "request_failed", "detail": str(exc)}
        if resp.status_code >= 400:
            try:
                detail: Any = resp.json()
            except ValueError:
                detail = resp.text
            return {"error": "http_status", "status_code": resp.status_code, "detail": detail}
        try:
            return resp.json()
        except ValueError:
            return {"error": "invalid_json"}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
