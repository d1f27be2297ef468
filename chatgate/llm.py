import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import httpx

from .errors import InvalidInferenceRequest, MalformedUpstreamResponse, UpstreamTimeout, UpstreamUnavailable

logger = logging.getLogger("uvicorn.error")

CHAT_ROLES = ("system", "user", "assistant")
# Sampling options we forward; anything else a caller passes is dropped.
SAMPLING_OPTIONS = ("top_p", "top_k", "repeat_penalty", "presence_penalty", "frequency_penalty", "stop")


def clean_messages(messages: Any) -> List[Dict[str, str]]:
    """Keep system/user/assistant turns with non-blank text; structured content is JSON-encoded."""
    cleaned: List[Dict[str, str]] = []
    for entry in messages if isinstance(messages, list) else []:
        if not isinstance(entry, dict) or entry.get("role") not in CHAT_ROLES:
            continue
        text = entry.get("content")
        if text is not None and not isinstance(text, str):
            text = json.dumps(text, ensure_ascii=True)
        if text and text.strip():
            cleaned.append({"role": entry["role"], "content": text})
    return cleaned


def upstream_error_detail(response: httpx.Response) -> str:
    """Best-effort human message from an error body such as ``{"error": {"message": ...}}``."""
    try:
        body: Any = response.json()
    except (ValueError, httpx.ResponseNotRead):
        try:
            return response.text
        except httpx.ResponseNotRead:
            return ""
    for _ in range(3):
        if not isinstance(body, dict):
            break
        found = next((body[k] for k in ("error", "detail", "message") if body.get(k)), None)
        if found is None:
            break
        body = found
    return body if isinstance(body, str) else json.dumps(body, ensure_ascii=True)


@asynccontextmanager
async def upstream_errors(action: str) -> AsyncIterator[None]:
    """Translate httpx failures into the ChatGate error taxonomy."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise UpstreamTimeout(f"{action} timed out") from exc
    except httpx.HTTPStatusError as exc:
        detail = upstream_error_detail(exc.response)
        raise UpstreamUnavailable(f"{action} failed ({exc.response.status_code}): {detail}") from exc
    except httpx.RequestError as exc:
        raise UpstreamUnavailable(f"Inference backend unreachable: {exc}") from exc


def _reply_text(data: Any) -> str:
    try:
        message = data["choices"][0].get("message") or {}
    except (TypeError, KeyError, IndexError, AttributeError) as exc:
        raise MalformedUpstreamResponse("Inference backend returned an unexpected body") from exc
    text = message.get("content")
    if not text:
        # Reasoning models sometimes leave content empty.
        text = message.get("reasoning") or message.get("reasoning_content") or ""
    if not isinstance(text, str):
        raise MalformedUpstreamResponse("Inference backend returned non-text content")
    return text


def _stream_delta(line: str) -> Optional[str]:
    if not line.startswith("data:"):
        return None
    raw = line[5:].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        return (json.loads(raw)["choices"][0].get("delta") or {}).get("content") or None
    except (ValueError, TypeError, KeyError, IndexError, AttributeError):
        return None


class LLMClient:
    """Client for an OpenAI-compatible chat completion server (LM Studio, Ollama /v1)."""

    def __init__(self, base_url: str, max_output_tokens: Optional[int] = None, timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def list_models(self) -> Dict[str, Any]:
        async with upstream_errors("Model listing"):
            resp = await self.client.get(f"{self.base_url}/models")
            resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("Model listing returned invalid JSON") from exc

    def completion_body(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        stream: bool,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        model_id = str(model or "").strip()
        if not model_id:
            raise InvalidInferenceRequest("model is required")
        turns = clean_messages(messages)
        if not turns:
            raise InvalidInferenceRequest("messages must include at least one non-empty entry")
        if self.max_output_tokens:
            max_tokens = min(max_tokens, self.max_output_tokens)
        body: Dict[str, Any] = {
            "model": model_id,
            "messages": turns,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        body.update({k: v for k, v in (options or {}).items() if k in SAMPLING_OPTIONS and v is not None})
        return body

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        options: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Run a non-streaming completion and return the assistant text."""
        body = self.completion_body(model, messages, temperature, max_tokens, False, options)
        async with upstream_errors(f"Completion from {body['model']}"):
            resp = await self.client.post(self.completions_url, json=body)
            resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise MalformedUpstreamResponse("Inference backend returned invalid JSON") from exc
        return _reply_text(data)

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[str, None]:
        """Yield content deltas; closing the generator aborts the upstream request."""
        body = self.completion_body(model, messages, temperature, max_tokens, True, options)
        async with upstream_errors(f"Stream from {body['model']}"):
            async with self.client.stream("POST", self.completions_url, json=body) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if line.strip() == "data: [DONE]":
                        break
                    delta = _stream_delta(line)
                    if delta:
                        yield delta

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
