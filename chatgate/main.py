import asyncio
import json
import logging
from contextlib import aclosing, asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .enrichment import EnrichmentPipeline
from .errors import ChatGateError, MissingRoutingChoice
from .events import ChatEventBus
from .llm import LLMClient
from .llm_queue import InferenceQueue
from .locks import KeyedLock, conversation_key
from .orchestrator import TurnExecutor
from .routing import RoutingEngine
from .schemas import ChatTurnRequest
from .store import ConversationStore
from .tavily import TavilyClient
from .web_agent import build_search_agent

logger = logging.getLogger("uvicorn.error")

HEARTBEAT_SECONDS = 15.0
DEFAULT_CHAT_TITLE = "New chat"


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_event_bus(request: Request) -> ChatEventBus:
    return request.app.state.bus


def get_llm_client(request: Request) -> LLMClient:
    return request.app.state.llm_client


def get_tavily_client(request: Request) -> TavilyClient:
    return request.app.state.tavily_client


def get_queue(request: Request) -> InferenceQueue:
    return request.app.state.queue


def get_executor(request: Request) -> TurnExecutor:
    return request.app.state.executor


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict, name: Optional[str] = None) -> str:
    prefix = f"event: {name}\n" if name else ""
    return f"{prefix}data: {json.dumps(event)}\n\n"


def ndjson_format(event: dict) -> str:
    return json.dumps(event) + "\n"


def require_user_id(user_id: Optional[str]) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=400, detail="Missing user_id.")
    return user_id


def http_error(exc: ChatGateError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


async def read_turn_request(request: Request, max_bytes: int, default_model_id: str = "") -> ChatTurnRequest:
    body = await request.body()
    if max_bytes and len(body) > max_bytes:
        raise HTTPException(status_code=413, detail="Request body too large.")
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    try:
        turn = ChatTurnRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid request fields.") from exc
    missing = turn.missing_fields()
    if not turn.model_id and not (default_model_id or "").strip():
        missing.append("model_id")
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing fields: {', '.join(missing)}")
    return turn


async def stream_turn(executor: TurnExecutor, turn: ChatTurnRequest) -> AsyncGenerator[str, None]:
    """Serialize turn events as NDJSON; primary-path failures end with one error event."""
    try:
        async with aclosing(executor.run_turn(turn)) as events:
            async for event in events:
                yield ndjson_format(event)
    except ChatGateError as exc:
        logger.warning("Turn %s/%s failed: %s", turn.chat_id, turn.message_id, exc.message)
        yield ndjson_format(exc.to_event())
    except Exception:
        logger.exception("Turn %s/%s failed unexpectedly", turn.chat_id, turn.message_id)
        yield ndjson_format(ChatGateError("Internal error while answering.", code="internal_error").to_event())


router = APIRouter()


@router.get("/health")
async def health(queue: InferenceQueue = Depends(get_queue)):
    return {"ok": True, "inference": queue.stats()}


@router.get("/api/models")
async def list_models(llm_client: LLMClient = Depends(get_llm_client)):
    try:
        return await llm_client.list_models()
    except ChatGateError as exc:
        raise http_error(exc) from exc


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    llm_client: LLMClient = Depends(get_llm_client),
    tavily_client: TavilyClient = Depends(get_tavily_client),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be a JSON object.")
    known = set(AppSettings.model_fields)
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **{k: v for k, v in body.items() if k in known}})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid settings.") from exc
    save_settings(new_settings, config_path=config_path)
    # Components hold a reference to the live settings object.
    for key in known:
        setattr(settings, key, getattr(new_settings, key))
    llm_client.base_url = settings.llm_base_url.rstrip("/")
    llm_client.max_output_tokens = settings.llm_max_output_tokens
    tavily_client.api_key = settings.tavily_api_key
    logger.info("Settings updated: %s", ", ".join(sorted(k for k in body if k in known)))
    return {"settings": settings.to_safe_dict()}


@router.post("/api/chat")
async def chat_turn(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    executor: TurnExecutor = Depends(get_executor),
):
    turn = await read_turn_request(request, settings.max_body_bytes, settings.default_model_id)
    if turn.use_web is None:
        err = MissingRoutingChoice()
        if turn.stream:
            return StreamingResponse(iter([ndjson_format(err.to_event())]), media_type="application/x-ndjson")
        raise http_error(err)
    if turn.stream:
        return StreamingResponse(stream_turn(executor, turn), media_type="application/x-ndjson")
    try:
        final = await executor.complete_turn(turn)
    except ChatGateError as exc:
        logger.warning("Turn %s/%s failed: %s", turn.chat_id, turn.message_id, exc.message)
        raise http_error(exc) from exc
    return {
        "chat_id": final["chat_id"],
        "answer": final["message"]["content"],
        "sources": final["sources"],
        "topic": final["topic"],
    }


@router.get("/api/chats")
async def list_chats(user_id: Optional[str] = None, store: ConversationStore = Depends(get_store)):
    owner = require_user_id(user_id)
    try:
        chats = await store.list_for_owner(owner)
    except ChatGateError as exc:
        raise http_error(exc) from exc
    for chat in chats:
        chat["title"] = chat["title"] or DEFAULT_CHAT_TITLE
    return {"chats": chats}


@router.get("/api/chats/{chat_id}")
async def get_chat(chat_id: str, user_id: Optional[str] = None, store: ConversationStore = Depends(get_store)):
    owner = require_user_id(user_id)
    try:
        record, _ = await store.get_or_create(owner, chat_id)
    except ChatGateError as exc:
        raise http_error(exc) from exc
    return record.summary_view()


@router.get("/api/chats/{chat_id}/messages")
async def get_chat_messages(
    chat_id: str,
    user_id: Optional[str] = None,
    offset: int = 0,
    limit: Optional[int] = None,
    store: ConversationStore = Depends(get_store),
):
    owner = require_user_id(user_id)
    try:
        record = await store.load(owner, chat_id)
    except ChatGateError as exc:
        raise http_error(exc) from exc
    messages = record.raw_messages if record else []
    start = max(0, offset)
    end = start + limit if limit is not None and limit >= 0 else None
    return {
        "chat_id": chat_id,
        "total": len(messages),
        "offset": start,
        "limit": limit,
        "messages": [m.model_dump(exclude_none=True) for m in messages[start:end]],
    }


@router.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: str, user_id: Optional[str] = None, store: ConversationStore = Depends(get_store)):
    owner = require_user_id(user_id)
    try:
        deleted = await store.delete(owner, chat_id)
    except ChatGateError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Chat not found.")
    return {"ok": True}


@router.get("/api/chats/{chat_id}/stream")
async def stream_chat_info(
    chat_id: str,
    user_id: Optional[str] = None,
    store: ConversationStore = Depends(get_store),
    bus: ChatEventBus = Depends(get_event_bus),
):
    owner = require_user_id(user_id)
    key = conversation_key(owner, chat_id)

    async def event_generator():
        queue = await bus.subscribe(key)
        try:
            yield sse_format({"chat_id": chat_id}, "ready")
            record = await store.load(owner, chat_id)
            if record and record.title:
                yield sse_format(
                    {"type": "title", "user_id": owner, "chat_id": chat_id, "content": {"title": record.title}},
                    "chatinfoupdate",
                )
            if record and record.topic:
                yield sse_format(
                    {
                        "type": "topic",
                        "user_id": owner,
                        "chat_id": chat_id,
                        "content": {"topic": record.topic, "ts": record.last_topic_ts},
                    },
                    "chatinfoupdate",
                )
            while True:
                try:
                    ev = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                yield sse_format(ev, "chatinfoupdate")
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(key, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    store: Optional[ConversationStore] = None,
    llm_client: Optional[LLMClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    search_agent: Any = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.store.init()
        logger.info(
            "chatgate ready: store=%s llm=%s search=%s",
            settings.database_path,
            settings.llm_base_url,
            type(app.state.search_agent).__name__ if app.state.search_agent else "disabled",
        )
        try:
            yield
        finally:
            await app.state.enrichment.drain()
            await app.state.llm_client.close()
            agent = app.state.search_agent
            if agent is not None and agent is not app.state.tavily_client:
                await agent.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="ChatGate Conversational Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store or ConversationStore(settings.database_path)
    app.state.llm_client = llm_client or LLMClient(
        settings.llm_base_url,
        max_output_tokens=settings.llm_max_output_tokens,
        timeout=settings.answer_timeout_s or 300.0,
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key)
    app.state.search_agent = (
        search_agent if search_agent is not None else build_search_agent(settings, app.state.tavily_client)
    )
    app.state.queue = InferenceQueue()
    app.state.turn_locks = KeyedLock()
    app.state.bus = ChatEventBus()
    app.state.routing = RoutingEngine(app.state.llm_client, app.state.queue, settings)
    app.state.enrichment = EnrichmentPipeline(
        app.state.llm_client, app.state.queue, app.state.store, app.state.bus, settings
    )
    app.state.executor = TurnExecutor(
        settings=settings,
        store=app.state.store,
        llm=app.state.llm_client,
        queue=app.state.queue,
        turn_locks=app.state.turn_locks,
        routing=app.state.routing,
        enrichment=app.state.enrichment,
        search_agent=app.state.search_agent,
    )
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("CHATGATE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "chatgate.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
