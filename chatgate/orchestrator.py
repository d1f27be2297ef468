import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from .agents import SEARCH_QUERY_SYSTEM, build_search_query_prompt
from .config import AppSettings
from .enrichment import EnrichmentJob, EnrichmentPipeline
from .errors import ChatGateError, MalformedUpstreamResponse, MissingRoutingChoice, UpstreamTimeout
from .llm_queue import InferenceQueue
from .locks import KeyedLock
from .memory import (
    build_prompt_messages,
    collect_query_prompts,
    inject_non_info_hint,
    inject_sources,
    inject_topic,
)
from .routing import RoutingEngine
from .schemas import ChatMessage, ChatTurnRequest, ConversationRecord, IdempotencyEntry, RoutingDecision
from .store import ConversationStore
from .text_utils import collapse_whitespace, now_ms, strip_edge_quotes, strip_trailing_punctuation, trim_words
from .web_agent import SearchProgress, digest_prompt

logger = logging.getLogger("uvicorn.error")

ANSWER_TEMPERATURE = 0.2
ANSWER_MAX_TOKENS = 2048
QUERY_MAX_TOKENS = 64

Event = Dict[str, Any]


def stage_event(stage: str, **fields: Any) -> Event:
    return {"stage": stage, **fields, "done": False}


def analysis_event(content: str) -> Event:
    return stage_event("analysis", content=content)


def final_event(chat_id: str, answer: str, sources: List[Dict[str, Any]], topic: str) -> Event:
    return {
        "stage": "final",
        "message": {"role": "assistant", "content": answer},
        "sources": list(sources),
        "chat_id": chat_id,
        "topic": topic,
        "done": True,
    }


def fallback_query(prompt: str, max_words: int) -> str:
    return trim_words(collapse_whitespace(prompt), max_words)


def clean_query(raw: str, max_words: int) -> str:
    first_line = (raw or "").strip().split("\n")[0]
    return trim_words(strip_trailing_punctuation(strip_edge_quotes(collapse_whitespace(first_line))), max_words)


@dataclass
class TurnState:
    turn: ChatTurnRequest
    record: ConversationRecord
    stage: str = "routing"
    decision: Optional[RoutingDecision] = None
    query: str = ""
    sources: List[Dict[str, Any]] = field(default_factory=list)
    answer: str = ""

    @property
    def model_id(self) -> str:
        return self.turn.model_id or ""


class TurnExecutor:
    """Drives one chat turn: routing, optional search, answer, persistence.

    ``run_turn`` is the only producer of a turn's client-visible events. It
    holds the conversation's lock from the first read of the record until the
    new user/assistant pair is persisted, so turns on one conversation never
    interleave while different conversations proceed independently. Inference
    calls additionally pass through the process-wide ``InferenceQueue``.
    """

    def __init__(
        self,
        *,
        settings: AppSettings,
        store: ConversationStore,
        llm,
        queue: InferenceQueue,
        turn_locks: KeyedLock,
        routing: RoutingEngine,
        enrichment: EnrichmentPipeline,
        search_agent=None,
    ):
        self.settings = settings
        self.store = store
        self.llm = llm
        self.queue = queue
        self.turn_locks = turn_locks
        self.routing = routing
        self.enrichment = enrichment
        self.search_agent = search_agent

    async def run_turn(self, turn: ChatTurnRequest) -> AsyncGenerator[Event, None]:
        if turn.use_web is None:
            raise MissingRoutingChoice()
        cached = await self._lookup_replay(turn)
        if cached is not None:
            for event in cached:
                yield event
            return

        final: Optional[Event] = None
        job: Optional[EnrichmentJob] = None
        async with self.turn_locks.hold(turn.conversation_key):
            record, created = await self.store.get_or_create(turn.user_id, turn.chat_id)
            if created:
                logger.info("Created conversation %s for %s", turn.chat_id, turn.user_id)
            entry = record.idempotency.get(turn.message_id)
            if entry is not None:
                # A duplicate that queued behind the original delivery.
                for event in self._replay_events(record, turn.message_id, entry):
                    yield event
                return
            state = TurnState(turn=turn, record=record)
            try:
                async with aclosing(self._execute(state)) as events:
                    async for event in events:
                        yield event
            except (GeneratorExit, asyncio.CancelledError):
                logger.info(
                    "Client left turn %s/%s during %s; not persisting", turn.chat_id, turn.message_id, state.stage
                )
                raise
            state.stage = "finalizing"
            saved, job = await self._finalize(state)
            final = final_event(turn.chat_id, state.answer, state.sources, saved.topic)
        if job is not None:
            self.enrichment.schedule(job)
        yield final

    async def complete_turn(self, turn: ChatTurnRequest) -> Event:
        """Run a turn without a client stream and return its final event."""
        final: Optional[Event] = None
        async with aclosing(self.run_turn(turn)) as events:
            async for event in events:
                if event.get("stage") == "final":
                    final = event
        if final is None:
            raise ChatGateError("Turn ended without an answer.")
        return final

    async def _lookup_replay(self, turn: ChatTurnRequest) -> Optional[List[Event]]:
        record = await self.store.load(turn.user_id, turn.chat_id)
        if record is None:
            return None
        entry = record.idempotency.get(turn.message_id)
        if entry is None:
            return None
        return self._replay_events(record, turn.message_id, entry)

    def _replay_events(self, record: ConversationRecord, message_id: str, entry: IdempotencyEntry) -> List[Event]:
        logger.info("Replaying cached answer for %s/%s", record.chat_id, message_id)
        events: List[Event] = []
        if entry.sources:
            events.append(stage_event("sources", sources=list(entry.sources)))
        events.append(final_event(record.chat_id, entry.answer, entry.sources, record.topic))
        return events

    async def _execute(self, state: TurnState) -> AsyncGenerator[Event, None]:
        turn = state.turn
        yield stage_event("routing", content="Choosing between local model and web search.")
        decision = await self.routing.decide(
            turn.prompt,
            turn.use_web,
            prior_prompts=state.record.prior_user_prompts(),
            model_id=turn.model_id,
        )
        state.decision = decision
        logger.info(
            "Routing %s: use_web=%s info_seeking=%s source=%s reason=%s",
            turn.conversation_key,
            decision.use_web,
            decision.info_seeking,
            decision.source,
            decision.reason,
        )
        yield decision.to_event()
        if turn.use_web and not decision.use_web and not decision.info_seeking:
            yield analysis_event("Web search skipped for non-information prompt.")

        messages = build_prompt_messages(self.settings, state.record, turn.prompt)
        messages = inject_topic(messages, state.record.topic)
        messages = inject_non_info_hint(messages, decision.info_seeking)

        if decision.use_web:
            state.stage = "search"
            async with aclosing(self._augment(state)) as events:
                async for event in events:
                    yield event
            messages = inject_sources(
                messages,
                state.sources,
                explicit_search=decision.explicit_search,
                info_seeking=decision.info_seeking,
            )
        else:
            yield stage_event("digest_prompt", content=digest_prompt(turn.prompt))
            yield analysis_event("Using local model.")

        state.stage = "answering"
        async with aclosing(self._answer(state, messages)) as events:
            async for event in events:
                yield event

    async def _generate_query(self, state: TurnState) -> Tuple[str, Optional[str]]:
        """Return the search query and an optional note when the fallback was used."""
        turn = state.turn
        max_words = self.settings.query_max_words
        prompts = collect_query_prompts(
            state.record.raw_messages,
            turn.prompt,
            self.settings.query_context_turns,
            self.settings.recent_token_budget,
        )
        latest, prior = prompts[-1], prompts[:-1]
        messages = [
            {"role": "system", "content": SEARCH_QUERY_SYSTEM.format(max_words=max_words)},
            {"role": "user", "content": build_search_query_prompt(latest, prior)},
        ]
        model = turn.model_id or self.settings.default_model_id
        fallback = fallback_query(turn.prompt, max_words)
        try:
            raw = await self.queue.admit(
                lambda: self.llm.chat(model, messages, temperature=0.2, max_tokens=QUERY_MAX_TOKENS),
                timeout=self.settings.query_timeout_s,
                label="search_query",
            )
        except UpstreamTimeout:
            logger.warning("Search query generation timed out for %s; using prompt", turn.conversation_key)
            return fallback, "Search query generation timed out; searching with the prompt."
        except ChatGateError as exc:
            logger.warning("Search query generation failed for %s: %s", turn.conversation_key, exc.message)
            return fallback, "Search query generation failed; searching with the prompt."
        query = clean_query(raw, max_words)
        if not query:
            logger.warning("Search query generation returned nothing for %s; using prompt", turn.conversation_key)
            return fallback, "Search query generation returned nothing; searching with the prompt."
        return query, None

    def _search_context(self, turn: ChatTurnRequest) -> Dict[str, Any]:
        return {
            "user_id": turn.user_id,
            "chat_id": turn.chat_id,
            "message_id": turn.message_id,
            "client_ts": turn.client_ts,
            "model_id": turn.model_id,
        }

    async def _augment(self, state: TurnState) -> AsyncGenerator[Event, None]:
        turn = state.turn
        yield analysis_event("Generating search query.")
        query, note = await self._generate_query(state)
        state.query = query
        if note:
            yield analysis_event(note)

        agent = self.search_agent
        relayed_sources = False
        if agent is None:
            logger.warning("Web search requested for %s but no search agent is configured", turn.conversation_key)
            yield stage_event("web_agent_unavailable", error="No web search agent is configured.")
        elif turn.stream:
            progress = SearchProgress()
            failure = None
            try:
                async with aclosing(agent.stream_search(query, self._search_context(turn))) as events:
                    async for event in events:
                        yield progress.observe(event)
            except ChatGateError as exc:
                failure = exc.message
            if progress.completed and failure is None:
                state.sources = progress.sources
                relayed_sources = progress.saw_sources
            else:
                failure = failure or "Web agent did not complete."
                logger.warning("Web agent failed for %s: %s", turn.conversation_key, failure)
                yield stage_event("web_agent_failed", error=failure)
        else:
            try:
                state.sources = await agent.search(query, self._search_context(turn))
            except ChatGateError as exc:
                logger.warning("Web agent failed for %s: %s", turn.conversation_key, exc.message)
                yield stage_event("web_agent_failed", error=exc.message)

        if state.sources and not relayed_sources:
            yield stage_event("sources", sources=list(state.sources))
        if state.sources:
            yield analysis_event(f"Using {len(state.sources)} web sources.")
        else:
            yield analysis_event("No web sources available; answering locally.")

    async def _answer(self, state: TurnState, messages: List[Dict[str, str]]) -> AsyncGenerator[Event, None]:
        turn = state.turn
        model = turn.model_id or self.settings.default_model_id
        if turn.stream:
            parts: List[str] = []
            timeout = self.settings.answer_timeout_s
            async with self.queue.slot("answer"):
                # Stalled reads are bounded by the client timeout; this bounds the whole stream.
                deadline = asyncio.get_running_loop().time() + timeout if timeout else None
                deltas = self.llm.stream_chat(
                    model, messages, temperature=ANSWER_TEMPERATURE, max_tokens=ANSWER_MAX_TOKENS
                )
                async with aclosing(deltas) as stream:
                    async for delta in stream:
                        if deadline is not None and asyncio.get_running_loop().time() > deadline:
                            logger.warning(
                                "Answer stream for %s passed %.1fs; aborting", turn.conversation_key, timeout
                            )
                            raise UpstreamTimeout(f"answer timed out after {timeout:g}s")
                        parts.append(delta)
                        yield stage_event("token", message={"role": "assistant", "content": delta})
            answer = "".join(parts)
        else:
            answer = await self.queue.admit(
                lambda: self.llm.chat(model, messages, temperature=ANSWER_TEMPERATURE, max_tokens=ANSWER_MAX_TOKENS),
                timeout=self.settings.answer_timeout_s,
                label="answer",
            )
        answer = (answer or "").strip()
        if not answer:
            raise MalformedUpstreamResponse("Inference backend returned an empty answer.")
        state.answer = answer

    async def _finalize(self, state: TurnState) -> Tuple[ConversationRecord, EnrichmentJob]:
        turn = state.turn
        user_ts = turn.client_ts if turn.client_ts is not None else now_ms()
        answer_ts = max(now_ms(), user_ts)
        entry = IdempotencyEntry(answer=state.answer, ts=answer_ts, sources=list(state.sources))

        def apply(record: ConversationRecord):
            record.raw_messages.append(
                ChatMessage(role="user", content=turn.prompt, ts=user_ts, message_id=turn.message_id)
            )
            record.raw_messages.append(
                ChatMessage(role="assistant", content=state.answer, ts=answer_ts, polished=False)
            )
            record.last_message_ts = answer_ts
            record.last_updated_ts = answer_ts
            record.idempotency[turn.message_id] = entry

        saved = await self.store.update(turn.user_id, turn.chat_id, apply)
        if saved is None:
            # Deleted while the turn was running; recreate it with this turn.
            record, _ = await self.store.get_or_create(turn.user_id, turn.chat_id)
            apply(record)
            saved = await self.store.save(record)
        state.record = saved
        logger.info(
            "Persisted turn %s/%s (%d chars, %d sources)",
            turn.chat_id,
            turn.message_id,
            len(state.answer),
            len(state.sources),
        )
        decision = state.decision
        job = EnrichmentJob(
            user_id=turn.user_id,
            chat_id=turn.chat_id,
            prompt=turn.prompt,
            answer=state.answer,
            message_id=turn.message_id,
            model_id=state.model_id,
            message_ts=user_ts,
            answer_ts=answer_ts,
            info_seeking=decision.info_seeking if decision else True,
            confidence=decision.confidence if decision else 1.0,
            sources=list(state.sources),
        )
        return saved, job
