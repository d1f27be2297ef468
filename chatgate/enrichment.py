import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .agents import POLISHER_SYSTEM, TITLE_SYSTEM, TOPIC_SYSTEM, build_title_prompt, build_topic_prompt
from .config import AppSettings
from .errors import ChatGateError
from .events import ChatEventBus
from .llm_queue import InferenceQueue
from .memory import memory_update_due, messages_since_summary, update_memory
from .routing import is_conversational_prompt
from .schemas import ConversationRecord
from .store import ConversationStore
from .text_utils import (
    collapse_whitespace,
    extract_json,
    normalize_for_compare,
    now_ms,
    strip_edge_quotes,
    strip_trailing_punctuation,
    summarize_text,
    trim_to_char_budget,
    trim_words,
)

logger = logging.getLogger("uvicorn.error")

LABEL_OPTIONS = {"repeat_penalty": 1.2}
FIRST_TEMPERATURE = 0.2
RETRY_TEMPERATURE = 0.7
TOPIC_WINDOW = 4
TOPIC_LINE_WORDS = 20
TOPIC_MAX_CHARS = 80
TITLE_SEED_CHARS = 240
FALLBACK_TITLE_WORDS = 8
POLISH_PROMPT_CHARS = 400

_LEAD_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^please\s+",
        r"^(do you know( about)?|do you remember|do you have info on)\s+",
        r"^(tell me about|tell me|explain)\s+",
        r"^(what is|who is|where is|when is|why is|how is|how to|how do i|how do you)\s+",
        r"^(can you|could you|would you|will you)\s+",
        r"^(find( me)?|search( for)?|look up)\s+",
        r"^(give me|list|show me)\s+",
    )
]
_SEED_STRIP_RE = re.compile(r"[^\w\s'-]")


def strip_prompt_lead(text: str) -> str:
    cleaned = text.strip()
    changed = True
    while changed:
        changed = False
        for pattern in _LEAD_PATTERNS:
            stripped = pattern.sub("", cleaned, count=1).strip()
            if stripped and stripped != cleaned:
                cleaned, changed = stripped, True
    return cleaned


def _seed(prompt: str, lowercase: bool) -> str:
    text = str(prompt or "")
    if lowercase:
        text = text.lower()
    cleaned = collapse_whitespace(_SEED_STRIP_RE.sub(" ", text))
    if not cleaned:
        return ""
    return strip_prompt_lead(cleaned) or cleaned


def fallback_title(prompt: str, max_chars: int) -> str:
    seed = _seed(prompt, lowercase=False)
    if not seed:
        return ""
    return trim_to_char_budget(trim_words(seed, FALLBACK_TITLE_WORDS), max_chars)


def fallback_topic(prompt: str, current_topic: str, max_words: int) -> str:
    seed = _seed(prompt, lowercase=True)
    if not seed or is_conversational_prompt(seed):
        return current_topic
    words = seed.split(" ")
    if len(words) <= 2 and current_topic:
        return current_topic
    return " ".join(words[: max(1, max_words)])


def is_too_similar(candidate: str, source: str) -> bool:
    a = normalize_for_compare(candidate)
    b = normalize_for_compare(source)
    if not a or not b:
        return False
    return a == b or (a in b and len(a) >= 8)


def strip_trailing_think(value: str, seed: str) -> str:
    """Drop a dangling "think"/"thinking" some reasoning models append."""
    words = value.split()
    if not words:
        return ""
    last = words[-1].lower()
    if last not in ("think", "thinking") or last in normalize_for_compare(seed):
        return value
    return " ".join(words[:-1]).strip()


def clean_label(reply: str, key: str, max_words: int, seed: str) -> str:
    parsed = extract_json(reply)
    if parsed and isinstance(parsed.get(key), str):
        raw = parsed[key]
    else:
        raw = (reply or "").strip().split("\n")[0]
    text = strip_trailing_punctuation(strip_edge_quotes(collapse_whitespace(raw)))
    return strip_trailing_think(trim_words(text, max_words), seed)


def recent_topic_lines(record: ConversationRecord, fallback_prompt: str, limit: int = TOPIC_WINDOW) -> List[str]:
    lines = []
    for message in record.raw_messages[-limit:]:
        content = trim_words(message.content, TOPIC_LINE_WORDS)
        if content:
            lines.append(f"{message.role}: {content}")
    if lines:
        return lines
    fallback = collapse_whitespace(fallback_prompt)
    return [fallback] if fallback else []


@dataclass
class EnrichmentJob:
    user_id: str
    chat_id: str
    prompt: str
    answer: str
    message_id: str
    model_id: str
    message_ts: int
    answer_ts: int
    info_seeking: bool = True
    confidence: float = 1.0
    sources: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def chat_key(self) -> str:
        return f"{self.user_id}:{self.chat_id}"


class EnrichmentPipeline:
    """Best-effort post-answer updates: title, topic, polish and memory.

    Runs as tracked background tasks after a turn is persisted. Every model
    call goes through the inference queue and every record change goes
    through ``ConversationStore.update`` so a concurrent turn is never lost.
    """

    def __init__(
        self,
        llm,
        queue: InferenceQueue,
        store: ConversationStore,
        bus: ChatEventBus,
        settings: AppSettings,
    ):
        self.llm = llm
        self.queue = queue
        self.store = store
        self.bus = bus
        self.settings = settings
        self.tasks: Set[asyncio.Task] = set()

    def schedule(self, job: EnrichmentJob) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(job))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled job (used on shutdown and in tests)."""
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def _guarded(self, job: EnrichmentJob) -> None:
        timeout = self.settings.post_answer_timeout_s or None
        try:
            await asyncio.wait_for(self.run(job), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Post-answer updates for %s timed out after %ss", job.chat_key, timeout)
        except Exception:
            logger.exception("Post-answer updates for %s failed", job.chat_key)

    async def run(self, job: EnrichmentJob) -> None:
        for step in (self.update_title, self.update_topic, self.maybe_polish, self.maybe_update_memory):
            try:
                await step(job)
            except ChatGateError as exc:
                logger.warning("%s for %s failed: %s", step.__name__, job.chat_key, exc.message)

    async def _complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        *,
        label: str,
        temperature: float = FIRST_TEMPERATURE,
        timeout: Optional[float] = None,
        options: Optional[Dict[str, Any]] = None,
        max_tokens: int = 256,
    ) -> str:
        return await self.queue.admit(
            lambda: self.llm.chat(model, messages, temperature=temperature, max_tokens=max_tokens, options=options),
            timeout=timeout or None,
            label=label,
        )

    async def _generate_label(
        self,
        *,
        label: str,
        system: str,
        build_prompt,
        seed: str,
        max_words: int,
        model: str,
        timeout: Optional[float],
    ) -> str:
        """One attempt, then one relaxed retry when the reply is empty or parrots the seed."""
        first = await self._complete(
            model,
            [{"role": "system", "content": system}, {"role": "user", "content": build_prompt(False)}],
            label=label,
            timeout=timeout,
            options=LABEL_OPTIONS,
        )
        cleaned = clean_label(first, label, max_words, seed)
        if cleaned and not is_too_similar(cleaned, seed):
            return cleaned
        logger.warning("[%s] empty or similar response, retrying with relaxed sampling", label)
        retry = await self._complete(
            model,
            [{"role": "system", "content": system}, {"role": "user", "content": build_prompt(True)}],
            label=label,
            temperature=RETRY_TEMPERATURE,
            timeout=timeout,
            options=LABEL_OPTIONS,
        )
        return clean_label(retry, label, max_words, seed)

    async def update_title(self, job: EnrichmentJob) -> Optional[str]:
        record = await self.store.load(job.user_id, job.chat_id)
        if record is None or record.title:
            return None
        first_prompt = record.first_user_prompt(job.prompt)
        if not first_prompt.strip():
            return None
        seed = summarize_text(first_prompt, TITLE_SEED_CHARS)
        title = ""
        try:
            title = await self._generate_label(
                label="title",
                system=TITLE_SYSTEM,
                build_prompt=lambda strict: build_title_prompt(seed, self.settings.title_max_words, strict),
                seed=seed,
                max_words=self.settings.title_max_words,
                model=self.settings.model_for("title", job.model_id),
                timeout=self.settings.title_timeout_s,
            )
        except ChatGateError as exc:
            logger.warning("Title generation failed for %s: %s", job.chat_key, exc.message)
        title = trim_to_char_budget(title, self.settings.title_max_chars) if title else ""
        if not title:
            title = fallback_title(first_prompt, self.settings.title_max_chars)
        if not title:
            return None

        def apply(rec: ConversationRecord):
            if rec.title:
                return False
            rec.title = title

        saved = await self.store.update(job.user_id, job.chat_id, apply)
        if saved is None:
            return None
        logger.info("[title] set for %s: %s", job.chat_key, title)
        await self.bus.publish(job.chat_key, "title", job.user_id, job.chat_id, {"title": title})
        return title

    async def update_topic(self, job: EnrichmentJob) -> Optional[str]:
        record = await self.store.load(job.user_id, job.chat_id)
        if record is None:
            return None
        current = record.topic or ""
        lines = recent_topic_lines(record, job.prompt)
        max_words = self.settings.topic_max_words
        candidate = ""
        try:
            candidate = await self._generate_label(
                label="topic",
                system=TOPIC_SYSTEM,
                build_prompt=lambda strict: build_topic_prompt(
                    [trim_to_char_budget(line, 200) for line in lines], max_words, strict
                ),
                seed=job.prompt,
                max_words=max_words,
                model=self.settings.model_for("topic", job.model_id),
                timeout=self.settings.topic_timeout_s,
            )
        except ChatGateError as exc:
            logger.warning("Topic generation failed for %s: %s", job.chat_key, exc.message)
        candidate = trim_to_char_budget(candidate, TOPIC_MAX_CHARS)
        if not candidate:
            candidate = fallback_topic(job.prompt, current, max_words)
        if not candidate or candidate.strip().lower() == current.strip().lower():
            logger.info("[topic] unchanged for %s", job.chat_key)
            return None

        def apply(rec: ConversationRecord):
            if rec.topic.strip().lower() == candidate.strip().lower():
                return False
            rec.topic = candidate
            rec.last_topic_ts = job.message_ts

        saved = await self.store.update(job.user_id, job.chat_id, apply)
        if saved is None:
            return None
        logger.info("[topic] %s -> %s", job.chat_key, candidate)
        await self.bus.publish(
            job.chat_key,
            "topic",
            job.user_id,
            job.chat_id,
            {"topic": candidate, "ts": saved.last_topic_ts},
        )
        return candidate

    async def maybe_polish(self, job: EnrichmentJob) -> bool:
        answer = (job.answer or "").strip()
        if len(answer) < self.settings.polish_min_chars:
            logger.info(
                "[polish] skipped for %s (%d chars < %d)", job.chat_key, len(answer), self.settings.polish_min_chars
            )
            return False
        logger.info(
            "[polish] start for %s (%d chars, %d sources, confidence %.2f)",
            job.chat_key,
            len(answer),
            len(job.sources),
            job.confidence,
        )
        user_prompt = "\n".join(
            [
                "User prompt:",
                summarize_text(job.prompt, POLISH_PROMPT_CHARS),
                "",
                "Original answer:",
                answer,
            ]
        )
        polished = await self._complete(
            self.settings.model_for("polish", job.model_id),
            [{"role": "system", "content": POLISHER_SYSTEM}, {"role": "user", "content": user_prompt}],
            label="polish",
            timeout=self.settings.polish_timeout_s,
            max_tokens=2048,
        )
        cleaned = (polished or "").strip()
        if not cleaned:
            logger.warning("[polish] empty response for %s", job.chat_key)
            return False
        if normalize_for_compare(cleaned) == normalize_for_compare(answer):
            logger.info("[polish] no change for %s", job.chat_key)
            return False

        def apply(rec: ConversationRecord):
            target = None
            for idx, message in enumerate(rec.raw_messages):
                if message.role == "user" and message.message_id == job.message_id:
                    nxt = idx + 1
                    if nxt < len(rec.raw_messages) and rec.raw_messages[nxt].role == "assistant":
                        target = rec.raw_messages[nxt]
                    break
            if target is None:
                return False
            target.content = cleaned
            target.polished = True
            entry = rec.idempotency.get(job.message_id)
            if entry is not None:
                entry.answer = cleaned
                entry.polished = True
            rec.last_updated_ts = now_ms()

        saved = await self.store.update(job.user_id, job.chat_id, apply)
        if saved is None:
            return False
        logger.info("[polish] applied for %s (%d chars)", job.chat_key, len(cleaned))
        await self.bus.publish(
            job.chat_key,
            "answer",
            job.user_id,
            job.chat_id,
            {"answer": cleaned, "ts": saved.last_updated_ts, "polished": True, "message_id": job.message_id},
        )
        return True

    async def maybe_update_memory(self, job: EnrichmentJob) -> bool:
        record = await self.store.load(job.user_id, job.chat_id)
        if record is None or not memory_update_due(record, self.settings):
            return False
        since = messages_since_summary(record)
        model = self.settings.model_for("memory", job.model_id)
        updated = await update_memory(
            lambda messages: self._complete(model, messages, label="memory", max_tokens=1024),
            record.summary,
            record.facts,
            since,
            self.settings,
        )
        if updated is None:
            return False
        boundary = max(m.ts for m in since)

        def apply(rec: ConversationRecord):
            rec.summary = updated["summary"]
            rec.facts = updated["facts"]
            rec.last_summary_ts = max(rec.last_summary_ts, boundary)

        saved = await self.store.update(job.user_id, job.chat_id, apply)
        if saved is not None:
            logger.info("[memory] updated for %s (%d facts)", job.chat_key, len(saved.facts))
        return saved is not None
