import logging
import re
from typing import List, Optional, Sequence

from .agents import CLASSIFIER_SYSTEM
from .config import AppSettings
from .errors import ChatGateError, MissingRoutingChoice
from .llm_queue import InferenceQueue
from .schemas import RoutingDecision
from .text_utils import collapse_whitespace, extract_json, trim_to_char_budget

logger = logging.getLogger("uvicorn.error")

CLASSIFIER_PROMPT_CHARS = 400
CLASSIFIER_PRIOR_PROMPTS = 2
HEURISTIC_CONFIDENCE = 0.5

EXPLICIT_SEARCH_PHRASES = (
    "search online",
    "search the web",
    "web search",
    "search about",
    "search for",
    "help me search",
    "find online",
    "find the url",
    "find url",
    "get the url",
    "share the url",
    "source url",
    "look it up",
    "look up",
    "browse the web",
    "browse web",
    "google",
    "bing",
    "brave search",
    "list sources",
    "show sources",
    "give me sources",
    "give sources",
)

OPT_OUT_PHRASES = (
    "no web search",
    "do not search",
    "don't search",
    "dont search",
    "without searching",
    "no browsing",
    "do not browse",
    "don't browse",
    "no internet",
    "do not use the internet",
    "don't use the internet",
    "no web",
    "no online",
)

CONVERSATIONAL_PHRASES = (
    "how about you",
    "what about you",
    "and you",
    "how are you",
    "who are you",
    "what are you",
    "what can you do",
    "what do you do",
    "tell me more about you",
    "tell me about yourself",
    "introduce yourself",
    "who made you",
    "who built you",
    "who created you",
    "who trained you",
    "are you real",
    "are you human",
    "your name",
    "are you there",
    "you there",
    "can you hear me",
    "are you listening",
    "thanks",
    "thank you",
    "thx",
    "ty",
    "hi",
    "hello",
    "hey",
    "sup",
    "yo",
    "good morning",
    "good evening",
    "good night",
    "good afternoon",
    "nice to meet you",
    "bye",
    "goodbye",
    "see you",
    "see ya",
    "gn",
)

SHORT_REPLIES = {"ok", "okay", "sure", "cool", "great", "nice", "fine", "alright", "np", "k"}

INFO_TRIGGERS = (
    "what",
    "why",
    "how",
    "when",
    "where",
    "who",
    "which",
    "explain",
    "define",
    "definition",
    "meaning",
    "guide",
    "steps",
    "tutorial",
    "help me",
    "show me",
    "tell me",
    "find",
    "search",
    "lookup",
    "look up",
    "compare",
    "recommend",
    "best",
    "top",
    "list",
    "latest",
    "current",
    "price",
    "cost",
    "schedule",
    "release",
    "deadline",
    "policy",
    "law",
    "regulation",
    "version",
    "api",
    "docs",
    "weather",
    "forecast",
    "temperature",
    "air quality",
)

EMOTIONAL_PHRASES = (
    "i like",
    "i love",
    "i hate",
    "i dislike",
    "i feel",
    "i'm",
    "i am",
    "i enjoy",
    "i prefer",
    "my favorite",
    "i dont like",
    "i don't like",
)

WEB_TRIGGERS = (
    "latest",
    "recent",
    "today",
    "yesterday",
    "tomorrow",
    "this week",
    "this month",
    "this year",
    "current",
    "right now",
    "breaking",
    "news",
    "what's new",
    "happening now",
    "update",
    "updates",
    "just announced",
    "release date",
    "pricing",
    "price",
    "schedule",
    "standings",
    "score",
    "scores",
    "stock",
    "market",
    "exchange rate",
    "weather",
    "forecast",
    "election",
    "poll",
    "polls",
    "source",
    "sources",
    "citation",
    "citations",
    "verify",
)

WEB_TRIGGER_REGEXES = (
    re.compile(r"\bwho\s+is\s+the\s+(current|incumbent)\b", re.IGNORECASE),
    re.compile(
        r"\bcurrent\s+(president|prime minister|pm|ceo|governor|mayor|minister|speaker|chair|director)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(202[5-9]|203\d)\b"),
)

NEGATION_RE = re.compile(r"\b(no|not)\s+(news|recent|latest|update|updates|updated|current)\b")
_NEGATION_PREFIX_RE = re.compile(r"\b(no|not|without|avoid|never)\b")
_CONVERSATIONAL_CLEAN_RE = re.compile(r"[^\w\s?']")


def _contains_word(text: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None


def is_explicit_search_request(prompt: str) -> bool:
    text = str(prompt or "").lower()
    # "no web search" is an opt-out, not a request.
    for phrase in OPT_OUT_PHRASES:
        text = text.replace(phrase, " ")
    if not text.strip():
        return False
    return any(phrase in text for phrase in EXPLICIT_SEARCH_PHRASES)


def has_opt_out(prompt: str) -> bool:
    text = str(prompt or "").lower()
    return any(phrase in text for phrase in OPT_OUT_PHRASES)


def is_conversational_prompt(prompt: str) -> bool:
    normalized = collapse_whitespace(_CONVERSATIONAL_CLEAN_RE.sub(" ", str(prompt or "").lower()))
    if not normalized:
        return False
    bare = normalized.rstrip("?").strip()
    for phrase in CONVERSATIONAL_PHRASES:
        if (
            bare == phrase
            or normalized.startswith(f"{phrase} ")
            or bare.endswith(f" {phrase}")
            or f" {phrase} " in normalized
        ):
            return True
    return len(bare) <= 12 and bare in SHORT_REPLIES


def is_information_seeking(prompt: str) -> bool:
    """Lexical fallback used when the classifier is skipped or fails."""
    text = str(prompt or "").lower().strip()
    if not text or is_conversational_prompt(text):
        return False
    if is_explicit_search_request(text) or "?" in text:
        return True
    # Statements about the user ("i love ...", "i'm tired") are conversational.
    if text.startswith(EMOTIONAL_PHRASES):
        return False
    return any(_contains_word(text, trigger) for trigger in INFO_TRIGGERS)


def _is_negated(text: str, phrase: str) -> bool:
    if NEGATION_RE.search(text):
        return True
    start = text.find(phrase)
    while start != -1:
        prefix = text[max(0, start - 12) : start]
        if _NEGATION_PREFIX_RE.search(prefix):
            return True
        start = text.find(phrase, start + len(phrase))
    return False


def needs_fresh_information(prompt: str) -> bool:
    text = str(prompt or "").lower()
    if not text.strip() or has_opt_out(text):
        return False
    for phrase in WEB_TRIGGERS:
        if _contains_word(text, phrase) and not _is_negated(text, phrase):
            return True
    return any(regex.search(prompt) for regex in WEB_TRIGGER_REGEXES)


def heuristic_decision(prompt: str, override: bool, reason: str = "heuristic") -> RoutingDecision:
    info = is_information_seeking(prompt)
    needs_web = info or needs_fresh_information(prompt)
    return RoutingDecision(
        use_web=bool(override and (info or needs_web)),
        info_seeking=info,
        needs_web=needs_web,
        confidence=HEURISTIC_CONFIDENCE,
        reason=reason,
        source="heuristic",
    )


class RoutingEngine:
    """Resolves local vs web-augmented answering for one prompt."""

    def __init__(self, llm, queue: InferenceQueue, settings: AppSettings):
        self.llm = llm
        self.queue = queue
        self.settings = settings

    async def decide(
        self,
        prompt: str,
        override: Optional[bool],
        *,
        prior_prompts: Optional[Sequence[str]] = None,
        model_id: Optional[str] = None,
    ) -> RoutingDecision:
        if override is None:
            raise MissingRoutingChoice()
        if override is False:
            return RoutingDecision(
                use_web=False,
                info_seeking=is_information_seeking(prompt),
                confidence=1.0,
                reason="client_override_off",
                source="explicit",
            )
        if is_explicit_search_request(prompt):
            return RoutingDecision(
                use_web=True,
                info_seeking=not is_conversational_prompt(prompt),
                needs_web=True,
                explicit_search=True,
                confidence=1.0,
                reason="explicit_search",
                source="explicit",
            )
        if has_opt_out(prompt):
            return RoutingDecision(
                use_web=False,
                info_seeking=is_information_seeking(prompt),
                confidence=1.0,
                reason="opt_out",
                source="explicit",
            )
        if is_conversational_prompt(prompt):
            return RoutingDecision(
                use_web=False,
                info_seeking=False,
                confidence=1.0,
                reason="conversational",
                source="heuristic",
            )
        seed = trim_to_char_budget(collapse_whitespace(prompt), CLASSIFIER_PROMPT_CHARS)
        if not seed:
            return heuristic_decision(prompt, override)
        try:
            return await self._classify(seed, list(prior_prompts or []), model_id)
        except ChatGateError as exc:
            logger.warning("Routing classifier failed (%s); using lexical heuristic", exc.message)
            return heuristic_decision(prompt, override)

    async def _classify(self, seed: str, prior_prompts: List[str], model_id: Optional[str]) -> RoutingDecision:
        lines = [f"Prompt: {seed}"]
        prior = [collapse_whitespace(p) for p in prior_prompts[-CLASSIFIER_PRIOR_PROMPTS:] if p]
        if prior:
            lines.append("Earlier prompts (context only):")
            lines.extend(f"- {trim_to_char_budget(p, 200)}" for p in prior)
        messages = [
            {"role": "system", "content": CLASSIFIER_SYSTEM},
            {"role": "user", "content": "\n".join(lines)},
        ]
        model = self.settings.model_for("info_seeking", model_id)
        raw = await self.queue.admit(
            lambda: self.llm.chat(model, messages, temperature=0, max_tokens=200, options={"top_p": 0.1}),
            timeout=self.settings.classifier_timeout_s,
            label="classifier",
        )
        parsed = extract_json(raw)
        if parsed is None:
            logger.warning("Routing classifier returned no JSON; using lexical heuristic")
            return heuristic_decision(seed, True)
        fallback_info = is_information_seeking(seed)
        info = parsed.get("info_seeking")
        needs_web = parsed.get("needs_web")
        if not isinstance(info, bool):
            info = needs_web if isinstance(needs_web, bool) else fallback_info
        if not isinstance(needs_web, bool):
            needs_web = info
        confidence = parsed.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = HEURISTIC_CONFIDENCE
        reason = parsed.get("reason")
        reason = reason.strip() if isinstance(reason, str) and reason.strip() else "classifier"
        return RoutingDecision(
            use_web=bool(info or needs_web),
            info_seeking=info,
            needs_web=needs_web,
            confidence=min(1.0, max(0.0, float(confidence))),
            reason=reason,
            source="classifier",
        )
