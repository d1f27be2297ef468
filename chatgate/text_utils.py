import json
import math
import re
import time
from typing import Any, Dict, List, Optional

CHARS_PER_TOKEN = 4
ELLIPSIS = "..."

_WHITESPACE_RE = re.compile(r"\s+")
_COMPARE_STRIP_RE = re.compile(r"[^\w\s'-]")
_EDGE_QUOTES_RE = re.compile("^[\"'“”]+|[\"'“”]+$")
_TRAILING_PUNCT_RE = re.compile(r"[.?!]+$")


def now_ms() -> int:
    return int(time.time() * 1000)


def estimate_tokens(text: Optional[str]) -> int:
    """Coarse token estimate: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def trim_to_char_budget(text: Optional[str], max_chars: int) -> str:
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - len(ELLIPSIS))] + ELLIPSIS


def trim_to_token_budget(text: Optional[str], budget_tokens: int) -> str:
    if not text or budget_tokens <= 0:
        return ""
    return trim_to_char_budget(text, budget_tokens * CHARS_PER_TOKEN)


def trim_facts_to_budget(facts: Any, budget_tokens: int) -> List[str]:
    if not isinstance(facts, list):
        return []
    kept: List[str] = []
    used = 0
    for fact in facts:
        text = str(fact).strip()
        if not text:
            continue
        tokens = estimate_tokens(text)
        if used + tokens > budget_tokens:
            break
        kept.append(text)
        used += tokens
    return kept


def collapse_whitespace(value: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(value or "")).strip()


def trim_words(value: Any, max_words: int) -> str:
    text = collapse_whitespace(value)
    if not text or max_words <= 0:
        return text
    return " ".join(text.split(" ")[:max_words])


def strip_edge_quotes(value: str) -> str:
    return _EDGE_QUOTES_RE.sub("", value).strip()


def strip_trailing_punctuation(value: str) -> str:
    return _TRAILING_PUNCT_RE.sub("", value).strip()


def normalize_for_compare(value: Any) -> str:
    text = _COMPARE_STRIP_RE.sub(" ", str(value or "").lower())
    return collapse_whitespace(text)


def summarize_text(value: Any, max_chars: int = 120) -> str:
    return trim_to_char_budget(collapse_whitespace(value), max_chars)


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse the outermost JSON object embedded in a model reply."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
