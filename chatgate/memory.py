import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .agents import (
    MEMORY_CURATOR_SYSTEM,
    NON_INFO_HINT,
    SOURCES_EXPLICIT_HINT,
    SOURCES_IMPLICIT_HINT,
    SOURCES_NOT_RELEVANT_HINT,
    SOURCES_RULES,
    TOPIC_HINT_TEMPLATE,
)
from .config import AppSettings
from .schemas import ChatMessage, ConversationRecord
from .text_utils import (
    CHARS_PER_TOKEN,
    estimate_tokens,
    extract_json,
    trim_facts_to_budget,
    trim_to_char_budget,
    trim_to_token_budget,
)

logger = logging.getLogger("uvicorn.error")

Message = Dict[str, str]

SUMMARY_HEADER = "Summary:\n"
FACTS_HEADER = "Facts:\n"
SECTION_SEPARATOR = "\n\n"


def build_memory_block(summary: str, facts: Sequence[str], summary_budget: int, facts_budget: int) -> str:
    """Render stored memory so each section fits its own token budget.

    Headers count against their section and the separator counts against the
    facts section, so the whole block never estimates above the sum of both
    budgets. Neither section borrows unused room from the other.
    """
    parts: List[str] = []
    summary_room = summary_budget * CHARS_PER_TOKEN - len(SUMMARY_HEADER)
    summary_text = (summary or "").strip()
    if summary_text and summary_room > len("..."):
        parts.append(SUMMARY_HEADER + trim_to_char_budget(summary_text, summary_room))

    prefix = (SECTION_SEPARATOR if parts else "") + FACTS_HEADER
    facts_room = facts_budget * CHARS_PER_TOKEN - len(prefix)
    lines: List[str] = []
    used = 0
    for fact in facts or []:
        line = f"- {str(fact).strip()}"
        cost = len(line) + (1 if lines else 0)
        if line == "- " or used + cost > facts_room:
            break
        lines.append(line)
        used += cost
    if lines:
        parts.append(prefix + "\n".join(lines))
    return "".join(parts)


def apply_token_budget(messages: Sequence[Message], budget_tokens: int) -> List[Message]:
    """Keep the newest messages that fit; truncate the newest if it alone overflows."""
    if budget_tokens <= 0:
        return []
    selected: List[Message] = []
    used = 0
    for message in reversed(messages):
        tokens = estimate_tokens(message["content"])
        if used + tokens > budget_tokens:
            if not selected:
                trimmed = trim_to_token_budget(message["content"], max(1, budget_tokens - used))
                selected.append({**message, "content": trimmed})
            break
        selected.append(message)
        used += tokens
    selected.reverse()
    return selected


def select_recent_messages(
    raw_messages: Sequence[ChatMessage], recent_turns: int, budget_tokens: int
) -> List[Message]:
    """Last ``recent_turns - 1`` completed turns (both roles), trimmed oldest-first."""
    prior_turns = max(0, recent_turns - 1)
    if prior_turns == 0:
        return []
    usable = [m.to_prompt() for m in raw_messages if m.content]
    return apply_token_budget(usable[-prior_turns * 2 :], budget_tokens)


def select_recent_user_prompts(raw_messages: Sequence[ChatMessage], count: int, budget_tokens: int) -> List[str]:
    if count <= 0:
        return []
    prompts = [m.to_prompt() for m in raw_messages if m.role == "user" and m.content]
    return [m["content"] for m in apply_token_budget(prompts[-count:], budget_tokens)]


def collect_query_prompts(
    raw_messages: Sequence[ChatMessage], latest_prompt: str, max_prompts: int, budget_tokens: int
) -> List[str]:
    desired = max(1, max_prompts)
    previous = select_recent_user_prompts(raw_messages, desired - 1, budget_tokens)
    combined = [p for p in [*previous, latest_prompt] if p]
    return combined[-desired:]


def build_prompt_messages(
    settings: AppSettings,
    record: ConversationRecord,
    prompt: str,
) -> List[Message]:
    messages: List[Message] = [{"role": "system", "content": settings.system_prompt}]
    block = build_memory_block(
        record.summary, record.facts, settings.summary_token_budget, settings.facts_token_budget
    )
    if block:
        messages.append({"role": "system", "content": block})
    messages.extend(
        select_recent_messages(record.raw_messages, settings.recent_turns, settings.recent_token_budget)
    )
    messages.append({"role": "user", "content": prompt})
    return messages


def inject_topic(messages: List[Message], topic: str) -> List[Message]:
    """Insert the topic hint right after the system instruction and memory block."""
    if not topic or not messages:
        return messages
    insert_at = 2 if len(messages) > 1 and messages[1]["role"] == "system" else 1
    output = list(messages)
    output.insert(insert_at, {"role": "system", "content": TOPIC_HINT_TEMPLATE.format(topic=topic)})
    return output


def _before_prompt(messages: List[Message], content: str) -> List[Message]:
    return [*messages[:-1], {"role": "system", "content": content}, messages[-1]]


def inject_non_info_hint(messages: List[Message], info_seeking: bool) -> List[Message]:
    if info_seeking or not messages:
        return messages
    return _before_prompt(messages, NON_INFO_HINT)


def build_sources_context(sources: Sequence[Dict[str, Any]]) -> str:
    blocks = []
    for idx, source in enumerate([s for s in sources if s and s.get("url")], start=1):
        lines = [f"[{idx}] {source.get('title') or 'Untitled'}", f"URL: {source['url']}"]
        if source.get("summary"):
            lines.append(f"Summary: {source['summary']}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def inject_sources(
    messages: List[Message],
    sources: Sequence[Dict[str, Any]],
    *,
    explicit_search: bool,
    info_seeking: bool,
) -> List[Message]:
    """Splice the numbered source list in immediately before the user prompt."""
    if not messages or not sources:
        return messages
    context = build_sources_context(sources)
    if not context:
        return messages
    if not explicit_search and not info_seeking:
        return _before_prompt(messages, SOURCES_NOT_RELEVANT_HINT)
    mode_hint = SOURCES_EXPLICIT_HINT if explicit_search else SOURCES_IMPLICIT_HINT
    return _before_prompt(messages, f"{mode_hint}\n{SOURCES_RULES}\n\nWeb sources summary:\n{context}")


def messages_since_summary(record: ConversationRecord) -> List[ChatMessage]:
    anchor = record.last_summary_ts
    return [m for m in record.raw_messages if m.ts > anchor]


def should_update_memory(turns_since: int, tokens_since: int, settings: AppSettings) -> bool:
    if turns_since >= settings.summary_every_n_turns:
        return True
    return tokens_since >= settings.summary_token_threshold


def memory_update_due(record: ConversationRecord, settings: AppSettings) -> bool:
    since = messages_since_summary(record)
    turns = sum(1 for m in since if m.role == "user")
    tokens = estimate_tokens("\n".join(m.content for m in since))
    return should_update_memory(turns, tokens, settings)


def _format_for_memory(messages: Sequence[Message]) -> str:
    return "\n".join(
        f"{'Assistant' if m['role'] == 'assistant' else 'User'}: {m['content']}" for m in messages
    )


async def update_memory(
    complete: Callable[[List[Message]], Awaitable[str]],
    previous_summary: str,
    previous_facts: Sequence[str],
    messages_since: Sequence[ChatMessage],
    settings: AppSettings,
) -> Optional[Dict[str, Any]]:
    """Ask the curator model for a new summary and fact list.

    Returns None when the reply does not carry a string ``summary`` and a
    list ``facts``; callers keep the previous memory in that case.
    """
    pruned = apply_token_budget([m.to_prompt() for m in messages_since], settings.memory_update_input_tokens)
    user_prompt = "\n".join(
        [
            f"Summary token budget (approx): {settings.summary_token_budget}",
            f"Facts token budget (approx): {settings.facts_token_budget}",
            "Rules:",
            "- Summary should be concise and stable.",
            "- Facts must be a JSON array of short strings (no markdown).",
            "- Only keep durable user-specific info, goals, or decisions.",
            "",
            "Previous summary:",
            previous_summary or "(empty)",
            "",
            "Previous facts:",
            json.dumps(list(previous_facts or [])),
            "",
            "New messages (chronological):",
            _format_for_memory(pruned) or "(none)",
        ]
    )
    reply = await complete(
        [
            {"role": "system", "content": MEMORY_CURATOR_SYSTEM},
            {"role": "user", "content": user_prompt},
        ]
    )
    parsed = extract_json(reply)
    if not parsed or not isinstance(parsed.get("summary"), str) or not isinstance(parsed.get("facts"), list):
        logger.warning("Memory update discarded: reply failed structural validation")
        return None
    return {
        "summary": trim_to_token_budget(parsed["summary"], settings.summary_token_budget),
        "facts": trim_facts_to_budget(parsed["facts"], settings.facts_token_budget),
    }
