"""Prompt texts for the answering model and its helper calls."""

CLASSIFIER_SYSTEM = (
    "You are a routing classifier. Decide if the user prompt is information-seeking. "
    "Set needs_web=true if the question is time-sensitive, requires verification, or you are unsure. "
    "Return only JSON with keys: info_seeking (boolean), needs_web (boolean), "
    "confidence (0-1), reason (string)."
)

SEARCH_QUERY_SYSTEM = (
    "You create search engine queries. "
    "Use the latest user prompt, and only use prior prompts if the latest lacks context. "
    "Return only the query text (no quotes, no punctuation, no extra words). "
    "Keep it within {max_words} words."
)

TITLE_SYSTEM = (
    'Return a JSON object with a "title" string only. '
    "Do not copy the prompt verbatim. "
    "No analysis. No extra keys."
)

TOPIC_SYSTEM = (
    'Return a JSON object with a "topic" string only. '
    "Do not copy the prompt verbatim. "
    "Output at least one word. No analysis."
)

MEMORY_CURATOR_SYSTEM = (
    "You are a memory curator for a chat assistant. "
    "Update the summary and facts based on the new messages. "
    'Return JSON only with keys "summary" and "facts".'
)

POLISHER_SYSTEM = (
    "You are a response polisher. Improve clarity and structure. "
    "Do not add new facts. If unsure, say you are not sure. "
    "Keep it concise and preserve any citations already present."
)

NON_INFO_HINT = (
    "The user prompt is conversational/emotional and not information-seeking. "
    "Respond naturally and empathetically. Do not provide list-style or search-style answers. "
    "Do not mention web search unless asked."
)

SOURCES_NOT_RELEVANT_HINT = (
    "The user prompt is not information-seeking. Respond naturally and empathetically. "
    "Do not mention web sources unless the user asked for them."
)

SOURCES_EXPLICIT_HINT = "User explicitly requested web search results. Provide a concise summary of the sources."
SOURCES_IMPLICIT_HINT = (
    "User did not explicitly ask for search results. "
    "Provide your own answer and use sources only to improve factual accuracy."
)
SOURCES_RULES = (
    "If the sources do not help answer a factual question, say you do not know.\n"
    "If the user prompt is emotional or not information-seeking, respond empathetically and you may ignore the sources.\n"
    "When you use sources, cite them with plain URLs in parentheses."
)

TOPIC_HINT_TEMPLATE = "Current chat topic: {topic}"


def build_title_prompt(seed: str, max_words: int, strict: bool) -> str:
    extra = "Use different wording than the prompt." if strict else "Paraphrase briefly."
    return "\n".join(
        [
            f'Title (max {max_words} words). Return JSON: {{"title":"..."}}.',
            extra,
            f"Latest prompt: {seed}",
        ]
    )


def build_topic_prompt(recent_lines: list, max_words: int, strict: bool) -> str:
    extra = "Use different wording than the prompt." if strict else "Paraphrase briefly."
    numbered = "\n".join(f"{idx}) {line}" for idx, line in enumerate(recent_lines, start=1)) or "(none)"
    return "\n".join(
        [
            f'Topic (max {max_words} words). Return JSON: {{"topic":"..."}}.',
            extra,
            "Recent messages (oldest to newest):",
            numbered,
        ]
    )


def build_search_query_prompt(latest: str, prior: list) -> str:
    prior_lines = "\n".join(f"{idx}) {text}" for idx, text in enumerate(prior, start=2)) or "(none)"
    return "\n".join(
        [
            "Latest user prompt (always use):",
            f"1) {latest or '(empty)'}",
            "",
            "Previous prompts (use only if needed for context):",
            prior_lines,
            "",
            "Return only the search query.",
        ]
    )
