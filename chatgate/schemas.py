import math
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

Role = Literal["user", "assistant"]
DecisionSource = Literal["heuristic", "classifier", "explicit"]

_TRUE_WORDS = {"true", "yes", "on"}
_FALSE_WORDS = {"false", "no", "off"}


def parse_boolean_override(value: Any) -> Optional[bool]:
    """Interpret a loose client boolean; anything unrecognised is treated as absent."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if value in (1, "1"):
        return True
    if value in (0, "0"):
        return False
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return None


def is_stream_requested(value: Any) -> bool:
    return value is True or value in ("true", 1, "1")


class Source(BaseModel):
    title: str = "Untitled"
    url: str
    summary: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["Source"]:
        if not isinstance(raw, dict) or not raw.get("url"):
            return None
        summary = raw.get("summary") or raw.get("description") or raw.get("content") or ""
        return cls(title=str(raw.get("title") or "Untitled"), url=str(raw["url"]), summary=str(summary))


def normalize_sources(raw_sources: Any) -> List[Dict[str, str]]:
    if not isinstance(raw_sources, list):
        return []
    normalized = []
    for item in raw_sources:
        source = Source.from_raw(item)
        if source:
            normalized.append(source.model_dump())
    return normalized


class ChatTurnRequest(BaseModel):
    user_id: str = ""
    chat_id: str = ""
    prompt: str = ""
    message_id: str = ""
    model_id: Optional[str] = None
    client_ts: Optional[int] = None
    stream: bool = False
    use_web: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_override = data.get("use_web")
        if raw_override is None:
            raw_override = data.pop("web_search", None)
        else:
            data.pop("web_search", None)
        data["use_web"] = parse_boolean_override(raw_override)
        data["stream"] = is_stream_requested(data.get("stream"))
        client_ts = data.get("client_ts")
        if isinstance(client_ts, bool) or not isinstance(client_ts, (int, float)) or not math.isfinite(client_ts):
            data["client_ts"] = None
        else:
            data["client_ts"] = int(client_ts)
        for key in ("user_id", "chat_id", "prompt", "message_id"):
            if not isinstance(data.get(key), str):
                data[key] = ""
        if not isinstance(data.get("model_id"), str) or not data["model_id"].strip():
            data["model_id"] = None
        return data

    def missing_fields(self) -> List[str]:
        return [key for key in ("user_id", "chat_id", "prompt", "message_id") if not getattr(self, key).strip()]

    @property
    def conversation_key(self) -> str:
        return f"{self.user_id}:{self.chat_id}"


class RoutingDecision(BaseModel):
    use_web: bool
    info_seeking: bool
    needs_web: bool = False
    explicit_search: bool = False
    confidence: float = 1.0
    reason: str
    source: DecisionSource

    def to_event(self) -> Dict[str, Any]:
        return {
            "stage": "routing_decision",
            "use_web": self.use_web,
            "info_seeking": self.info_seeking,
            "source": self.source,
            "reason": self.reason,
            "confidence": self.confidence,
            "done": False,
        }


class ChatMessage(BaseModel):
    role: Role
    content: str
    ts: int
    message_id: Optional[str] = None
    polished: Optional[bool] = None

    def to_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class IdempotencyEntry(BaseModel):
    answer: str
    ts: int
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    polished: bool = False


class ConversationRecord(BaseModel):
    user_id: str
    chat_id: str
    title: str = ""
    topic: str = ""
    summary: str = ""
    facts: List[str] = Field(default_factory=list)
    raw_messages: List[ChatMessage] = Field(default_factory=list)
    last_message_ts: int = 0
    last_updated_ts: int = 0
    last_summary_ts: int = 0
    last_topic_ts: int = 0
    idempotency: Dict[str, IdempotencyEntry] = Field(default_factory=dict)
    revision: int = 0

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.chat_id}"

    def first_user_prompt(self, fallback: str = "") -> str:
        for message in self.raw_messages:
            if message.role == "user" and message.content.strip():
                return message.content
        return fallback

    def prior_user_prompts(self) -> List[str]:
        return [m.content for m in self.raw_messages if m.role == "user" and m.content]

    def summary_view(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "chat_id": self.chat_id,
            "title": self.title,
            "topic": self.topic,
            "summary": self.summary,
            "facts": list(self.facts),
            "last_updated_ts": self.last_updated_ts or self.last_message_ts,
            "last_message_ts": self.last_message_ts,
            "last_summary_ts": self.last_summary_ts,
            "last_topic_ts": self.last_topic_ts,
            "raw_count": len(self.raw_messages),
        }
