import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

logger = logging.getLogger("uvicorn.error")

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATGATE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Use the provided memory to stay consistent and accurate."


class AppSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    database_path: str = "chatgate.db"
    max_body_bytes: int = 2 * 1024 * 1024

    # Inference backend (OpenAI-compatible, e.g. LM Studio or Ollama's /v1)
    llm_base_url: str = "http://127.0.0.1:11434/v1"
    llm_max_output_tokens: Optional[int] = None
    default_model_id: str = "llama3"
    info_seeking_model_id: Optional[str] = None
    title_model_id: Optional[str] = None
    topic_model_id: Optional[str] = None
    polish_model_id: Optional[str] = None
    memory_model_id: Optional[str] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Memory budgets (tokens, estimated as chars / 4)
    recent_turns: int = 3
    summary_every_n_turns: int = 6
    summary_token_budget: int = 400
    facts_token_budget: int = 200
    recent_token_budget: int = 800
    memory_update_input_tokens: int = 1200
    summary_token_threshold: int = 1200

    # Enrichment
    topic_max_words: int = 6
    title_max_words: int = 6
    title_max_chars: int = 60
    polish_min_chars: int = 1500

    # Search augmentation
    query_max_words: int = 10
    query_context_turns: int = 3
    web_agent_url: Optional[str] = None
    web_agent_timeout_s: float = 120.0
    web_agent_max_results: int = 5
    tavily_api_key: Optional[str] = None

    # Timeouts (seconds, 0 disables)
    classifier_timeout_s: float = 6.0
    query_timeout_s: float = 6.0
    title_timeout_s: float = 30.0
    topic_timeout_s: float = 30.0
    polish_timeout_s: float = 20.0
    answer_timeout_s: float = 300.0
    post_answer_timeout_s: float = 80.0

    def model_for(self, role: str, requested: Optional[str] = None) -> str:
        """Pick the model for a helper role, falling back to the turn's model."""
        configured = getattr(self, f"{role}_model_id", None)
        if configured and str(configured).strip():
            return str(configured).strip()
        return requested or self.default_model_id

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("tavily_api_key"):
            data["tavily_api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = {
    "port",
    "max_body_bytes",
    "llm_max_output_tokens",
    "recent_turns",
    "summary_every_n_turns",
    "summary_token_budget",
    "facts_token_budget",
    "recent_token_budget",
    "memory_update_input_tokens",
    "summary_token_threshold",
    "topic_max_words",
    "title_max_words",
    "title_max_chars",
    "polish_min_chars",
    "web_agent_max_results",
}
_MS_FIELDS = {
    "web_agent_timeout_s": "WEB_AGENT_TIMEOUT_MS",
}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "database_path": os.getenv("DATABASE_PATH"),
        "max_body_bytes": os.getenv("MAX_BODY_BYTES"),
        "llm_base_url": os.getenv("LLM_BASE_URL") or os.getenv("OLLAMA_URL"),
        "llm_max_output_tokens": os.getenv("LLM_MAX_OUTPUT_TOKENS"),
        "default_model_id": os.getenv("DEFAULT_MODEL_ID"),
        "info_seeking_model_id": os.getenv("INFO_SEEKING_MODEL_ID"),
        "title_model_id": os.getenv("TITLE_MODEL_ID"),
        "topic_model_id": os.getenv("TOPIC_MODEL_ID"),
        "polish_model_id": os.getenv("POLISH_MODEL_ID"),
        "memory_model_id": os.getenv("MEMORY_MODEL_ID"),
        "system_prompt": os.getenv("SYSTEM_PROMPT"),
        "recent_turns": os.getenv("RECENT_TURNS"),
        "summary_every_n_turns": os.getenv("SUMMARY_EVERY_N_TURNS"),
        "summary_token_budget": os.getenv("SUMMARY_TOKEN_BUDGET"),
        "facts_token_budget": os.getenv("FACTS_TOKEN_BUDGET"),
        "recent_token_budget": os.getenv("RECENT_TOKEN_BUDGET"),
        "memory_update_input_tokens": os.getenv("MEMORY_UPDATE_INPUT_TOKENS"),
        "summary_token_threshold": os.getenv("SUMMARY_TOKEN_THRESHOLD"),
        "topic_max_words": os.getenv("TOPIC_MAX_WORDS"),
        "title_max_words": os.getenv("TITLE_MAX_WORDS"),
        "title_max_chars": os.getenv("TITLE_MAX_CHARS"),
        "polish_min_chars": os.getenv("POLISH_MIN_CHARS"),
        "web_agent_url": os.getenv("WEB_AGENT_URL"),
        "web_agent_timeout_s": os.getenv("WEB_AGENT_TIMEOUT_MS"),
        "web_agent_max_results": os.getenv("WEB_AGENT_MAX_RESULTS"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS & cleaned.keys():
        cleaned[key] = int(cleaned[key])
    for key in _MS_FIELDS.keys() & cleaned.keys():
        cleaned[key] = int(cleaned[key]) / 1000.0
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    if not merged.get("tavily_api_key") and env_data.get("tavily_api_key"):
        merged["tavily_api_key"] = env_data["tavily_api_key"]
    known = set(AppSettings.model_fields)
    return AppSettings(**{k: v for k, v in merged.items() if k in known})


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
