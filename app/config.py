import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env, but avoid during pytest to keep tests deterministic
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


DEFAULT_PRIMING_PROMPT = (
    "You are a psychology-focused wellness assistant. Your role is to:\n"
    "1. Provide supportive and empathetic responses\n"
    "2. Help users explore their thoughts and feelings\n"
    "3. Suggest healthy coping strategies and self-care practices\n"
    "4. Encourage professional help when appropriate\n"
    "5. Maintain clear boundaries about not providing medical advice or therapy\n\n"
    "Always be warm, understanding, and non-judgmental. "
    "Use a conversational tone while maintaining professionalism."
)

DEFAULT_SUMMARY_PROMPT = (
    "Please provide a brief summary of this conversation, focusing on:\n"
    "1. Main topics discussed\n"
    "2. Key insights or progress made\n"
    "3. Any action items or recommendations given\n"
    "Keep it concise and professional."
)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the chat engine.

    Built once by :func:`load_settings` and handed to each component
    explicitly; nothing reads a global copy.
    """

    # Completion provider
    chat_provider: str = "mock"
    chat_model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    min_request_interval: float = 1.0
    http_timeout: float = 30.0
    # Orchestrator
    min_response_delay: float = 1.0
    priming_prompt: str = DEFAULT_PRIMING_PROMPT
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT
    history_page_size: int = 50
    session_idle_ttl: float = 900.0
    # Record store
    record_store: str = "memory"
    store_url: str = ""
    store_key: str = ""
    store_poll_interval: float = 1.0
    store_timeout: float = 10.0
    # HTTP surface
    sse_heartbeat_seconds: float = 15.0
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read settings from the environment.

    Provider precedence mirrors the factory: AI_PROVIDER_CHAT, then
    AI_PROVIDER, then 'mock'.
    """
    return Settings(
        chat_provider=(_env_str("AI_PROVIDER_CHAT") or _env_str("AI_PROVIDER") or "mock").lower(),
        chat_model=_env_str("AI_CHAT_MODEL") or None,
        temperature=_env_float("AI_CHAT_TEMPERATURE", 0.7),
        max_tokens=_env_int("AI_CHAT_MAX_TOKENS", 1000),
        min_request_interval=max(0.0, _env_float("AI_MIN_REQUEST_INTERVAL_SECONDS", 1.0)),
        http_timeout=_env_float("AI_HTTP_TIMEOUT_SECONDS", 30.0),
        min_response_delay=max(0.0, _env_float("CHAT_MIN_RESPONSE_DELAY_SECONDS", 1.0)),
        priming_prompt=_env_str("CHAT_PRIMING_PROMPT") or DEFAULT_PRIMING_PROMPT,
        summary_prompt=_env_str("CHAT_SUMMARY_PROMPT") or DEFAULT_SUMMARY_PROMPT,
        history_page_size=max(1, _env_int("CHAT_HISTORY_PAGE_SIZE", 50)),
        session_idle_ttl=max(0.0, _env_float("CHAT_SESSION_IDLE_TTL_SECONDS", 900.0)),
        record_store=(_env_str("RECORD_STORE") or "memory").lower(),
        store_url=_env_str("SUPABASE_URL"),
        store_key=_env_str("SUPABASE_ANON_KEY"),
        store_poll_interval=max(0.05, _env_float("STORE_POLL_INTERVAL_SECONDS", 1.0)),
        store_timeout=_env_float("STORE_TIMEOUT_SECONDS", 10.0),
        sse_heartbeat_seconds=max(0.01, _env_float("CHAT_SSE_HEARTBEAT_SECONDS", 15.0)),
        log_level=(_env_str("LOG_LEVEL") or "INFO").upper(),
    )
