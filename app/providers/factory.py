from typing import Optional

from app.config import Settings

from .base import CompletionClient
from .mock import MockCompletionClient
from .openai import OpenAICompletionClient, OpenRouterCompletionClient


def get_completion_client(
    settings: Settings,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> CompletionClient:
    """Return a completion client for the configured provider.

    Precedence: explicit `provider`, then settings.chat_provider (which reads
    AI_PROVIDER_CHAT, then AI_PROVIDER). Unknown names fall back to mock. Real
    providers are returned even without an API key so that calls fail fast
    with MissingCredential instead of silently switching to mock replies.
    """
    prov = (provider or settings.chat_provider or "mock").strip().lower()
    mdl = model or settings.chat_model

    if prov in ("openai", "gpt"):
        return OpenAICompletionClient(
            model=mdl,
            timeout=settings.http_timeout,
            min_interval=settings.min_request_interval,
        )

    if prov in ("openrouter", "router"):
        return OpenRouterCompletionClient(
            model=mdl,
            timeout=settings.http_timeout,
            min_interval=settings.min_request_interval,
        )

    # mock, test, or unknown
    return MockCompletionClient(model=mdl, min_interval=settings.min_request_interval)
