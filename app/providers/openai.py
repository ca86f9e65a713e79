import json
import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from app.chat.errors import (
    MalformedResponse,
    MissingCredential,
    QuotaExceeded,
    ServerError,
    TransportError,
    Unauthorized,
)
from app.log import get_logger, log_event
from app.middleware.request_id import current_request_id

from .base import CompletionClient

logger = get_logger("providers.openai")

RATE_LIMIT_HEADERS = ("x-ratelimit-remaining", "x-ratelimit-remaining-requests")


class OpenAICompletionClient(CompletionClient):
    """Non-streaming chat completions against an OpenAI-compatible endpoint.

    Endpoint: POST {base_url}/chat/completions
    Body: {model, messages, temperature, max_tokens}
    Success: {choices: [{message: {content}}]}
    """

    provider_name: str = "openai"
    default_base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        min_interval: float = 1.0,
    ):
        super().__init__(model=model or os.getenv("AI_CHAT_MODEL") or "gpt-4-1106-preview", min_interval=min_interval)
        # A missing key is reported per call as MissingCredential, never at construction
        self._api_key = (api_key if api_key is not None else os.getenv(self.api_key_env, "")).strip()
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        if timeout is None:
            try:
                timeout = float(os.getenv("AI_HTTP_TIMEOUT_SECONDS") or 30)
            except Exception:
                timeout = 30.0
        self._timeout = timeout

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "wellness-chat/0.1.0",
        }
        rid = current_request_id()
        if rid:
            headers["X-Request-Id"] = rid
        return headers

    def _preflight(self) -> None:
        if not self._api_key:
            raise MissingCredential(f"{self.api_key_env} is required for the {self.provider_name} provider")

    async def _request(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        # Use a short-lived AsyncClient per request to ensure proper cleanup
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self.url, headers=self._headers(), json=payload)
        except httpx.DecodingError as e:
            raise MalformedResponse(f"response body could not be decoded: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        self._update_rate_limit(resp.headers)

        status = resp.status_code
        if status == 401:
            raise Unauthorized()
        if status == 429:
            raise QuotaExceeded(retry_after=_retry_after(resp.headers))
        if status < 200 or status >= 300:
            log_event(
                logger,
                "completion_http_error",
                logging.ERROR,
                provider=self.provider_name,
                status=status,
                body=resp.text[:1024],
                model=self.model,
            )
            raise ServerError(status, resp.text)
        return _parse_content(resp)

    def _update_rate_limit(self, headers: Any) -> None:
        for name in RATE_LIMIT_HEADERS:
            raw = headers.get(name)
            if raw is None:
                continue
            try:
                self.rate_limit_remaining = int(str(raw).strip())
            except ValueError:
                continue
            return


class OpenRouterCompletionClient(OpenAICompletionClient):
    provider_name: str = "openrouter"
    default_base_url: str = "https://openrouter.ai/api/v1"
    api_key_env: str = "OPENROUTER_API_KEY"

    def __init__(self, model: Optional[str] = None, **kwargs: Any):
        super().__init__(model=model or os.getenv("AI_CHAT_MODEL") or "openai/gpt-4o-mini", **kwargs)
        # Origin metadata (optional but recommended by OpenRouter)
        self._referer = os.getenv("PUBLIC_APP_ORIGIN", "http://localhost:3000").strip() or "http://localhost:3000"
        self._title = os.getenv("OPENROUTER_APP_TITLE", "Wellness Chat").strip() or "Wellness Chat"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self._referer
        headers["X-Title"] = self._title
        return headers


def _retry_after(headers: Any) -> Optional[float]:
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _parse_content(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise MalformedResponse(f"response body is not JSON: {resp.text[:200]!r}") from e
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedResponse("response has no choices[0].message.content") from e
    if not isinstance(content, str):
        raise MalformedResponse(f"choices[0].message.content is {type(content).__name__}, expected str")
    return content
