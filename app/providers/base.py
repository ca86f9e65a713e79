from __future__ import annotations

import abc
import asyncio
import logging
import time
from typing import Any, Dict, Mapping, Optional, Sequence

from app.chat.errors import CompletionError
from app.log import get_logger, log_event
from app.metrics import COMPLETION_PACING_WAIT_SECONDS, COMPLETION_REQUESTS_TOTAL, COMPLETION_SECONDS

logger = get_logger("providers")


class CompletionClient(abc.ABC):
    """Rate-limited client for a hosted text-completion API.

    Every call on one instance is serialized, and a new request is held back
    until `min_interval` seconds have passed since the previous request
    completed. Share one instance between sessions to pace them globally.

    Subclasses implement `_request`, which performs exactly one network call
    and raises one of the `CompletionError` subclasses on failure.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None, min_interval: float = 1.0):
        self.model = model
        self.min_interval = max(0.0, float(min_interval))
        self.rate_limit_remaining: Optional[int] = None
        self._last_request_done: Optional[float] = None
        self._lock = asyncio.Lock()

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> str:
        payload_messages = [
            {"role": str(getattr(m.get("role"), "value", m.get("role"))), "content": str(m.get("content") or "")}
            for m in messages
        ]
        self._preflight()
        async with self._lock:
            waited = await self._wait_for_slot()
            t0 = time.perf_counter()
            try:
                text = await self._request(payload_messages, temperature, max_tokens)
            except CompletionError as e:
                COMPLETION_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome=e.kind).inc()
                log_event(
                    logger,
                    "completion_error",
                    logging.WARNING,
                    provider=self.provider_name,
                    model=self.model,
                    error=e.kind,
                    message=str(e)[:512],
                    messagesCount=len(payload_messages),
                )
                raise
            finally:
                self._last_request_done = time.monotonic()
                COMPLETION_SECONDS.labels(provider=self.provider_name).observe(time.perf_counter() - t0)
            COMPLETION_REQUESTS_TOTAL.labels(provider=self.provider_name, outcome="ok").inc()
            log_event(
                logger,
                "completion_ok",
                provider=self.provider_name,
                model=self.model,
                messagesCount=len(payload_messages),
                waitMs=int(waited * 1000),
                durationMs=int((time.perf_counter() - t0) * 1000),
                len=len(text),
                rateLimitRemaining=self.rate_limit_remaining,
            )
            return text

    def _preflight(self) -> None:
        """Checks that must fail before any wait or network call."""

    async def _wait_for_slot(self) -> float:
        if self._last_request_done is None or self.min_interval <= 0:
            return 0.0
        remaining = self.min_interval - (time.monotonic() - self._last_request_done)
        if remaining <= 0:
            return 0.0
        COMPLETION_PACING_WAIT_SECONDS.labels(provider=self.provider_name).observe(remaining)
        await asyncio.sleep(remaining)
        return remaining

    @abc.abstractmethod
    async def _request(self, messages: list[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        ...

    async def aclose(self) -> None:
        return None
