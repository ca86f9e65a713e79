import asyncio
from typing import Dict, List, Optional

from .base import CompletionClient


class MockCompletionClient(CompletionClient):
    """Deterministic offline completions for local runs and tests.

    Replies echo the latest user message; requests whose last message is a
    System instruction (e.g. the end-of-session recap) get a recap of the
    user turns instead.
    """

    provider_name: str = "mock"

    def __init__(self, model: Optional[str] = None, min_interval: float = 1.0, latency: float = 0.0):
        super().__init__(model=model or "mock-chat-1", min_interval=min_interval)
        self.latency = latency
        self.calls: List[List[Dict[str, str]]] = []

    async def _request(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        self.calls.append(messages)
        if self.latency > 0:
            await asyncio.sleep(self.latency)
        user_turns = [m["content"] for m in messages if m.get("role") == "user"]
        last = messages[-1] if messages else {"role": "user", "content": ""}
        if last.get("role") == "system" and len(messages) > 1:
            if not user_turns:
                return "Summary: no topics were discussed."
            topics = "; ".join(_clip(t, 60) for t in user_turns)
            return f"Summary: {len(user_turns)} user message(s). Topics: {topics}"
        prompt = user_turns[-1] if user_turns else ""
        return f"I hear you: {_clip(prompt, 200)}" if prompt else "Hello! How are you feeling today?"


def _clip(s: str, n: int) -> str:
    s = " ".join((s or "").split())
    return s if len(s) <= n else s[: n - 1] + "…"
