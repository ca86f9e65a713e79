import asyncio
import time

import httpx
import pytest

import app.providers.openai as openai_mod
from app.chat.errors import (
    MalformedResponse,
    MissingCredential,
    QuotaExceeded,
    ServerError,
    TransportError,
    Unauthorized,
)
from app.providers.mock import MockCompletionClient
from app.providers.openai import OpenAICompletionClient, OpenRouterCompletionClient

MESSAGES = [
    {"role": "system", "content": "Be kind."},
    {"role": "user", "content": "Hello"},
]


def _install_fake_client(monkeypatch: pytest.MonkeyPatch, responder):
    """Replace httpx.AsyncClient inside the provider module; returns the captured calls."""
    calls = []

    class FakeAsyncClient:
        def __init__(self, *args, **kwargs):
            self.timeout = kwargs.get("timeout")

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, headers=None, json=None):
            calls.append({"url": url, "headers": headers, "json": json})
            return responder(len(calls))

    monkeypatch.setattr(openai_mod.httpx, "AsyncClient", FakeAsyncClient)
    return calls


def _ok(content="Hi there", headers=None):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]}, headers=headers)


@pytest.mark.asyncio
async def test_success_sends_expected_payload_and_tracks_quota(monkeypatch: pytest.MonkeyPatch):
    calls = _install_fake_client(monkeypatch, lambda n: _ok("Hi there", headers={"x-ratelimit-remaining": "2999"}))
    cli = OpenAICompletionClient(model="unit-test-model", api_key="sk-test", min_interval=0)

    text = await cli.complete(MESSAGES, temperature=0.2, max_tokens=50)

    assert text == "Hi there"
    assert cli.rate_limit_remaining == 2999
    assert len(calls) == 1
    call = calls[0]
    assert call["url"] == "https://api.openai.com/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer sk-test"
    assert call["json"] == {
        "model": "unit-test-model",
        "messages": MESSAGES,
        "temperature": 0.2,
        "max_tokens": 50,
    }


@pytest.mark.asyncio
async def test_missing_key_fails_fast_without_network(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    calls = _install_fake_client(monkeypatch, lambda n: _ok())
    cli = OpenAICompletionClient(model="m", min_interval=5.0)

    with pytest.raises(MissingCredential):
        await cli.complete(MESSAGES)
    assert calls == []
    # Pacing state untouched: a later call with a key is not delayed
    assert cli._last_request_done is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status, exc_type", [
    (401, Unauthorized),
    (429, QuotaExceeded),
    (500, ServerError),
    (503, ServerError),
    (404, ServerError),
])
async def test_status_codes_are_classified(monkeypatch: pytest.MonkeyPatch, status, exc_type):
    _install_fake_client(monkeypatch, lambda n: httpx.Response(status, text="nope"))
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0)

    with pytest.raises(exc_type) as ei:
        await cli.complete(MESSAGES)
    if exc_type is ServerError:
        assert ei.value.status_code == status


@pytest.mark.asyncio
async def test_quota_exceeded_carries_retry_after(monkeypatch: pytest.MonkeyPatch):
    _install_fake_client(
        monkeypatch,
        lambda n: httpx.Response(429, text="slow down", headers={"retry-after": "7", "x-ratelimit-remaining": "0"}),
    )
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0)

    with pytest.raises(QuotaExceeded) as ei:
        await cli.complete(MESSAGES)
    assert ei.value.retry_after == 7.0
    assert cli.rate_limit_remaining == 0


@pytest.mark.asyncio
async def test_transport_failure_is_classified(monkeypatch: pytest.MonkeyPatch):
    def boom(n):
        raise httpx.ConnectError("Temporary failure in name resolution")

    _install_fake_client(monkeypatch, boom)
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0)

    with pytest.raises(TransportError):
        await cli.complete(MESSAGES)


@pytest.mark.asyncio
async def test_timeout_is_a_transport_error(monkeypatch: pytest.MonkeyPatch):
    def slow(n):
        raise httpx.ReadTimeout("timed out")

    _install_fake_client(monkeypatch, slow)
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0)

    with pytest.raises(TransportError):
        await cli.complete(MESSAGES)


@pytest.mark.asyncio
@pytest.mark.parametrize("error, exc_type", [
    (httpx.DecodingError("invalid gzip stream"), MalformedResponse),
    (httpx.TooManyRedirects("redirect loop"), TransportError),
    (httpx.UnsupportedProtocol("ftp is not supported"), TransportError),
])
async def test_other_request_errors_are_classified(monkeypatch: pytest.MonkeyPatch, error, exc_type):
    def fail(n):
        raise error

    _install_fake_client(monkeypatch, fail)
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0)

    with pytest.raises(exc_type):
        await cli.complete(MESSAGES)


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>not json</html>"),
    httpx.Response(200, json={"choices": []}),
    httpx.Response(200, json={"choices": [{"message": {}}]}),
    httpx.Response(200, json={"choices": [{"message": {"content": None}}]}),
    httpx.Response(200, json=["unexpected"]),
])
async def test_malformed_success_bodies(monkeypatch: pytest.MonkeyPatch, response):
    _install_fake_client(monkeypatch, lambda n: response)
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0)

    with pytest.raises(MalformedResponse):
        await cli.complete(MESSAGES)


@pytest.mark.asyncio
async def test_failed_call_still_counts_for_pacing(monkeypatch: pytest.MonkeyPatch):
    _install_fake_client(monkeypatch, lambda n: httpx.Response(500, text="err") if n == 1 else _ok())
    cli = OpenAICompletionClient(model="m", api_key="k", min_interval=0.2)

    with pytest.raises(ServerError):
        await cli.complete(MESSAGES)
    t0 = time.monotonic()
    assert await cli.complete(MESSAGES) == "Hi there"
    assert time.monotonic() - t0 >= 0.15


@pytest.mark.asyncio
async def test_openrouter_adds_origin_headers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENROUTER_APP_TITLE", "Wellness Test")
    calls = _install_fake_client(monkeypatch, lambda n: _ok())
    cli = OpenRouterCompletionClient(model="openai/gpt-4o-mini", api_key="or-key", min_interval=0)

    await cli.complete(MESSAGES)

    assert calls[0]["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert calls[0]["headers"]["X-Title"] == "Wellness Test"
    assert "HTTP-Referer" in calls[0]["headers"]


@pytest.mark.asyncio
async def test_sequential_calls_respect_minimum_interval():
    cli = MockCompletionClient(min_interval=0.1)
    n = 4

    t0 = time.monotonic()
    for _ in range(n):
        await cli.complete(MESSAGES)
    elapsed = time.monotonic() - t0

    assert elapsed >= (n - 1) * 0.1 - 0.01
    assert len(cli.calls) == n


@pytest.mark.asyncio
async def test_first_call_is_not_delayed():
    cli = MockCompletionClient(min_interval=1.0)
    t0 = time.monotonic()
    await cli.complete(MESSAGES)
    assert time.monotonic() - t0 < 0.5


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_pacing_clock():
    cli = MockCompletionClient(min_interval=0.1, latency=0.01)
    in_flight = 0
    max_in_flight = 0
    original = cli._request

    async def tracking_request(messages, temperature, max_tokens):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        try:
            return await original(messages, temperature, max_tokens)
        finally:
            in_flight -= 1

    cli._request = tracking_request  # type: ignore[method-assign]

    t0 = time.monotonic()
    await asyncio.gather(*(cli.complete(MESSAGES) for _ in range(3)))
    elapsed = time.monotonic() - t0

    assert max_in_flight == 1
    assert elapsed >= 2 * 0.1 - 0.01


@pytest.mark.asyncio
async def test_mock_recaps_when_last_message_is_an_instruction():
    cli = MockCompletionClient(min_interval=0)
    text = await cli.complete(MESSAGES + [{"role": "system", "content": "Summarize."}])
    assert text.startswith("Summary:")
    assert "Hello" in text
