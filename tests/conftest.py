"""Shared pytest fixtures for promptmeter tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from promptmeter.cache import InMemoryCacheBackend
from promptmeter.config import ProxyConfig
from promptmeter.hashing import hash_api_key
from promptmeter.proxy import create_app
from promptmeter.storage import InMemoryIdentityStore, InMemoryLogStore
from promptmeter.tokenizers import TokenAccountant

API_KEY = "pm-test-key"
USER_ID = "user-1"
UPSTREAM_URL = "https://upstream.test"

CHAT_REQUEST = {
    "model": "gpt-3.5-turbo-0613",
    "messages": [{"role": "user", "content": "hi"}],
    "stream": False,
}
CHAT_RESPONSE_BYTES = b'{"id":"abc","choices":[{"message":{"content":"hello"}}]}'


class WordCounter:
    """Deterministic stand-in tokenizer: one token per whitespace-separated word."""

    def count_text(self, text: str) -> int:
        return len(text.split())


def sse_frame(payload: dict | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode()


def sse_body(parts: list[str], completion_id: str = "chatcmpl-1") -> bytes:
    """A complete chat completion event stream producing ``parts``."""
    frames = [
        sse_frame({"id": completion_id, "choices": [{"delta": {"content": part}}]})
        for part in parts
    ]
    frames.append(sse_frame("[DONE]"))
    return b"".join(frames)


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


def sse_response(chunks: list[bytes], status_code: int = 200) -> httpx.Response:
    async def body():
        for chunk in chunks:
            await asyncio.sleep(0)
            yield chunk

    return httpx.Response(
        status_code, headers={"content-type": "text/event-stream"}, content=body()
    )


class StubUpstream:
    """Records upstream requests and answers them with ``handler``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = self.chat_reply
        self.delay = 0.0

    @staticmethod
    def chat_reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "application/json"}, content=CHAT_RESPONSE_BYTES
        )

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.handler(request)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def temp_sqlite_db(tmp_path: Path) -> str:
    """Temporary SQLite database path."""
    return str(tmp_path / "promptmeter.db")


@pytest.fixture
def accountant() -> TokenAccountant:
    return TokenAccountant(counter_factory=lambda model: WordCounter())


@pytest.fixture
def upstream() -> StubUpstream:
    return StubUpstream()


@pytest.fixture
def log_store() -> InMemoryLogStore:
    return InMemoryLogStore()


@pytest.fixture
def cache_backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def identity_store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore({hash_api_key(API_KEY): USER_ID})


@pytest.fixture
def make_app(upstream, accountant, log_store, cache_backend, identity_store):
    """Factory for a proxy app wired to in-memory stores and the stub upstream."""

    def factory(**overrides):
        config = overrides.pop("config", None) or ProxyConfig(
            cache_backend="memory", upstream_url=UPSTREAM_URL
        )
        return create_app(
            config,
            cache_backend=overrides.pop("cache_backend", cache_backend),
            log_store=overrides.pop("log_store", log_store),
            identity_store=overrides.pop("identity_store", identity_store),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            accountant=overrides.pop("accountant", accountant),
        )

    return factory


def proxy_client(app) -> httpx.AsyncClient:
    """In-process client for a proxy app."""
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://proxy.test")


def auth_headers(key: str = API_KEY) -> dict[str, str]:
    return {
        "X-Api-Key": f"Bearer {key}",
        "Authorization": "Bearer sk-upstream",
        "Content-Type": "application/json",
    }
