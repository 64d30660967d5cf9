"""End-to-end tests for the metering proxy app.

The app runs in-process behind httpx.ASGITransport and talks to a
MockTransport upstream. Finalize runs in the background, so tests drain
the proxy's scheduler before reading the log.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import (
    API_KEY,
    CHAT_REQUEST,
    CHAT_RESPONSE_BYTES,
    UPSTREAM_URL,
    USER_ID,
    auth_headers,
    proxy_client,
    sse_body,
    split_every,
    sse_response,
)
from promptmeter.cache import CACHE_CONTROL_VALUE
from promptmeter.exceptions import StorageError
from promptmeter.storage import PENDING_COMPLETION, InMemoryLogStore

CHAT_PATH = "/v1/chat/completions"


async def post_chat(app, payload=None, headers=None) -> httpx.Response:
    async with proxy_client(app) as client:
        return await client.post(
            CHAT_PATH,
            content=json.dumps(payload or CHAT_REQUEST).encode(),
            headers=headers if headers is not None else auth_headers(),
        )


async def settle(app) -> None:
    await app.state.proxy.scheduler.drain()


async def wait_until(condition, attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    pytest.fail("condition not met in time")


class TestBufferedRequests:
    @pytest.mark.asyncio
    async def test_miss_returns_upstream_bytes_and_logs(self, make_app, log_store, upstream):
        app = make_app()

        response = await post_chat(app)
        await settle(app)

        assert response.status_code == 200
        assert response.content == CHAT_RESPONSE_BYTES
        assert response.headers["cache-control"] == CACHE_CONTROL_VALUE
        assert upstream.calls == 1

        (record,) = log_store.query()
        assert record.user_id == USER_ID
        assert record.method == "POST"
        assert record.url == f"{UPSTREAM_URL}{CHAT_PATH}"
        assert record.model == "gpt-3.5-turbo-0613"
        assert record.status == 200
        assert record.cache_hit is False
        assert record.streamed is False
        assert record.completion == "hello"
        assert record.completion_id == "abc"
        assert record.prompt_tokens == 8
        assert record.completion_tokens == 1
        assert record.response_body == CHAT_RESPONSE_BYTES.decode()
        assert record.request_headers["x-api-key"] == "[redacted]"
        assert record.request_headers["authorization"] == "[redacted]"

    @pytest.mark.asyncio
    async def test_repeat_is_served_from_cache(self, make_app, log_store, upstream):
        app = make_app()

        first = await post_chat(app)
        second = await post_chat(app)
        await settle(app)

        assert second.content == first.content
        assert second.status_code == first.status_code
        assert second.headers["content-type"] == first.headers["content-type"]
        assert upstream.calls == 1

        rows = log_store.query()
        assert sorted(r.cache_hit for r in rows) == [False, True]
        assert {r.completion for r in rows} == {"hello"}

    @pytest.mark.asyncio
    async def test_forwards_path_query_and_credentials(self, make_app, upstream):
        app = make_app()
        async with proxy_client(app) as client:
            await client.post(
                f"{CHAT_PATH}?api-version=2024-02-01",
                content=json.dumps(CHAT_REQUEST).encode(),
                headers=auth_headers(),
            )
        await settle(app)

        request = upstream.requests[0]
        assert str(request.url) == f"{UPSTREAM_URL}{CHAT_PATH}?api-version=2024-02-01"
        assert request.headers["authorization"] == "Bearer sk-upstream"
        assert request.headers["x-api-key"] == f"Bearer {API_KEY}"

    @pytest.mark.asyncio
    async def test_error_status_passed_through_uncached(self, make_app, log_store, upstream):
        error_body = b'{"error":{"message":"Rate limit reached"}}'
        upstream.handler = lambda request: httpx.Response(
            429, headers={"content-type": "application/json"}, content=error_body
        )
        app = make_app()

        first = await post_chat(app)
        second = await post_chat(app)
        await settle(app)

        assert first.status_code == second.status_code == 429
        assert first.content == error_body
        assert upstream.calls == 2
        assert all(r.status == 429 and not r.cache_hit for r in log_store.query())
        assert all(r.completion == "" for r in log_store.query())

    @pytest.mark.asyncio
    async def test_unsupported_model_still_counts_completion(self, make_app, log_store):
        app = make_app()
        payload = {**CHAT_REQUEST, "model": "claude-3-opus"}

        response = await post_chat(app, payload)
        await settle(app)

        assert response.status_code == 200
        (record,) = log_store.query()
        assert record.completion == "hello"
        assert record.prompt_tokens is None
        assert record.completion_tokens == 1

    @pytest.mark.asyncio
    async def test_non_json_body_forwarded(self, make_app, log_store, upstream):
        app = make_app()
        async with proxy_client(app) as client:
            response = await client.post(CHAT_PATH, content=b"not json", headers=auth_headers())
        await settle(app)

        assert response.status_code == 200
        assert upstream.requests[0].content == b"not json"
        (record,) = log_store.query()
        assert record.model is None
        assert record.prompt_tokens is None
        assert not record.is_pending


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, make_app, log_store, upstream):
        headers = auth_headers()
        del headers["X-Api-Key"]

        response = await post_chat(make_app(), headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"
        assert log_store.count() == 0
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_unknown_key_rejected(self, make_app, log_store, upstream):
        response = await post_chat(make_app(), headers=auth_headers("pm-wrong"))

        assert response.status_code == 401
        assert log_store.count() == 0
        assert upstream.calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [API_KEY, f"bearer {API_KEY}", f"BEARER   {API_KEY}"])
    async def test_bearer_prefix_optional(self, make_app, value):
        headers = {**auth_headers(), "X-Api-Key": value}
        response = await post_chat(make_app(), headers=headers)
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_bare_bearer_is_missing(self, make_app):
        headers = {**auth_headers(), "X-Api-Key": "Bearer "}
        response = await post_chat(make_app(), headers=headers)
        assert response.status_code == 401


class TestMethodCheck:
    @pytest.mark.asyncio
    async def test_get_rejected_with_allow_header(self, make_app, log_store, upstream):
        app = make_app()
        async with proxy_client(app) as client:
            response = await client.get("/v1/models", headers=auth_headers())

        assert response.status_code == 405
        assert response.headers["allow"] == "POST"
        assert response.json()["error"] == "method_not_allowed"
        assert log_store.count() == 0
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_authentication_checked_first(self, make_app):
        async with proxy_client(make_app()) as client:
            response = await client.get("/v1/models")
        assert response.status_code == 401


class TestFailures:
    @pytest.mark.asyncio
    async def test_provisional_failure_aborts_before_upstream(self, make_app, upstream):
        class LockedStore(InMemoryLogStore):
            def create(self, record):
                raise StorageError("database is locked")

        response = await post_chat(make_app(log_store=LockedStore()))

        assert response.status_code == 500
        assert response.json()["error"] == "log_write_failed"
        assert upstream.calls == 0

    @pytest.mark.asyncio
    async def test_upstream_unreachable(self, make_app, log_store, cache_backend, upstream):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        upstream.handler = refuse
        app = make_app()

        response = await post_chat(app)
        await settle(app)

        assert response.status_code == 500
        assert response.json()["error"] == "upstream_unavailable"
        assert cache_backend.count() == 0
        (record,) = log_store.query()
        assert record.status == 500
        assert record.cache_hit is False
        assert not record.is_pending

    @pytest.mark.asyncio
    async def test_streamed_request_upstream_unreachable(self, make_app, log_store, upstream):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        upstream.handler = refuse
        app = make_app()

        response = await post_chat(app, {**CHAT_REQUEST, "stream": True})
        await settle(app)

        assert response.status_code == 500
        assert response.json()["error"] == "upstream_unavailable"
        (record,) = log_store.query()
        assert record.streamed is False

    @pytest.mark.asyncio
    async def test_finalize_failure_leaves_row_pending(self, make_app):
        class ReadOnlyAfterCreate(InMemoryLogStore):
            def update(self, record_id, **fields):
                raise StorageError("disk full")

        store = ReadOnlyAfterCreate()
        app = make_app(log_store=store)

        response = await post_chat(app)
        await settle(app)

        assert response.status_code == 200
        assert response.content == CHAT_RESPONSE_BYTES
        (record,) = store.query()
        assert record.completion == PENDING_COMPLETION
        assert app.state.proxy.persistence.get_stats()["finalize_failures"] == 1


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_passthrough_and_log(self, make_app, log_store, cache_backend, upstream):
        parts = ["Hel", "lo", " wor", "ld"]
        body = sse_body(parts, completion_id="chatcmpl-XYZ")
        upstream.handler = lambda request: sse_response(split_every(body, 7))
        app = make_app()

        response = await post_chat(app, {**CHAT_REQUEST, "stream": True})
        await settle(app)

        assert response.status_code == 200
        assert response.content == body
        assert response.headers["content-type"].startswith("text/event-stream")

        (record,) = log_store.query()
        assert record.streamed is True
        assert record.cache_hit is False
        assert record.completion == "Hello world"
        assert record.completion_id == "chatcmpl-XYZ"
        assert record.completion_tokens == 2
        assert record.prompt_tokens == 8
        assert record.streamed_response_body == body.decode()
        assert record.response_body is None
        assert cache_backend.count() == 1

    @pytest.mark.asyncio
    async def test_completed_stream_replayed_from_cache(self, make_app, log_store, upstream):
        body = sse_body(["cached ", "stream"])
        upstream.handler = lambda request: sse_response(split_every(body, 5))
        app = make_app()
        payload = {**CHAT_REQUEST, "stream": True}

        first = await post_chat(app, payload)
        await settle(app)
        second = await post_chat(app, payload)
        await settle(app)

        assert second.content == first.content == body
        assert upstream.calls == 1

        rows = sorted(log_store.query(), key=lambda r: r.cache_hit)
        assert [r.cache_hit for r in rows] == [False, True]
        assert all(r.streamed for r in rows)
        assert rows[1].completion == "cached stream"

    @pytest.mark.asyncio
    async def test_broken_stream_not_cached(self, make_app, log_store, cache_backend, upstream):
        async def broken():
            yield b'data: {"id":"c","choices":[{"delta":{"content":"half"}}]}\n\n'
            raise httpx.ReadError("connection reset")

        upstream.handler = lambda request: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=broken()
        )
        app = make_app()

        await post_chat(app, {**CHAT_REQUEST, "stream": True})
        await settle(app)

        assert cache_backend.count() == 0
        (record,) = log_store.query()
        assert record.completion == "half"
        assert record.streamed is True

    @pytest.mark.asyncio
    async def test_overlapping_stream_misses_keep_first_cached_answer(
        self, make_app, cache_backend, upstream
    ):
        gate = asyncio.Event()
        answers = iter(["slow answer", "fast answer"])

        def handler(request):
            answer = next(answers)
            body = sse_body([answer])

            async def chunks():
                if answer == "slow answer":
                    await gate.wait()
                yield body

            return httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=chunks()
            )

        upstream.handler = handler
        app = make_app()
        payload = {**CHAT_REQUEST, "stream": True}

        slow = asyncio.create_task(post_chat(app, payload))
        await wait_until(lambda: upstream.calls == 1)
        fast = await post_chat(app, payload)
        await wait_until(lambda: cache_backend.count() == 1)

        hit_before = await post_chat(app, payload)
        gate.set()
        slow_response = await slow
        await settle(app)
        hit_after = await post_chat(app, payload)

        assert slow_response.content == sse_body(["slow answer"])
        assert fast.content == sse_body(["fast answer"])
        assert hit_before.content == hit_after.content == fast.content
        assert upstream.calls == 2
        assert cache_backend.count() == 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_requests_logged_independently(self, make_app, log_store, upstream):
        def echo(request: httpx.Request) -> httpx.Response:
            content = json.loads(request.content)["messages"][0]["content"]
            return httpx.Response(
                200, json={"id": content, "choices": [{"message": {"content": content}}]}
            )

        upstream.handler = echo
        upstream.delay = 0.01
        app = make_app()
        prompts = [f"prompt-{i}" for i in range(10)]

        async with proxy_client(app) as client:
            responses = await asyncio.gather(
                *(
                    client.post(
                        CHAT_PATH,
                        content=json.dumps(
                            {**CHAT_REQUEST, "messages": [{"role": "user", "content": p}]}
                        ).encode(),
                        headers=auth_headers(),
                    )
                    for p in prompts
                )
            )
        await settle(app)

        assert [r.json()["id"] for r in responses] == prompts
        rows = log_store.query()
        assert len(rows) == 10
        for record in rows:
            sent = json.loads(record.request_body)["messages"][0]["content"]
            assert record.completion == sent
        assert app.state.proxy.persistence.pending == 0


class TestServiceEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, make_app):
        async with proxy_client(make_app()) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["config"]["upstream"] == UPSTREAM_URL
        assert data["config"]["cache_backend"] == "memory"

    @pytest.mark.asyncio
    async def test_stats(self, make_app):
        app = make_app()
        await post_chat(app)
        await post_chat(app)
        await settle(app)

        async with proxy_client(app) as client:
            data = (await client.get("/stats")).json()

        assert data["requests"]["total"] == 2
        assert data["cache"]["hits"] == 1
        assert data["cache"]["misses"] == 1
        assert data["persistence"]["finalized"] == 2
        assert data["log"]["total_requests"] == 2
        assert data["log"]["cache_hits"] == 1
