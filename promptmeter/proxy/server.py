"""promptmeter proxy server.

A metering reverse proxy for OpenAI-compatible APIs. Every request is
authenticated against a hashed API key, answered from the response cache
when an identical request was seen in the last 30 days, and logged with
its token usage. The bytes the caller receives are exactly the upstream's.

Per request:

    authenticate -> method check -> provisional log -> resolve
        -> buffered response   -> finalize in background
        -> streamed response   -> finalize when the stream ends

Usage:
    promptmeter proxy --port 8787

    # Point any OpenAI client at it
    OPENAI_BASE_URL=http://localhost:8787/v1 python app.py
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from .. import __version__
from ..cache import (
    CacheBackend,
    CacheCoordinator,
    InMemoryCacheBackend,
    Resolution,
    SQLiteCacheBackend,
)
from ..config import ProxyConfig
from ..exceptions import (
    AuthMissingError,
    AuthUnknownError,
    MethodNotAllowedError,
    PromptMeterError,
    UnsupportedModelError,
)
from ..hashing import hash_api_key
from ..payloads import completion_text, parse_response
from ..persistence import FinalizeOutcome, PersistenceCoordinator, RequestMeta
from ..storage import IdentityStore, LogStore, SQLiteIdentityStore, SQLiteLogStore
from ..tokenizers import TokenAccountant
from .background import TaskScheduler
from .stream import StreamAccumulator, StreamCapture

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("promptmeter.proxy")

ALLOWED_METHODS = ("POST",)
PROXIED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

API_KEY_HEADER = "x-api-key"
BEARER_PREFIX = "bearer "


def build_cache_backend(config: ProxyConfig) -> CacheBackend:
    """Cache backend named by ``config.cache_backend``."""
    if config.cache_backend == "memory":
        return InMemoryCacheBackend()
    return SQLiteCacheBackend(config.db_path)


def _decode(body: bytes | None) -> str | None:
    if body is None:
        return None
    return body.decode("utf-8", errors="replace")


class MeteringProxy:
    """Authenticates, resolves and logs proxied requests.

    Every collaborator can be injected; anything left out is built from
    ``config`` (SQLite stores at ``config.db_path``, an httpx client
    created at startup).
    """

    def __init__(
        self,
        config: ProxyConfig,
        cache_backend: CacheBackend | None = None,
        log_store: LogStore | None = None,
        identity_store: IdentityStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        accountant: TokenAccountant | None = None,
    ):
        self.config = config

        self.log_store = log_store if log_store is not None else SQLiteLogStore(config.db_path)
        self.identity_store = (
            identity_store if identity_store is not None else SQLiteIdentityStore(config.db_path)
        )
        self.accountant = accountant or TokenAccountant()
        self.scheduler = TaskScheduler()
        self.persistence = PersistenceCoordinator(self.log_store, log_bodies=config.log_bodies)

        # Created at startup when not injected
        self.http_client = http_client
        self._owns_http_client = http_client is None

        self.cache = CacheCoordinator(
            backend=cache_backend if cache_backend is not None else build_cache_backend(config),
            http_client=http_client,  # type: ignore[arg-type]
            upstream_url=config.upstream_url,
            ttl_seconds=config.cache_ttl_seconds,
            single_flight=config.single_flight,
            upstream_api_key=config.upstream_api_key,
        )

        self.requests_total = 0
        self.requests_rejected = 0
        self.requests_streamed = 0

    async def startup(self):
        """Initialize async resources."""
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=self.config.connect_timeout_seconds,
                    read=self.config.request_timeout_seconds,
                    write=self.config.request_timeout_seconds,
                    pool=self.config.connect_timeout_seconds,
                ),
                limits=httpx.Limits(
                    max_connections=self.config.max_connections,
                    max_keepalive_connections=self.config.max_keepalive_connections,
                ),
            )
            self.cache.http_client = self.http_client
        logger.info("promptmeter proxy started")
        logger.info(f"Upstream: {self.config.upstream_url}")
        logger.info(
            f"Cache: {self.config.cache_backend} "
            f"(TTL {self.config.cache_ttl_seconds}s, "
            f"single-flight {'ON' if self.config.single_flight else 'OFF'})"
        )

    async def shutdown(self):
        """Finish background logging, then release resources."""
        await self.scheduler.drain(timeout=self.config.request_timeout_seconds)
        if self._owns_http_client and self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        self.log_store.close()
        self.identity_store.close()
        self._print_summary()

    def _print_summary(self):
        cache = self.cache.get_stats()
        persistence = self.persistence.get_stats()
        logger.info("=" * 60)
        logger.info("PROMPTMETER SESSION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Total requests:        {self.requests_total}")
        logger.info(f"Rejected:              {self.requests_rejected}")
        logger.info(f"Streamed:              {self.requests_streamed}")
        logger.info(f"Cache hits / misses:   {cache['hits']} / {cache['misses']}")
        logger.info(f"Upstream errors:       {cache['upstream_errors']}")
        logger.info(f"Finalized:             {persistence['finalized']}")
        logger.info(f"Finalize failures:     {persistence['finalize_failures']}")
        logger.info("=" * 60)

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    async def authenticate(self, request: Request) -> str:
        """Resolve ``X-Api-Key: Bearer <key>`` to a user id.

        Raises:
            AuthMissingError: No key was presented.
            AuthUnknownError: The key does not belong to any user.
        """
        header = request.headers.get(API_KEY_HEADER, "").strip()
        if header.lower().startswith(BEARER_PREFIX):
            header = header[len(BEARER_PREFIX) :].strip()
        if not header:
            raise AuthMissingError("Missing API key: send 'X-Api-Key: Bearer <key>'")

        user_id = await asyncio.to_thread(self.identity_store.lookup, hash_api_key(header))
        if user_id is None:
            raise AuthUnknownError("Invalid API key")
        return user_id

    async def handle(self, request: Request, path: str) -> Response:
        """Run one request through the metering pipeline."""
        self.requests_total += 1
        try:
            user_id = await self.authenticate(request)
            if request.method.upper() not in ALLOWED_METHODS:
                raise MethodNotAllowedError(f"Method {request.method} not allowed")
        except PromptMeterError:
            self.requests_rejected += 1
            raise

        body = await request.body()
        payload = self._parse_json(body)
        model = payload.get("model") if isinstance(payload, dict) else None
        model = model if isinstance(model, str) else None
        stream = isinstance(payload, dict) and payload.get("stream") is True

        path = "/" + path.lstrip("/")
        query = request.url.query
        meta = RequestMeta.from_parts(
            ip=request.client.host if request.client else None,
            url=self.cache.build_upstream_url(path, query),
            method=request.method,
            headers=request.headers,
            body=body,
            model=model,
        )
        # Raises ProvisionalLogError before the upstream is contacted
        record_id = await self.persistence.create_provisional(meta, user_id)

        resolution = await self.cache.resolve(
            request.method, path, query, request.headers, body, stream=stream
        )
        logger.info(
            f"[{record_id}] {request.method} {path} user={user_id} model={model} "
            f"status={resolution.status_code} cache_hit={resolution.cache_hit} stream={stream}"
        )

        if stream and resolution.error is None:
            return self._stream_response(record_id, payload, model, resolution)
        return self._buffered_response(record_id, payload, model, resolution)

    def _buffered_response(
        self,
        record_id: str,
        payload: Any,
        model: str | None,
        resolution: Resolution,
    ) -> Response:
        body = resolution.body or b""
        self.scheduler.spawn(
            self._finalize_buffered(record_id, payload, model, resolution),
            name=f"finalize-{record_id}",
        )
        return Response(
            content=body,
            status_code=resolution.status_code,
            headers=resolution.headers,
        )

    def _stream_response(
        self,
        record_id: str,
        payload: Any,
        model: str | None,
        resolution: Resolution,
    ) -> StreamingResponse:
        self.requests_streamed += 1

        async def on_complete(accumulator: StreamAccumulator, completed: bool) -> None:
            if completed and resolution.is_streaming and resolution.cacheable:
                await self.cache.store(
                    resolution.cache_key,
                    resolution.status_code,
                    resolution.headers,
                    accumulator.raw_body,
                )
            elif not completed:
                logger.info(f"[{record_id}] stream ended early, logging partial completion")
            await self._finalize_streamed(record_id, payload, model, resolution, accumulator)

        capture = StreamCapture(
            resolution.iter_bytes(),
            on_complete,
            self.scheduler,
            close_source=resolution.aclose,
            name=record_id,
        )
        # Reading starts now, so finalize runs even if the caller never reads
        capture.start()
        return StreamingResponse(
            capture.iter_caller(),
            status_code=resolution.status_code,
            headers=resolution.headers,
        )

    # -------------------------------------------------------------------------
    # Accounting and finalize (background)
    # -------------------------------------------------------------------------

    async def _finalize_buffered(
        self,
        record_id: str,
        payload: Any,
        model: str | None,
        resolution: Resolution,
    ) -> None:
        parsed = parse_response(self._parse_json(resolution.body or b""))
        completion = completion_text(parsed)
        prompt_tokens, completion_tokens = await self._count_tokens(
            record_id, payload, model, completion
        )
        await self.persistence.finalize(
            record_id,
            FinalizeOutcome(
                status=resolution.status_code,
                response_headers=dict(resolution.headers),
                response_body=_decode(resolution.body),
                cache_hit=resolution.cache_hit,
                streamed=False,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                completion=completion,
                completion_id=parsed.id if parsed is not None else None,
            ),
        )

    async def _finalize_streamed(
        self,
        record_id: str,
        payload: Any,
        model: str | None,
        resolution: Resolution,
        accumulator: StreamAccumulator,
    ) -> None:
        completion = accumulator.completion
        prompt_tokens, completion_tokens = await self._count_tokens(
            record_id, payload, model, completion
        )
        await self.persistence.finalize(
            record_id,
            FinalizeOutcome(
                status=resolution.status_code,
                response_headers=dict(resolution.headers),
                streamed_response_body=_decode(accumulator.raw_body),
                cache_hit=resolution.cache_hit,
                streamed=True,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                completion=completion,
                completion_id=accumulator.completion_id,
            ),
        )

    async def _count_tokens(
        self,
        record_id: str,
        payload: Any,
        model: str | None,
        completion: str,
    ) -> tuple[int | None, int | None]:
        """Prompt and completion token counts; either is None if it cannot be counted.

        The two are counted independently, so a model with no known chat
        framing still gets a completion count.
        """
        if not isinstance(payload, dict):
            return None, None

        prompt_tokens = await self._count_part(
            record_id, "prompt", self.accountant.count_prompt, payload
        )
        completion_tokens = await self._count_part(
            record_id, "completion", self.accountant.count_text, completion, model
        )
        return prompt_tokens, completion_tokens

    async def _count_part(
        self, record_id: str, part: str, count: Callable[..., int | None], *args: Any
    ) -> int | None:
        try:
            return await asyncio.to_thread(count, *args)
        except UnsupportedModelError as e:
            logger.warning(f"[{record_id}] {part} token accounting skipped: {e}")
        except Exception as e:
            logger.warning(f"[{record_id}] {part} token accounting failed: {e!r}")
        return None

    @staticmethod
    def _parse_json(body: bytes) -> Any:
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError:
            return None

    def get_stats(self) -> dict[str, Any]:
        return {
            "requests": {
                "total": self.requests_total,
                "rejected": self.requests_rejected,
                "streamed": self.requests_streamed,
            },
            "cache": self.cache.get_stats(),
            "persistence": self.persistence.get_stats(),
            "background": self.scheduler.stats(),
        }


# =============================================================================
# FastAPI App
# =============================================================================


def create_app(
    config: ProxyConfig | None = None,
    *,
    cache_backend: CacheBackend | None = None,
    log_store: LogStore | None = None,
    identity_store: IdentityStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    accountant: TokenAccountant | None = None,
) -> FastAPI:
    """Create FastAPI application."""
    config = config or ProxyConfig()

    app = FastAPI(
        title="promptmeter",
        description="Metering and caching proxy for LLM APIs",
        version=__version__,
    )

    proxy = MeteringProxy(
        config,
        cache_backend=cache_backend,
        log_store=log_store,
        identity_store=identity_store,
        http_client=http_client,
        accountant=accountant,
    )
    app.state.proxy = proxy

    @app.on_event("startup")
    async def startup():
        await proxy.startup()

    @app.on_event("shutdown")
    async def shutdown():
        await proxy.shutdown()

    @app.exception_handler(PromptMeterError)
    async def promptmeter_error(request: Request, exc: PromptMeterError):
        headers = None
        if isinstance(exc, MethodNotAllowedError):
            headers = {"Allow": ", ".join(ALLOWED_METHODS)}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "version": __version__,
            "config": {
                "upstream": config.upstream_url,
                "cache_backend": config.cache_backend,
                "single_flight": config.single_flight,
            },
        }

    @app.get("/stats")
    async def stats():
        result = proxy.get_stats()
        result["log"] = await asyncio.to_thread(proxy.log_store.get_summary_stats)
        return result

    @app.api_route("/{path:path}", methods=PROXIED_METHODS)
    async def proxied(request: Request, path: str):
        return await proxy.handle(request, path)

    return app


def run_server(config: ProxyConfig | None = None):
    """Run the proxy server."""
    config = config or ProxyConfig()
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)

    app = create_app(config)

    print(f"""
promptmeter {__version__}
  Listening:  http://{config.host}:{config.port}
  Upstream:   {config.upstream_url}
  Cache:      {config.cache_backend} (TTL {config.cache_ttl_seconds}s)
  Database:   {config.db_path}

  Send requests with:  X-Api-Key: Bearer <key>
  Create a key with:   promptmeter keys create --user-id <user>
""")

    uvicorn.run(app, host=config.host, port=config.port, log_level="warning")
