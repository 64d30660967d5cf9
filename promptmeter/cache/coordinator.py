"""Cache-or-upstream resolution for proxied requests.

Key derivation: the request path with the SHA-256 of the body bytes
appended as a final segment, e.g.

    /v1/chat/completions/9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08

Headers and the query string do not participate, so two callers sending
byte-identical bodies to the same path share one entry.

Single-flight: with ``single_flight=True`` concurrent buffered misses for
the same key wait on a per-key lock and re-check the cache, so only the
first one reaches the upstream. Streamed misses are not collapsed; each
opens its own upstream stream and the first complete one to finish is
stored. Later completions find a live entry and leave it in place.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..exceptions import UpstreamTransportError
from ..hashing import sha256_hex
from .backends.base import CacheBackend, CacheEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 24 * 60 * 60
CACHE_CONTROL_VALUE = f"public, max-age={DEFAULT_TTL_SECONDS}"

# The only request headers sent upstream
FORWARDED_REQUEST_HEADERS = ("content-type", "authorization", "x-api-key")

# httpx has already decoded and de-chunked the body, so these no longer apply
DROPPED_RESPONSE_HEADERS = frozenset(
    {"content-length", "content-encoding", "transfer-encoding", "connection", "keep-alive"}
)


def derive_cache_key(path: str, body: bytes) -> str:
    """Cache key for a request: ``<path>/<sha256(body)>``."""
    return f"{path}/{sha256_hex(body)}"


def passthrough_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Upstream response headers that are still valid for the caller."""
    return {k.lower(): v for k, v in headers.items() if k.lower() not in DROPPED_RESPONSE_HEADERS}


@dataclass
class Resolution:
    """Outcome of resolving one request against the cache and upstream.

    Exactly one of ``body`` (buffered or cached) and ``upstream`` (an open
    streamed response) is set.
    """

    status_code: int
    headers: dict[str, str]
    body: bytes | None = None
    upstream: httpx.Response | None = None
    cache_hit: bool = False
    cache_key: str = ""
    error: str | None = None

    @property
    def is_streaming(self) -> bool:
        return self.upstream is not None

    @property
    def cacheable(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300

    def iter_bytes(self) -> AsyncIterator[bytes]:
        """Response body as a byte stream, live or replayed."""
        if self.upstream is not None:
            return self.upstream.aiter_bytes()
        return _replay(self.body or b"")

    async def aclose(self) -> None:
        if self.upstream is not None:
            await self.upstream.aclose()


async def _replay(body: bytes) -> AsyncIterator[bytes]:
    if body:
        yield body


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class CacheCoordinator:
    """Serves identical requests from cache and forwards misses upstream.

    Example:
        coordinator = CacheCoordinator(InMemoryCacheBackend(), httpx.AsyncClient(),
                                       "https://api.openai.com")
        resolution = await coordinator.resolve("POST", "/v1/chat/completions", "",
                                               request.headers, body)
    """

    def __init__(
        self,
        backend: CacheBackend,
        http_client: httpx.AsyncClient,
        upstream_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        single_flight: bool = True,
        upstream_api_key: str | None = None,
    ):
        self.backend = backend
        self.http_client = http_client
        self.upstream_url = upstream_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.single_flight = single_flight
        self.upstream_api_key = upstream_api_key
        self.cache_control = f"public, max-age={ttl_seconds}"

        self._flights: dict[str, _Flight] = {}

        self.hits = 0
        self.misses = 0
        self.stores = 0
        self.upstream_errors = 0

    # -------------------------------------------------------------------------
    # Request shaping
    # -------------------------------------------------------------------------

    def build_upstream_url(self, path: str, query: str = "") -> str:
        url = f"{self.upstream_url}{path}"
        if query:
            url = f"{url}?{query}"
        return url

    def build_upstream_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        """Narrow the caller's headers to the forwarded set."""
        lowered = {k.lower(): v for k, v in headers.items()}
        forwarded = {name: lowered[name] for name in FORWARDED_REQUEST_HEADERS if lowered.get(name)}
        if self.upstream_api_key:
            forwarded["authorization"] = f"Bearer {self.upstream_api_key}"
        return forwarded

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(
        self,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
        stream: bool = False,
    ) -> Resolution:
        """Return the cached response for this request, or fetch it upstream.

        Never raises for upstream transport failures; those come back as a
        synthetic 500 Resolution and leave the cache untouched.
        """
        key = derive_cache_key(path, body)

        cached = await self.lookup(key)
        if cached is not None:
            return cached

        if stream:
            self.misses += 1
            return await self._fetch_stream(key, method, path, query, headers, body)

        if not self.single_flight:
            self.misses += 1
            return await self._fetch(key, method, path, query, headers, body)

        async with self._flight(key):
            # Another request may have filled the entry while we waited
            cached = await self.lookup(key)
            if cached is not None:
                return cached
            self.misses += 1
            return await self._fetch(key, method, path, query, headers, body)

    async def lookup(self, key: str) -> Resolution | None:
        """Cached Resolution for ``key`` if a live entry exists."""
        try:
            entry = await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e!r}")
            return None

        if entry is None:
            return None
        if entry.is_expired():
            logger.debug(f"Cache entry expired: {key}")
            return None

        self.hits += 1
        return Resolution(
            status_code=entry.status_code,
            headers=dict(entry.headers),
            body=entry.body,
            cache_hit=True,
            cache_key=key,
        )

    async def store(self, key: str, status_code: int, headers: Mapping[str, str], body: bytes) -> bool:
        """Write an entry valid for ``ttl_seconds``.

        Entries are write-once: while a live entry holds ``key`` the new one
        is discarded. Returns True only if this call wrote the entry; a
        backend failure is logged and reported as False.
        """
        entry = CacheEntry(
            status_code=status_code,
            headers=dict(headers),
            body=body,
            created_at=time.time(),
            ttl_seconds=self.ttl_seconds,
        )
        try:
            written = await self.backend.set_if_absent(key, entry)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e!r}")
            return False
        if not written:
            logger.debug(f"Cache entry already live, keeping it: {key}")
            return False
        self.stores += 1
        return True

    @asynccontextmanager
    async def _flight(self, key: str):
        flight = self._flights.get(key)
        if flight is None:
            flight = self._flights[key] = _Flight()
        flight.waiters += 1
        try:
            async with flight.lock:
                yield
        finally:
            flight.waiters -= 1
            if flight.waiters == 0:
                self._flights.pop(key, None)

    async def _fetch(
        self,
        key: str,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> Resolution:
        url = self.build_upstream_url(path, query)
        try:
            response = await self.http_client.request(
                method, url, headers=self.build_upstream_headers(headers), content=body
            )
        except httpx.HTTPError as e:
            return self._transport_failure(key, url, e)

        resolution = Resolution(
            status_code=response.status_code,
            headers=passthrough_headers(response.headers),
            body=response.content,
            cache_key=key,
        )
        if resolution.cacheable:
            resolution.headers["cache-control"] = self.cache_control
            await self.store(key, resolution.status_code, resolution.headers, response.content)
        return resolution

    async def _fetch_stream(
        self,
        key: str,
        method: str,
        path: str,
        query: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> Resolution:
        url = self.build_upstream_url(path, query)
        request = self.http_client.build_request(
            method, url, headers=self.build_upstream_headers(headers), content=body
        )
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            return self._transport_failure(key, url, e)

        resolution = Resolution(
            status_code=response.status_code,
            headers=passthrough_headers(response.headers),
            upstream=response,
            cache_key=key,
        )
        if resolution.cacheable:
            resolution.headers["cache-control"] = self.cache_control
        return resolution

    def _transport_failure(self, key: str, url: str, exc: Exception) -> Resolution:
        self.upstream_errors += 1
        logger.error(f"Upstream request to {url} failed: {exc!r}")
        error = UpstreamTransportError(f"Upstream request failed: {exc.__class__.__name__}")
        return Resolution(
            status_code=error.status_code,
            headers={"content-type": "application/json"},
            body=json.dumps(error.to_dict()).encode("utf-8"),
            cache_key=key,
            error=str(exc) or exc.__class__.__name__,
        )

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "hits": self.hits,
            "misses": self.misses,
            "stores": self.stores,
            "upstream_errors": self.upstream_errors,
            "in_flight_keys": len(self._flights),
            "ttl_seconds": self.ttl_seconds,
        }
        try:
            stats["backend"] = self.backend.get_stats()
        except Exception as e:
            stats["backend"] = {"error": str(e)}
        return stats
