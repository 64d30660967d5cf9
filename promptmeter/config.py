"""Configuration for the promptmeter proxy."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Literal

from .exceptions import ConfigurationError

# 30 days, the validity window of a cached response
DEFAULT_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60

ENV_PREFIX = "PROMPTMETER_"

VALID_CACHE_BACKENDS = ("memory", "sqlite")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ProxyConfig:
    """Proxy configuration."""

    # Server
    host: str = "127.0.0.1"
    port: int = 8787

    # Upstream
    upstream_url: str = "https://api.openai.com"
    upstream_api_key: str | None = None  # Replaces the caller's Authorization when set

    # Storage (request log + API keys)
    db_path: str = "promptmeter.db"
    log_bodies: bool = True

    # Caching
    cache_backend: Literal["memory", "sqlite"] = "sqlite"
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    single_flight: bool = True

    # Timeouts
    request_timeout_seconds: int = 300
    connect_timeout_seconds: int = 10

    # Connection pool
    max_connections: int = 100
    max_keepalive_connections: int = 20

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check value ranges, raising ConfigurationError on the first problem."""
        if self.cache_backend not in VALID_CACHE_BACKENDS:
            raise ConfigurationError(
                f"Invalid cache backend '{self.cache_backend}'",
                details={"valid_backends": list(VALID_CACHE_BACKENDS)},
            )
        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"Invalid log level '{self.log_level}'",
                details={"valid_levels": list(VALID_LOG_LEVELS)},
            )
        if not self.upstream_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                "upstream_url must be an http(s) URL", details={"upstream_url": self.upstream_url}
            )
        if self.cache_ttl_seconds <= 0:
            raise ConfigurationError(
                "cache_ttl_seconds must be positive",
                details={"cache_ttl_seconds": self.cache_ttl_seconds},
            )
        if not 0 <= self.port <= 65535:
            raise ConfigurationError("port out of range", details={"port": self.port})
        self.upstream_url = self.upstream_url.rstrip("/")
        self.log_level = self.log_level.upper()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> ProxyConfig:
        """Build a config from PROMPTMETER_* environment variables.

        Explicit keyword overrides win over the environment.

        Example:
            PROMPTMETER_PORT=9000 PROMPTMETER_CACHE_BACKEND=memory promptmeter proxy
        """
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}

        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw.strip())

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _coerce(name: str, type_name: object, raw: str) -> object:
    """Convert an environment string to the field's declared type."""
    type_str = str(type_name)
    if type_str.startswith("bool"):
        lowered = raw.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"Invalid boolean for {name}", details={"value": raw})
    if type_str.startswith("int"):
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid integer for {name}", details={"value": raw}
            ) from e
    return raw
