"""SHA-256 helpers used for cache keys and API keys at rest."""

from __future__ import annotations

import hashlib


def sha256_hex(data: bytes | str) -> str:
    """Return the lowercase hex SHA-256 digest of ``data``.

    Strings are encoded as UTF-8 first.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_api_key(api_key: str) -> str:
    """Digest under which an API key is stored in the identity store."""
    return sha256_hex(api_key.strip())
