"""
promptmeter - metering and caching proxy for LLM APIs.

Sits in front of an OpenAI-compatible API, authenticates callers by API
key, serves byte-identical repeat requests from a 30-day cache, and logs
every request with its prompt and completion token counts.

Quick Start:

    # Issue a key for a user (printed once, stored hashed)
    promptmeter keys create --user-id alice

    # Start the proxy
    promptmeter proxy --port 8787

    # Call it like the upstream
    curl http://localhost:8787/v1/chat/completions \\
        -H "X-Api-Key: Bearer <key>" \\
        -H "Authorization: Bearer $OPENAI_API_KEY" \\
        -H "Content-Type: application/json" \\
        -d '{"model": "gpt-3.5-turbo-0613", "messages": [{"role": "user", "content": "hi"}]}'

Embedding:

    from promptmeter import ProxyConfig
    from promptmeter.proxy import create_app

    app = create_app(ProxyConfig(cache_backend="memory"))
"""

__version__ = "0.1.0"

from .config import ProxyConfig
from .exceptions import (
    AuthMissingError,
    AuthUnknownError,
    ConfigurationError,
    FinalizeError,
    MethodNotAllowedError,
    PromptMeterError,
    ProvisionalLogError,
    StorageError,
    UnsupportedModelError,
    UpstreamTransportError,
)
from .hashing import hash_api_key, sha256_hex
from .tokenizers import TokenAccountant

__all__ = [
    "__version__",
    "AuthMissingError",
    "AuthUnknownError",
    "ConfigurationError",
    "FinalizeError",
    "MethodNotAllowedError",
    "PromptMeterError",
    "ProvisionalLogError",
    "ProxyConfig",
    "StorageError",
    "TokenAccountant",
    "UnsupportedModelError",
    "UpstreamTransportError",
    "hash_api_key",
    "sha256_hex",
]
