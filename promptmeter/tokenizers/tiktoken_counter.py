"""tiktoken-backed token counting.

The model identifier from the request body picks the BPE encoding
(``cl100k_base`` for gpt-3.5/gpt-4, ``o200k_base`` for gpt-4o and the
o-series, ``p50k_base``/``r50k_base`` for legacy completion models).
tiktoken's own model registry is consulted first; models it does not know
(local or proxied aliases) are counted with ``cl100k_base``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=8)
def _load_encoding(encoding_name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(encoding_name)


@lru_cache(maxsize=256)
def get_encoding_for_model(model: str | None) -> str:
    """Encoding name used to count tokens for ``model``."""
    if not model:
        return DEFAULT_ENCODING
    try:
        return tiktoken.encoding_name_for_model(model)
    except KeyError:
        logger.debug(f"No tiktoken encoding registered for {model}, using {DEFAULT_ENCODING}")
        return DEFAULT_ENCODING


class TiktokenCounter:
    """Counts tokens with the encoding for one model.

    The encoding is loaded on first use and shared between counters.

    Example:
        TiktokenCounter("gpt-4-0613").count_text("hi")  # 1
    """

    def __init__(self, model: str | None = None):
        self.model = model
        self.encoding_name = get_encoding_for_model(model)

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        # Caller content may contain "<|endoftext|>" and friends; count it as text
        return len(_load_encoding(self.encoding_name).encode(text, disallowed_special=()))

    def __repr__(self) -> str:
        return f"TiktokenCounter(model={self.model!r}, encoding={self.encoding_name!r})"
