"""Token counting protocol.

Anything with a ``count_text`` method can back the TokenAccountant, which
keeps the sub-word tokenizer itself an opaque, swappable capability.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class TokenCounter(Protocol):
    """Protocol for token counting implementations."""

    def count_text(self, text: str) -> int:
        """Count tokens in a text string.

        Args:
            text: The text to count tokens for.

        Returns:
            Number of tokens in the text.
        """
        ...
