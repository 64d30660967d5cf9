"""Token accounting for proxied requests and responses.

Counts prompt tokens using the chat framing rules published in the OpenAI
cookbook ("How to count tokens with tiktoken") and completion tokens as
plain text. The tokenizer itself is an injected TokenCounter.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..exceptions import UnsupportedModelError
from .base import TokenCounter
from .tiktoken_counter import TiktokenCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageFraming:
    """Per-model chat framing overhead."""

    tokens_per_message: int
    tokens_per_name: int


CURRENT_FRAMING = MessageFraming(tokens_per_message=3, tokens_per_name=1)
# gpt-3.5-turbo-0301: every message is {role/name}\n{content}\n, and a
# name replaces the role
LEGACY_FRAMING = MessageFraming(tokens_per_message=4, tokens_per_name=-1)

MODEL_FRAMING: dict[str, MessageFraming] = {
    "gpt-3.5-turbo-0613": CURRENT_FRAMING,
    "gpt-3.5-turbo-16k-0613": CURRENT_FRAMING,
    "gpt-4-0314": CURRENT_FRAMING,
    "gpt-4-32k-0314": CURRENT_FRAMING,
    "gpt-4-0613": CURRENT_FRAMING,
    "gpt-4-32k-0613": CURRENT_FRAMING,
    "gpt-3.5-turbo-0301": LEGACY_FRAMING,
}

# Family substring -> latest known variant, checked in order
FAMILY_FALLBACKS: list[tuple[str, str]] = [
    ("gpt-3.5-turbo", "gpt-3.5-turbo-0613"),
    ("gpt-4", "gpt-4-0613"),
]

# Every reply is primed with <|start|>assistant<|message|>
REPLY_PRIMING_TOKENS = 3


class TokenAccountant:
    """Counts tokens in free text and in chat message sequences.

    Example:
        accountant = TokenAccountant()
        accountant.count_messages([{"role": "user", "content": "hi"}], "gpt-4-0613")  # 8
    """

    def __init__(self, counter_factory: Callable[[str | None], TokenCounter] | None = None):
        self._counter_factory = counter_factory or TiktokenCounter
        self._counters: dict[str | None, TokenCounter] = {}

    def _counter(self, model: str | None) -> TokenCounter:
        counter = self._counters.get(model)
        if counter is None:
            counter = self._counter_factory(model)
            self._counters[model] = counter
        return counter

    def count_text(self, text: str, model: str | None = None) -> int:
        """Count tokens in ``text`` with the tokenizer for ``model``."""
        if not text:
            return 0
        return self._counter(model).count_text(text)

    def resolve_framing(self, model: str) -> tuple[str, MessageFraming]:
        """Find the framing rules for a model, falling back by family.

        Raises:
            UnsupportedModelError: If the model matches no known family.
        """
        if model in MODEL_FRAMING:
            return model, MODEL_FRAMING[model]

        for family, latest in FAMILY_FALLBACKS:
            if family in model:
                logger.warning(
                    f"Warning: {family} may update over time. "
                    f"Returning num tokens assuming {latest}."
                )
                return latest, MODEL_FRAMING[latest]

        raise UnsupportedModelError(
            f"count_messages() is not implemented for model {model}",
            details={"model": model},
        )

    def count_messages(self, messages: list[dict[str, Any]], model: str) -> int:
        """Count prompt tokens for a chat request.

        Args:
            messages: Chat messages as sent to the upstream.
            model: Model identifier from the request body.

        Returns:
            Total token count including framing and reply priming.

        Raises:
            UnsupportedModelError: If the model matches no known family.
        """
        resolved_model, framing = self.resolve_framing(model)

        total = 0
        for message in messages:
            total += framing.tokens_per_message
            for key, value in message.items():
                if value is None:
                    continue
                if not isinstance(value, str):
                    value = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
                total += self.count_text(value, resolved_model)
                if key == "name":
                    total += framing.tokens_per_name

        total += REPLY_PRIMING_TOKENS
        return total

    def count_prompt(self, body: dict[str, Any]) -> int | None:
        """Count prompt tokens for a chat or text-completion request body.

        Returns None when the body carries neither ``messages`` nor ``prompt``.
        """
        model = body.get("model")
        messages = body.get("messages")
        if isinstance(messages, list):
            return self.count_messages(messages, model if isinstance(model, str) else "")

        prompt = body.get("prompt")
        if isinstance(prompt, str):
            return self.count_text(prompt, model)
        if isinstance(prompt, list) and all(isinstance(p, str) for p in prompt):
            return sum(self.count_text(p, model) for p in prompt)
        return None
