"""Token counting for metered requests.

Usage:
    from promptmeter.tokenizers import TokenAccountant

    accountant = TokenAccountant()
    prompt_tokens = accountant.count_messages(messages, "gpt-4-0613")
    completion_tokens = accountant.count_text(completion, "gpt-4-0613")
"""

from .accountant import MessageFraming, TokenAccountant
from .base import TokenCounter
from .tiktoken_counter import TiktokenCounter, get_encoding_for_model

__all__ = [
    "TokenAccountant",
    "MessageFraming",
    "TokenCounter",
    "TiktokenCounter",
    "get_encoding_for_model",
]
