"""Typed views of upstream response payloads.

Upstream bodies arrive as loosely shaped JSON. These variants pin down the
few fields the accounting path reads so completion extraction is explicit
about what is optional.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ChatCompletion:
    """Buffered chat completion: ``choices[0].message.content``."""

    id: str | None
    model: str | None
    content: str | None


@dataclass(frozen=True)
class TextCompletion:
    """Buffered legacy completion: ``choices[0].text``."""

    id: str | None
    model: str | None
    text: str | None


@dataclass(frozen=True)
class StreamEvent:
    """One streamed chunk: ``choices[0].delta.content`` (or ``choices[0].text``)."""

    id: str | None
    content: str | None


CompletionPayload = ChatCompletion | TextCompletion


def _first_choice(data: dict[str, Any]) -> dict[str, Any] | None:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    return first if isinstance(first, dict) else None


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def parse_response(data: Any) -> CompletionPayload | None:
    """Classify a buffered response body.

    Returns None for anything that is not a completion (errors, embeddings,
    model listings).
    """
    if not isinstance(data, dict):
        return None
    choice = _first_choice(data)
    if choice is None:
        return None

    response_id = _str_or_none(data.get("id"))
    model = _str_or_none(data.get("model"))

    message = choice.get("message")
    if isinstance(message, dict):
        return ChatCompletion(id=response_id, model=model, content=_str_or_none(message.get("content")))
    if "text" in choice:
        return TextCompletion(id=response_id, model=model, text=_str_or_none(choice.get("text")))
    return None


def parse_stream_event(data: Any) -> StreamEvent | None:
    """Classify one decoded event-stream payload.

    Returns None when the payload is not an object.
    """
    if not isinstance(data, dict):
        return None

    content = None
    choice = _first_choice(data)
    if choice is not None:
        delta = choice.get("delta")
        if isinstance(delta, dict):
            content = _str_or_none(delta.get("content"))
        elif "text" in choice:
            content = _str_or_none(choice.get("text"))

    return StreamEvent(id=_str_or_none(data.get("id")), content=content)


def completion_text(payload: CompletionPayload | StreamEvent | None) -> str:
    """Text the model produced, or an empty string."""
    if isinstance(payload, ChatCompletion):
        return payload.content or ""
    if isinstance(payload, TextCompletion):
        return payload.text or ""
    if isinstance(payload, StreamEvent):
        return payload.content or ""
    return ""
