"""Custom exceptions for promptmeter.

All exceptions inherit from PromptMeterError. Errors that can still reach
the caller carry an HTTP status code and a short error code, which the
proxy turns into a ``{"error": ..., "message": ...}`` JSON body.

Example:
    from promptmeter.exceptions import PromptMeterError, AuthUnknownError

    try:
        user_id = await proxy.authenticate(request)
    except AuthUnknownError as e:
        print(e.status_code, e.error_code)
"""

from __future__ import annotations

from typing import Any


class PromptMeterError(Exception):
    """Base exception for all promptmeter errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message

    def to_dict(self) -> dict[str, str]:
        """Body returned to the caller."""
        return {"error": self.error_code, "message": self.message}


class ConfigurationError(PromptMeterError):
    """Raised when promptmeter is misconfigured.

    Example:
        ConfigurationError(
            "Invalid cache backend 'redis'",
            details={"valid_backends": ["memory", "sqlite"]}
        )
    """

    pass


class StorageError(PromptMeterError):
    """Raised when the log store or identity store cannot be used."""

    pass


class AuthMissingError(PromptMeterError):
    """The X-Api-Key header is absent or empty."""

    status_code = 401
    error_code = "unauthorized"


class AuthUnknownError(PromptMeterError):
    """The presented key does not map to a user."""

    status_code = 401
    error_code = "unauthorized"


class MethodNotAllowedError(PromptMeterError):
    status_code = 405
    error_code = "method_not_allowed"


class ProvisionalLogError(PromptMeterError):
    """The provisional log row could not be written.

    The request is aborted before the upstream is contacted, so no
    upstream spend goes unlogged.
    """

    status_code = 500
    error_code = "log_write_failed"


class UpstreamTransportError(PromptMeterError):
    """The upstream could not be reached or did not answer."""

    status_code = 500
    error_code = "upstream_unavailable"


class UnsupportedModelError(PromptMeterError):
    """Token accounting has no framing rules for a model.

    Only raised inside background accounting. The caller already has the
    response by then, so this becomes a logged accounting gap.

    Example:
        UnsupportedModelError(
            "count_messages() is not implemented for model claude-3",
            details={"model": "claude-3"}
        )
    """

    pass


class FinalizeError(PromptMeterError):
    """The terminal log update failed. Logged, never surfaced."""

    pass
