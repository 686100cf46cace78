"""Custom exceptions for the postage mail-server test harness.

All postage-specific exceptions inherit from PostageError for unified error handling.
Each exception preserves the original cause chain for debugging.
"""

from __future__ import annotations

from typing import Any


class PostageError(Exception):
    """Base exception for all postage errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "PostageError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class PostageConfigError(PostageError):
    """Raised when a scenario file is invalid or cannot be loaded.

    Common causes:
    - Scenario file not found
    - Invalid YAML syntax
    - Missing required fields
    - Invalid field values (e.g., duration_minutes < 1)
    """


class StartupError(PostageError):
    """Raised when the run cannot be set up; the run never reaches RUNNING.

    Common causes:
    - Account provisioning failed (management API unreachable, rejected)
    - Relay interceptor port already in use
    - Result files cannot be rotated
    """


class SamplingError(PostageError):
    """Raised by a single sampler invocation that failed.

    Recoverable: the owning scheduler records it and keeps running.

    Common causes:
    - Connection refused or timed out
    - SMTP/POP3 protocol error
    - Authentication rejected for one mailbox
    """


class PostageRunnerError(PostageError):
    """Raised when the run control surface is misused (e.g. starting twice)."""
