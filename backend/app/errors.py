from __future__ import annotations

"""Typed failures raised by the settings store and the request orchestrator.

Each class maps to exactly one HTTP status at the route layer, so callers
never need to inspect message text to decide how to react.
"""

from enum import Enum


class ContentFlowError(Exception):
    """Base class for all content-flow core failures."""


class SettingsValidationError(ContentFlowError):
    """Raised when a settings write is rejected; names the offending field."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid value for '{field}': {message}")
        self.field = field
        self.message = message


class SettingsWriteConflict(ContentFlowError):
    """Raised when another process updated the persisted record first."""


class DecryptionError(ContentFlowError):
    """Raised when a stored credential cannot be decrypted with the master key."""


class NoProviderConfigured(ContentFlowError):
    """Raised when no provider has a credential for the requested operation."""

    possible_fix = "Configure an API key for at least one AI provider in the settings page."

    def __init__(self, message: str = "No AI provider is configured.") -> None:
        super().__init__(message)


class InvalidGenerationRequest(ContentFlowError):
    """Raised when generate/improve input fails validation before any call."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid '{field}': {message}")
        self.field = field
        self.message = message


class RateLimited(ContentFlowError):
    """Raised when the per-provider request window is exhausted."""

    def __init__(self, provider: str, retry_after: float) -> None:
        super().__init__(
            f"Too many AI requests for {provider}. Retry after {retry_after:.1f}s."
        )
        self.provider = provider
        self.retry_after = retry_after


class ProviderErrorKind(str, Enum):
    """Failure classes reported by provider adapters."""

    AUTH_FAILED = "auth_failed"
    RATE_LIMITED_BY_VENDOR = "rate_limited_by_vendor"
    INVALID_REQUEST = "invalid_request"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"


RETRYABLE_KINDS = frozenset(
    {
        ProviderErrorKind.TIMEOUT,
        ProviderErrorKind.UNAVAILABLE,
        ProviderErrorKind.RATE_LIMITED_BY_VENDOR,
    }
)


class ProviderError(ContentFlowError):
    """Raised by an adapter when the vendor call fails."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether a fallback provider may be attempted after this failure."""

        return self.kind in RETRYABLE_KINDS

    def __str__(self) -> str:
        prefix = f"{self.provider}: " if self.provider else ""
        return f"{prefix}{self.kind.value}: {self.message}"


class AllProvidersFailed(ContentFlowError):
    """Raised when the primary provider and its fallback both failed."""

    def __init__(self, errors: list[ContentFlowError]) -> None:
        detail = "; ".join(str(error) for error in errors)
        super().__init__(f"All AI providers failed: {detail}")
        self.errors = list(errors)
