"""
Error taxonomy for the notification and credential dispatch layer.

Exceptions are raised inside adapters, the formatter and the provider
registry, and converted into typed results at the Dispatcher and Token
Service seams. Callers of `dispatch`, `issue` and `verify` never see them.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories reported back to callers."""
    VALIDATION = "validation_error"             # Malformed request, not retried
    PROVIDER_UNAVAILABLE = "provider_unavailable"  # Channel not configured, skipped
    TRANSPORT_FAILURE = "transport_failure"     # Network/vendor failure, falls back
    RATE_LIMITED = "rate_limited"               # Duplicate reset inside cooldown
    TOKEN_INVALID = "token_invalid"             # not_found / mismatch / expired


class NotificationError(Exception):
    """Base class for all dispatch-layer failures."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class ValidationError(NotificationError):
    """Missing or malformed request data (no recipient, empty item list)."""
    kind = ErrorKind.VALIDATION


class ProviderUnavailable(NotificationError):
    """The provider is not configured."""
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class TransportFailure(NotificationError):
    """Network-level failure or malformed response from a provider."""
    kind = ErrorKind.TRANSPORT_FAILURE


class RateLimited(NotificationError):
    """A reset was requested again inside the cooldown window."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, retry_after_seconds: float = 0.0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class TokenInvalid(NotificationError):
    """A reset token failed verification."""
    kind = ErrorKind.TOKEN_INVALID

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


# Most actionable first when several providers failed in one dispatch
ACTIONABILITY = {
    ErrorKind.VALIDATION: 0,
    ErrorKind.TRANSPORT_FAILURE: 1,
    ErrorKind.PROVIDER_UNAVAILABLE: 2,
    ErrorKind.RATE_LIMITED: 3,
    ErrorKind.TOKEN_INVALID: 4,
}
