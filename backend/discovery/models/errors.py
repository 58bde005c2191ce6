"""Typed error taxonomy.

Every failure that crosses a component boundary is one of these. Each class
carries the HTTP status the API layer maps it to, so routers never need to
translate exceptions themselves.

- InvalidRequestError: malformed input, caught before any work starts
- PermissionDeniedError: write by a non-owner or on a locked experience
- NotFoundError: referenced entity absent or outside the caller's visibility
- RateLimitExceededError: caller over budget; not retryable until reset
- UpstreamUnavailableError: store, embedding or model service failed after retry
- TurnCancelledError: caller cancelled the active conversational turn
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for all discovery-engine failures."""

    status_code: int = 500
    error_type: str = "server"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.error_type}


class InvalidRequestError(DiscoveryError):
    status_code = 400
    error_type = "validation"


class PermissionDeniedError(InvalidRequestError):
    """Write attempted by a non-owner, or on a locked experience."""

    status_code = 403
    error_type = "forbidden"


class NotFoundError(DiscoveryError):
    status_code = 404
    error_type = "not_found"


class RateLimitExceededError(DiscoveryError):
    """Raised when a caller exceeds its fixed-window budget."""

    status_code = 429
    error_type = "rate_limit"

    def __init__(self, message: str = "", reset_after: float = 0.0) -> None:
        self.reset_after = max(0.0, reset_after)
        super().__init__(message or f"Rate limit exceeded. Retry in {self.reset_after:.0f}s.")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retry_after": round(self.reset_after, 3)}


class UpstreamUnavailableError(DiscoveryError):
    status_code = 503
    error_type = "upstream"


class TurnCancelledError(DiscoveryError):
    status_code = 409
    error_type = "cancelled"
