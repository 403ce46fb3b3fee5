"""
Custom exceptions for the delivery protocol.

Every error a client can trigger derives from ValidationError so routes can
turn it into a short response with the right status code.
"""

from __future__ import annotations


class ValidationError(Exception):
    """Exception for validation failures."""

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


class Unauthorized(ValidationError):
    """Request did not come from a recognised executor."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, 401)


class InvalidCredential(ValidationError):
    """Bad key, token or signature."""

    def __init__(self, message: str = "Invalid key", status_code: int = 401) -> None:
        super().__init__(message, status_code)


class SequenceViolation(ValidationError):
    """Tracepath step called out of order."""

    def __init__(self, message: str = "Invalid tracepath sequence") -> None:
        super().__init__(message, 403)


class Expired(ValidationError):
    """Token, session or key past its lifetime."""

    def __init__(self, message: str = "Expired", status_code: int = 401) -> None:
        super().__init__(message, status_code)


class ReplayDetected(ValidationError):
    """Nonce or request hash was already consumed."""

    def __init__(self, message: str = "Replay detected") -> None:
        super().__init__(message, 401)


class RateLimitError(ValidationError):
    """Exception for rate limiting."""

    def __init__(self, message: str = "Too many requests") -> None:
        super().__init__(message, 429)


class Banned(ValidationError):
    """Identifier or key is banned."""

    def __init__(
        self,
        message: str = "Access denied",
        reason: str | None = None,
        expires_at: int | None = None,
    ) -> None:
        super().__init__(message, 403)
        self.reason = reason
        self.expires_at = expires_at


class IntegrityFailure(ValidationError):
    """Checksum or HMAC mismatch on a payload stream."""

    def __init__(self, message: str = "Integrity check failed") -> None:
        super().__init__(message, 400)


class UpstreamUnavailable(ValidationError):
    """Persistent store or auxiliary service failed."""

    def __init__(self, message: str = "Service unavailable") -> None:
        super().__init__(message, 503)
