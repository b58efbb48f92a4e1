from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cloak.rate_limiter import RateLimitResult


class CloakError(Exception):
    """Base class for every error raised by the privacy pipeline."""


class ConfigurationError(CloakError):
    """The server secret (or another required setting) is unavailable.

    Fatal to the request that hit it, never to the process.
    """


class DecryptionError(CloakError):
    """An envelope failed authentication or could not be parsed."""


class ExternalDetectorError(CloakError):
    """The external PII detection backend failed or returned garbage."""


class InvalidLinkError(CloakError):
    """A submission link token did not resolve to a usable organization link."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid submission link: {reason}")


class PersistenceError(CloakError):
    """The final storage write failed; nothing was persisted."""


class RateLimitExceededError(CloakError):
    """Raised when an admission check returns a denial."""

    def __init__(self, result: "RateLimitResult") -> None:
        self.result = result
        super().__init__(
            f"Rate limit exceeded ({result.limit} per window, "
            f"retry in {result.retry_after_seconds()}s)"
        )


class ReportNotFoundError(CloakError):
    """No visible report for a tracking id (unknown and archived look the same)."""
