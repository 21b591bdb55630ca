from __future__ import annotations
from typing import Optional


class RelayError(RuntimeError):
    """Base class for failures raised by the relay domain modules."""


class ConfigError(RelayError):
    pass


class ValidationError(RelayError):
    """Malformed song request or administration input; never retried."""


class AuthenticationError(RelayError):
    """Webhook signature mismatch, stale message, or missing correlation headers."""


class NotFound(RelayError):
    """Track search returned no results."""


class UpstreamUnavailable(RelayError):
    def __init__(self, message: str, *, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason


class NotAuthenticated(UpstreamUnavailable):
    """The provider has no usable credentials yet (OAuth not completed)."""


class NoActiveDevice(UpstreamUnavailable):
    """Spotify rejected a player command because no device is active."""
