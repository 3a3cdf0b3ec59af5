from __future__ import annotations


class UniStatusError(Exception):
    """Base error for UniStatus."""


class ConfigurationError(UniStatusError):
    """Missing or invalid runtime configuration."""


class CheckExecutionError(UniStatusError):
    """Monitor check could not be executed."""


class NotificationDeliveryError(UniStatusError):
    """Alert notification delivery failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LicenseError(UniStatusError):
    """License key verification failure."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class DomainVerificationError(UniStatusError):
    """DNS lookup failure during domain verification."""


class DatabaseError(UniStatusError):
    """Database layer failure."""
