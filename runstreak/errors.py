"""Central error types used across the application."""

from __future__ import annotations


class RunstreakError(RuntimeError):
    """Base error for runstreak failures."""


class TransientExternalError(RunstreakError):
    """Raised when Strava is unreachable or answers with an unexpected status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(RunstreakError):
    """Raised when the refresh token is missing, invalid, or revoked.

    Recovery needs a human: re-run the OAuth flow at ``/auth/strava``.
    """


class StorageUnavailableError(RunstreakError):
    """Raised by a store backend that cannot be reached."""


class ValidationError(RunstreakError, ValueError):
    """Raised when a manual-edit value cannot be coerced to its field type."""

    def __init__(self, field: str, value: object, reason: str) -> None:
        super().__init__(f"{field}: {reason} (got {value!r})")
        self.field = field
        self.value = value
        self.reason = reason


__all__ = [
    "AuthExpiredError",
    "RunstreakError",
    "StorageUnavailableError",
    "TransientExternalError",
    "ValidationError",
]
