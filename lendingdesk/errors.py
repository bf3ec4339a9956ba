"""Exception hierarchy shared by the services and the HTTP layer."""

from typing import Any, Optional


class LendingDeskError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LendingDeskError):
    """Malformed or missing input."""

    status_code = 400


class Unauthorized(LendingDeskError):
    """Missing, invalid or expired credential."""

    status_code = 401


class Forbidden(LendingDeskError):
    """Authenticated but not allowed by role or tenant."""

    status_code = 403


class NotFound(LendingDeskError):
    """Referenced entity does not exist (or is outside the caller's tenant)."""

    status_code = 404


class Conflict(LendingDeskError):
    """Rejected because of the current state, e.g. linked rows or duplicates."""

    status_code = 409


class ConfigurationError(LendingDeskError):
    """Settings are unusable for the current environment."""


class PostalCodeLookupError(LendingDeskError):
    """The postal code is invalid or the upstream lookup failed."""

    status_code = 400


class TooManyRequests(LendingDeskError):
    """The client exceeded its request budget for the current window."""

    status_code = 429
