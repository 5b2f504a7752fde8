"""Exception types raised by the dashboard and its pipeline stages."""

from __future__ import annotations


class DashboardError(Exception):
    """Base class for expected operational failures."""


class AlreadyActiveError(DashboardError):
    """Raised when an operation kind is started while an instance is already running."""

    def __init__(self, kind: object) -> None:
        super().__init__(f"{kind} operation already in progress")
        self.kind = kind


class OperationCancelled(DashboardError):
    """Raised inside a stage worker once the dashboard has been asked to stop."""


class APIException(DashboardError):
    """The tournament API answered with an error payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitException(APIException):
    """The tournament API rejected the request because of a rate limit."""


class AuthenticationError(DashboardError):
    """Credentials are missing or were rejected."""


class DataValidationError(DashboardError):
    """Downloaded or generated data failed a validation check."""


class MissingPredictionsError(DashboardError):
    """A submission was requested before any predictions were produced."""
