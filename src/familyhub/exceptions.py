"""Custom exception hierarchy for the familyhub package."""

from __future__ import annotations


class FamilyHubError(Exception):
    """Base class for all familyhub specific errors."""

    status_code = 500


class ValidationError(FamilyHubError):
    """Raised when a request is missing required fields."""

    status_code = 400


class MalformedMessageError(FamilyHubError):
    """Raised when a sync wire message cannot be decoded."""

    status_code = 400


class AggregationError(FamilyHubError):
    """Raised when one of the shopping list source fetches fails."""


class NotFoundError(FamilyHubError):
    """Raised when a stored document lookup fails."""

    status_code = 404


class ProfileNotFoundError(NotFoundError):
    """Raised when a child profile cannot be found."""


class PrizeNotFoundError(NotFoundError):
    """Raised when a prize lookup fails."""


class TaskNotFoundError(NotFoundError):
    """Raised when a catalog task lookup fails."""


class AssignmentNotFoundError(NotFoundError):
    """Raised when a task assignment lookup fails."""


class InsufficientStarsError(FamilyHubError):
    """Raised when a profile cannot afford a prize."""

    status_code = 400
