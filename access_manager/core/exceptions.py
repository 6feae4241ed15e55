"""Custom exception classes for the access manager."""

from typing import Any, Dict, Optional

from fastapi import status


class AccessManagerError(Exception):
    """Base exception for the access manager.

    ``status_code`` is what the API exception handler responds with.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "An error occurred", data: Optional[Dict[str, Any]] = None):
        self.message = message
        self.data = data or {}
        super().__init__(self.message)


class ValidationError(AccessManagerError):
    """Raised when submitted input is malformed."""
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(AccessManagerError):
    """Raised when a request duplicates one already queued."""
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(AccessManagerError):
    """Raised when a requested access request is not found."""
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransitionError(AccessManagerError):
    """Raised when a status change is not allowed from the current state."""
    status_code = status.HTTP_409_CONFLICT


class AuthorizationError(AccessManagerError):
    """Raised when an admin credential or webhook secret is missing or wrong."""
    status_code = status.HTTP_401_UNAUTHORIZED


class StorageUnavailable(AccessManagerError):
    """Raised when the request store cannot be reached."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Storage is temporarily unavailable"):
        super().__init__(message)


class AutomationFailure(AccessManagerError):
    """Raised when the dashboard actor reports a failure for one user."""


class JobLockedError(AccessManagerError):
    """Raised when another orchestration run holds the run lock."""
    status_code = status.HTTP_409_CONFLICT

