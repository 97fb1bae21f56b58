"""
Error Taxonomy

Write-path errors (ValidationError, ProjectionError) are raised to the
caller. RefreshError is absorbed by the refresh coordinator. Read-path
errors (QueryError, NotFoundError) are client errors.
"""

from typing import Any, Dict, Optional


class DirectoryError(Exception):
    """Base exception carrying a stable error code and structured details."""

    error_code = "directory_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a response body."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(DirectoryError):
    """Mutation references unknown/inactive categories or breaks a policy. Nothing is written."""

    error_code = "validation_failed"
    status_code = 422


class ProjectionError(DirectoryError):
    """Store failure while writing associations; the caller's transaction must be retried."""

    error_code = "projection_failed"
    status_code = 503


class RefreshError(DirectoryError):
    """A read-model build failed; the previous version stays active."""

    error_code = "refresh_failed"
    status_code = 500

    def __init__(self, message: str, scope: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"scope": scope, **(details or {})})
        self.scope = scope


class QueryError(DirectoryError):
    """Malformed pagination, sort or filter parameters."""

    error_code = "invalid_query"
    status_code = 400


class NotFoundError(DirectoryError):
    """The requested category or listing does not exist."""

    error_code = "not_found"
    status_code = 404
