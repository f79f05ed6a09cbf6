"""
Error taxonomy for the commit tracker.

Expected skip conditions (excluded branch, already processed commit) are not
errors and never raise; everything here describes an unexpected failure that
is returned to the caller and published on the event bus.
"""

from enum import Enum
from typing import Optional


class ErrorType(str, Enum):
    """Categories used to route errors to interested subscribers."""
    CONFIGURATION = "configuration"
    GIT_OPERATION = "git-operation"
    FILESYSTEM = "filesystem"
    REPOSITORY = "repository"
    UNKNOWN = "unknown"


class TrackerError(Exception):
    """Base class for commit tracker failures."""

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        return self.message


class ConfigurationError(TrackerError):
    """Missing or invalid settings."""
    error_type = ErrorType.CONFIGURATION


class GitOperationError(TrackerError):
    """A git command failed, timed out or found no remote."""
    error_type = ErrorType.GIT_OPERATION


class FilesystemError(TrackerError):
    """Invalid path, failed directory creation or failed write."""
    error_type = ErrorType.FILESYSTEM


class RepositoryError(TrackerError):
    """Malformed repository handle or missing HEAD."""
    error_type = ErrorType.REPOSITORY


def classify_error(error: BaseException) -> ErrorType:
    """Return the error type for any exception, UNKNOWN for foreign ones."""
    if isinstance(error, TrackerError):
        return error.error_type
    return ErrorType.UNKNOWN


__all__ = [
    'ErrorType', 'TrackerError', 'ConfigurationError', 'GitOperationError',
    'FilesystemError', 'RepositoryError', 'classify_error'
]
