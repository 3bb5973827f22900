"""Custom exceptions for Work Item Bridge.

This module defines exception classes for the error conditions that can
occur while talking to Rally and Azure DevOps and while orchestrating a
migration run.
"""


class WorkItemBridgeError(Exception):
    """Base exception for all Work Item Bridge errors."""

    pass


class APIError(WorkItemBridgeError):
    """Base class for API-related errors."""

    def __init__(self, message: str, status_code: int | None = None, response: dict | None = None):
        """Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
        """
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format error message with status code and response."""
        msg = self.message
        if self.status_code:
            msg = f"[{self.status_code}] {msg}"
        if self.response:
            msg = f"{msg}: {self.response}"
        return msg


class AuthenticationError(APIError):
    """Raised when authentication fails (401 Unauthorized)."""

    pass


class AuthorizationError(APIError):
    """Raised when authorization fails (403 Forbidden)."""

    pass


class NotFoundError(APIError):
    """Raised when a resource is not found (404 Not Found)."""

    pass


class ConflictError(APIError):
    """Raised when a resource conflict occurs (409 Conflict)."""

    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded (429 Too Many Requests)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict | None = None,
        retry_after: int | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            status_code: HTTP status code
            response: API response body
            retry_after: Seconds to wait before retrying (from Retry-After header)
        """
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    pass


class NetworkError(WorkItemBridgeError):
    """Raised when network-related errors occur (timeouts, connection failures)."""

    pass


class ValidationError(WorkItemBridgeError):
    """Raised when data validation fails."""

    pass


class StateError(WorkItemBridgeError):
    """Raised when state management errors occur."""

    pass


class CheckpointError(StateError):
    """Raised when checkpoint operations fail."""

    pass


class ConfigurationError(WorkItemBridgeError):
    """Raised when configuration is invalid or missing."""

    pass


class MigrationError(WorkItemBridgeError):
    """Raised when migration operations fail."""

    pass


class MappingError(MigrationError):
    """Raised when a source record cannot be transformed into target fields.

    Covers a record type with no configured mapping and a mapping that
    produced no fields at all. Both indicate a setup problem, so the
    orchestrator aborts the run instead of failing record by record.
    """

    pass


class MigrationAbortedError(MigrationError):
    """Raised when a run stops early because of a configuration or mapping problem."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


# Errors worth retrying at the record level: the request may succeed later
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (NetworkError, RateLimitError, ServerError)
