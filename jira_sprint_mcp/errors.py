"""
Custom exception classes for the Jira sprint MCP server.

Provides structured error handling with helpful messages for common
Jira Cloud API errors.
"""

from typing import Optional, Any


class JiraError(Exception):
    """
    Base exception for everything the server reports as a failure.

    Attributes:
        status_code: HTTP status code from the API response
        message: Human-readable error message
        original_error: The original exception that was caught
        details: Additional error details
    """

    def __init__(
        self,
        message: str = "Jira API error",
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
        details: Optional[Any] = None
    ):
        self.status_code = status_code
        self.message = message
        self.original_error = original_error
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        """String representation of the error."""
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message

    def to_dict(self) -> dict:
        """Convert error to dictionary for JSON serialization."""
        return {
            'error': self.__class__.__name__,
            'status_code': self.status_code,
            'message': self.message,
            'details': str(self.details) if self.details else None
        }


class ConfigurationError(JiraError):
    """
    Raised when a required setting or report input is missing or invalid.

    Always raised before any network call is made.
    """

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message=message,
            details={'setting': setting} if setting else None
        )
        self.setting = setting


class BackendError(JiraError):
    """
    Raised when a call to the Jira backend fails.

    The response body is kept verbatim so the caller sees exactly what
    Jira said.
    """

    def __init__(
        self,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        if message is None:
            if status_code:
                message = f"Jira API error: HTTP {status_code}"
            else:
                message = "Jira API request failed"
        if body:
            message = f"{message}\n{body}"

        super().__init__(
            message=message,
            status_code=status_code,
            original_error=original_error,
            details={'body': body} if body else None
        )
        self.body = body


class MalformedQueryError(BackendError):
    """
    Raised when Jira rejects a request as malformed (HTTP 400).

    This is how an unknown field, a misspelt filter value or any other
    JQL syntax problem surfaces: the query builder does not validate
    field names locally.
    """

    def __init__(
        self,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None,
        query: Optional[str] = None
    ):
        message = "Jira rejected the query. Check field names and JQL syntax."
        if query:
            message = f"Jira rejected the query: {query}"
        super().__init__(
            status_code=400,
            body=body,
            message=message,
            original_error=original_error
        )
        self.query = query


class AuthenticationError(BackendError):
    """
    Raised when authentication fails (HTTP 401).

    This can occur when:
    - The API token was revoked
    - JIRA_EMAIL does not match the token owner
    """

    def __init__(
        self,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            status_code=401,
            body=body,
            message="Authentication failed. Check JIRA_EMAIL and JIRA_API_TOKEN.",
            original_error=original_error
        )


class PermissionDeniedError(BackendError):
    """Raised when the account lacks permission for a resource (HTTP 403)."""

    def __init__(
        self,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            status_code=403,
            body=body,
            message="Permission denied. Please check your Jira project permissions.",
            original_error=original_error
        )


class NotFoundError(BackendError):
    """
    Raised when a board, sprint or issue does not exist (HTTP 404).

    Also used for resources hidden by an allowlist, so that a filtered
    resource is indistinguishable from a missing one.
    """

    def __init__(
        self,
        resource: Optional[str] = None,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        message = "Resource not found. Please verify it exists and you have access."
        if resource:
            message = f"{resource} not found"
        super().__init__(
            status_code=404,
            body=body,
            message=message,
            original_error=original_error
        )
        self.resource = resource


class RateLimitError(BackendError):
    """
    Raised when the Jira rate limit is exceeded (HTTP 429).

    The server never retries on its own; retry_after tells the caller
    how long Jira asked to wait.
    """

    def __init__(
        self,
        retry_after: Optional[int] = None,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        if retry_after:
            message = f"Rate limit exceeded. Please retry after {retry_after} seconds."
        else:
            message = "Rate limit exceeded. Please retry after a brief delay."

        super().__init__(
            status_code=429,
            body=body,
            message=message,
            original_error=original_error
        )
        self.retry_after = retry_after


class TransientError(BackendError):
    """Raised for temporary service errors (HTTP 500, 502, 503, 504)."""

    def __init__(
        self,
        status_code: int,
        body: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            status_code=status_code,
            body=body,
            message=f"Jira service temporarily unavailable (HTTP {status_code}).",
            original_error=original_error
        )


class TimeoutError(BackendError):
    """
    Raised when a request or a whole operation runs past its deadline.

    This can occur when:
    - Jira is slow to respond to a single request
    - A report needs more backend calls than the caller's deadline allows
    """

    def __init__(
        self,
        timeout_seconds: float = 30,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        target = operation or "Request"
        message = f"{target} timed out after {timeout_seconds:g} seconds."
        super().__init__(
            status_code=408,
            message=message,
            original_error=original_error
        )
        self.timeout_seconds = timeout_seconds


def map_status_code_to_error(
    status_code: int,
    body: Optional[str] = None,
    original_error: Optional[Exception] = None,
    retry_after: Optional[int] = None
) -> BackendError:
    """
    Map HTTP status code to appropriate error class.

    Args:
        status_code: HTTP status code from the Jira API
        body: Raw response body, kept verbatim
        original_error: The original exception
        retry_after: Parsed Retry-After header for 429 responses

    Returns:
        Appropriate BackendError subclass instance
    """
    if status_code == 400:
        return MalformedQueryError(body=body, original_error=original_error)
    elif status_code == 401:
        return AuthenticationError(body=body, original_error=original_error)
    elif status_code == 403:
        return PermissionDeniedError(body=body, original_error=original_error)
    elif status_code == 404:
        return NotFoundError(body=body, original_error=original_error)
    elif status_code == 429:
        return RateLimitError(retry_after=retry_after, body=body, original_error=original_error)
    elif status_code in [500, 502, 503, 504]:
        return TransientError(status_code=status_code, body=body, original_error=original_error)
    else:
        return BackendError(
            status_code=status_code,
            body=body,
            original_error=original_error
        )
