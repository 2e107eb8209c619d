"""
Log sanitization utilities to prevent credential leakage.

Jira error bodies and httpx exception messages can echo request headers
or query strings back at us. Everything that ends up in a log line or an
error returned to the MCP client should go through these helpers first.
"""

import re


# Patterns that might indicate sensitive data
SENSITIVE_PATTERNS = [
    (re.compile(r'(api[_-]?token["\']?\s*[:=]\s*["\']?)([^"\'\s,}]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'\s,}]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'\s,}]+)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(basic\s+)([a-zA-Z0-9+/]+=*)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(bearer\s+)([a-zA-Z0-9\-._~+/]+=*)', re.IGNORECASE), r'\1***REDACTED***'),
    (re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)(?!basic\s|bearer\s)([^"\'\s,}]+)', re.IGNORECASE), r'\1***REDACTED***'),
    # Atlassian API tokens are long opaque strings starting with ATATT
    (re.compile(r'\bATATT[a-zA-Z0-9\-_=]{10,}'), '***REDACTED***'),
]


def sanitize_log_message(message: str) -> str:
    """
    Sanitize a log message by redacting sensitive information.

    Args:
        message: The log message to sanitize

    Returns:
        Sanitized log message with sensitive data redacted
    """
    if not message:
        return message

    sanitized = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    return sanitized


def sanitize_error(error: Exception) -> str:
    """Sanitize an exception message for safe logging."""
    return sanitize_log_message(str(error))


def safe_log_error(error: Exception, context: str = "") -> str:
    """
    Create a safe error message for logging.

    Args:
        error: The exception
        context: Additional context (e.g., "Search failed")

    Returns:
        "<context>: <ErrorType>: <sanitized message>"
    """
    sanitized_error = sanitize_error(error)
    error_type = type(error).__name__

    if context:
        return f"{context}: {error_type}: {sanitized_error}"
    return f"{error_type}: {sanitized_error}"
