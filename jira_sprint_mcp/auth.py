"""
Authentication handling for Jira Cloud
Uses Basic authentication with an account email and API token
"""
import sys
from collections import defaultdict, deque
from datetime import datetime
from typing import Optional

import httpx

from .errors import (
    AuthenticationError,
    BackendError,
    ConfigurationError,
    map_status_code_to_error
)
from .log_sanitizer import safe_log_error, sanitize_log_message


class JiraAuth:
    """
    Holds Jira credentials and the shared HTTP connection.

    The connection is an httpx.AsyncClient with Basic auth applied to every
    request. initialize() opens it and, unless told otherwise, checks the
    credentials against /rest/api/3/myself.
    """

    VERIFY_PATH = "/rest/api/3/myself"

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize authentication handler

        Args:
            base_url: Jira site URL (e.g., https://yourcompany.atlassian.net)
            email: Account email the API token belongs to
            api_token: Jira API token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        if not base_url or not email or not api_token:
            raise ConfigurationError(
                "Jira base URL, email and API token are all required"
            )

        self.base_url = base_url.rstrip('/')
        self.email = email
        self.timeout = timeout
        self.connection: Optional[httpx.AsyncClient] = None
        self._credentials = httpx.BasicAuth(email, api_token)
        self._transport = transport
        self._account_name: Optional[str] = None
        self.time_zone: Optional[str] = None

        # Auth failure tracking
        self._auth_failures = defaultdict(int)
        self._auth_failure_timestamps = deque(maxlen=100)
        self._last_auth_attempt = None
        self._last_auth_success = None

    async def initialize(self, verify: bool = True):
        """Open the connection to Jira and optionally verify the credentials"""
        self.connection = httpx.AsyncClient(
            base_url=self.base_url,
            auth=self._credentials,
            timeout=self.timeout,
            headers={"Accept": "application/json"},
            transport=self._transport
        )

        if not verify:
            return

        self._last_auth_attempt = datetime.utcnow()
        try:
            response = await self.connection.get(self.VERIFY_PATH)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._record_failure("verify", e)
            print(f"✗ {safe_log_error(e, 'Jira authentication failed')}", file=sys.stderr)
            await self.close()
            if e.response.status_code in (401, 403):
                raise AuthenticationError(
                    body=sanitize_log_message(e.response.text),
                    original_error=e
                ) from e
            raise map_status_code_to_error(
                e.response.status_code,
                body=sanitize_log_message(e.response.text),
                original_error=e
            ) from e
        except httpx.RequestError as e:
            self._record_failure("connect", e)
            print(f"✗ {safe_log_error(e, 'Could not reach Jira')}", file=sys.stderr)
            await self.close()
            raise BackendError(
                message=f"Could not reach Jira at {self.base_url}",
                original_error=e
            ) from e

        self._last_auth_success = datetime.utcnow()
        account = response.json()
        self._account_name = account.get("displayName")
        self.time_zone = account.get("timeZone")
        print(f"✓ Authenticated to {self.base_url} as {self.email}", file=sys.stderr)

    def _record_failure(self, stage: str, error: Exception) -> None:
        self._auth_failures[stage] += 1
        self._auth_failure_timestamps.append({
            'stage': stage,
            'timestamp': datetime.utcnow().isoformat(),
            'error_type': type(error).__name__
        })

    def get_client(self) -> httpx.AsyncClient:
        """
        Get the authenticated HTTP client

        Raises:
            RuntimeError: If initialize() has not been called
        """
        if not self.connection:
            raise RuntimeError("Not authenticated. Call initialize() first.")
        return self.connection

    async def close(self):
        """Clean up resources"""
        if self.connection is not None:
            await self.connection.aclose()
        self.connection = None

    def get_auth_info(self) -> dict:
        """Get information about current authentication"""
        return {
            "method": "API Token (Basic)",
            "base_url": self.base_url,
            "email": self.email,
            "account": self._account_name,
            "time_zone": self.time_zone,
            "authenticated": self.connection is not None
        }

    def get_auth_failure_stats(self) -> dict:
        """
        Get authentication failure statistics.

        Returns:
            Dictionary with failure counts, timestamps, and status
        """
        recent_failures = list(self._auth_failure_timestamps)[-10:]

        return {
            "total_failures_by_stage": dict(self._auth_failures),
            "total_failures": sum(self._auth_failures.values()),
            "recent_failures": recent_failures,
            "last_auth_attempt": self._last_auth_attempt.isoformat() if self._last_auth_attempt else None,
            "last_auth_success": self._last_auth_success.isoformat() if self._last_auth_success else None,
            "currently_authenticated": self.connection is not None
        }
