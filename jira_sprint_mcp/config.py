"""
Server configuration read from the environment.

The server lifespan calls load_dotenv() first, so a local .env file can
supply any of these variables.
"""
import os
from dataclasses import dataclass
from datetime import tzinfo
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ConfigurationError


@dataclass
class ServerConfig:
    """Settings for one server process"""
    base_url: str
    email: str
    api_token: str
    allowed_boards: Optional[str] = None
    allowed_projects: Optional[str] = None
    allowed_issue_types: Optional[str] = None
    default_project: Optional[str] = None
    story_points_field: Optional[str] = None
    time_zone: Optional[str] = None
    scopes: Optional[str] = None
    request_timeout: float = 30.0
    inflow_concurrency: int = 1
    log_level: str = "INFO"
    transport: str = "stdio"
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        """
        Build the configuration from environment variables.

        Raises:
            ConfigurationError: If a required variable is missing or a
                                numeric variable does not parse
        """
        env = os.environ if environ is None else environ

        base_url = env.get("JIRA_BASE_URL")
        email = env.get("JIRA_EMAIL")
        api_token = env.get("JIRA_API_TOKEN")

        missing = [
            name for name, value in (
                ("JIRA_BASE_URL", base_url),
                ("JIRA_EMAIL", email),
                ("JIRA_API_TOKEN", api_token),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variable(s): {', '.join(missing)}",
                setting=missing[0]
            )

        inflow_concurrency = _parse_number(env, "JIRA_INFLOW_CONCURRENCY", 1, int)
        if inflow_concurrency < 1:
            raise ConfigurationError(
                "JIRA_INFLOW_CONCURRENCY must be at least 1",
                setting="JIRA_INFLOW_CONCURRENCY"
            )

        time_zone = env.get("JIRA_TIMEZONE") or None
        parse_timezone(time_zone)

        return cls(
            base_url=base_url.rstrip('/'),
            email=email,
            api_token=api_token,
            allowed_boards=env.get("JIRA_ALLOWED_BOARDS"),
            allowed_projects=env.get("JIRA_ALLOWED_PROJECTS"),
            allowed_issue_types=env.get("JIRA_ALLOWED_ISSUE_TYPES"),
            default_project=env.get("JIRA_DEFAULT_PROJECT") or None,
            story_points_field=env.get("JIRA_STORY_POINTS_FIELD") or None,
            time_zone=time_zone,
            scopes=env.get("JIRA_SCOPES"),
            request_timeout=_parse_number(env, "JIRA_REQUEST_TIMEOUT", 30.0, float),
            inflow_concurrency=inflow_concurrency,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            transport=env.get("MCP_TRANSPORT", "stdio").lower(),
            port=_parse_number(env, "PORT", 8000, int),
        )


def _parse_number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'", setting=name)


def parse_timezone(name: Optional[str], setting: str = "JIRA_TIMEZONE") -> Optional[tzinfo]:
    """
    Resolve an IANA time zone name such as "Europe/Berlin".

    Returns:
        The zone, or None when no name is given

    Raises:
        ConfigurationError: If the name is not a known zone
    """
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"{setting} is not a known time zone: '{name}'", setting=setting)
