"""
Allowlists restricting which boards, projects and issue types are visible,
and scopes restricting which tools may be called.

Configured with environment variables:
    JIRA_ALLOWED_BOARDS="12|Platform Board"
    JIRA_ALLOWED_PROJECTS="PROJ|OPS"
    JIRA_ALLOWED_ISSUE_TYPES="Bug|Story|Task"
    JIRA_SCOPES="boards:read,sprints:read,reports:read"

An unset or empty variable allows everything.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from .validation import ISSUE_KEY_PATTERN, ValidationError

logger = logging.getLogger(__name__)


# Tool names enabled by each scope. Monitoring tools are always enabled.
SCOPES: Dict[str, Tuple[str, ...]] = {
    'boards:read': ('list_boards',),
    'sprints:read': (
        'get_active_sprint',
        'list_sprints',
        'get_sprint_issues',
        'get_my_sprint_issues',
    ),
    'issues:read': ('search_issues', 'get_issue_history'),
    'reports:read': ('get_backlog_stats', 'get_sprint_report'),
}


def all_scoped_tools() -> Set[str]:
    return {tool for tools in SCOPES.values() for tool in tools}


def parse_scopes(env_value: Optional[str]) -> Set[str]:
    """
    Parse comma-separated scopes into the set of tool names they enable.

    Unknown scopes are logged and ignored. An unset or empty value enables
    every scoped tool.

    Args:
        env_value: Comma-separated scopes (e.g., "boards:read,reports:read")

    Returns:
        Names of the enabled tools
    """
    if not env_value or not env_value.strip():
        return all_scoped_tools()

    allowed: Set[str] = set()
    for scope in (item.strip() for item in env_value.split(',')):
        if not scope:
            continue
        if scope not in SCOPES:
            logger.warning(
                f"Invalid scope '{scope}' ignored. Valid scopes: {', '.join(SCOPES)}"
            )
            continue
        allowed.update(SCOPES[scope])
    return allowed


def is_tool_allowed(tool_name: str, allowed_tools: Set[str]) -> bool:
    return tool_name in allowed_tools


@dataclass
class Allowlist:
    """Board allowlist that can match by id or by name."""
    ids: Optional[Set[int]] = None
    names: Optional[Set[str]] = None

    @property
    def unrestricted(self) -> bool:
        return self.ids is None and self.names is None


def _split(env_value: Optional[str]):
    if not env_value or not env_value.strip():
        return None
    return [item.strip() for item in env_value.split('|') if item.strip()]


def parse_allowlist(env_value: Optional[str]) -> Allowlist:
    """
    Parse a board allowlist containing ids and/or names.

    Args:
        env_value: Pipe-separated ids or names (e.g., "123|Board Name|456")

    Returns:
        Allowlist with numeric ids and lower-cased names split apart
    """
    items = _split(env_value)
    if items is None:
        return Allowlist()

    ids: Set[int] = set()
    names: Set[str] = set()
    for item in items:
        if item.isdigit():
            ids.add(int(item))
        else:
            names.add(item.lower())
    return Allowlist(ids=ids, names=names)


def parse_project_allowlist(env_value: Optional[str]) -> Optional[Set[str]]:
    """Parse project keys (upper-cased). None means all projects are allowed."""
    items = _split(env_value)
    if items is None:
        return None
    return {item.upper() for item in items}


def parse_issue_types_allowlist(env_value: Optional[str]) -> Optional[Set[str]]:
    """Parse issue type names (lower-cased). None means all types are allowed."""
    items = _split(env_value)
    if items is None:
        return None
    return {item.lower() for item in items}


def is_board_allowed(board_id: int, board_name: str, allowlist: Allowlist) -> bool:
    if allowlist.unrestricted:
        return True
    if allowlist.ids and board_id in allowlist.ids:
        return True
    if allowlist.names and (board_name or '').lower() in allowlist.names:
        return True
    return False


def is_project_allowed(project_key: str, allowlist: Optional[Set[str]]) -> bool:
    if allowlist is None:
        return True
    return project_key.upper() in allowlist


def is_issue_type_allowed(issue_type: str, allowlist: Optional[Set[str]]) -> bool:
    if allowlist is None:
        return True
    return (issue_type or '').lower() in allowlist


def project_from_issue_key(issue_key: str) -> str:
    """
    Extract the project key from an issue key.

    Args:
        issue_key: The issue key (e.g., "PROJ-123")

    Returns:
        The project key (e.g., "PROJ")

    Raises:
        ValidationError: If the key is not of the form PROJ-123
    """
    match = ISSUE_KEY_PATTERN.match(issue_key or '')
    if not match:
        raise ValidationError("issue_key", f"Invalid issue key format: {issue_key}")
    return match.group(1).upper()


@dataclass
class AccessPolicy:
    """
    The three allowlists bundled together.

    The fetcher only needs the two predicates; boards are checked by the
    sprint service before anything is fetched.
    """
    boards: Allowlist = field(default_factory=Allowlist)
    projects: Optional[Set[str]] = None
    issue_types: Optional[Set[str]] = None

    @classmethod
    def from_env_values(
        cls,
        boards: Optional[str] = None,
        projects: Optional[str] = None,
        issue_types: Optional[str] = None
    ) -> "AccessPolicy":
        return cls(
            boards=parse_allowlist(boards),
            projects=parse_project_allowlist(projects),
            issue_types=parse_issue_types_allowlist(issue_types)
        )

    def is_project_allowed(self, project_key: str) -> bool:
        return is_project_allowed(project_key, self.projects)

    def is_issue_type_allowed(self, issue_type: str) -> bool:
        return is_issue_type_allowed(issue_type, self.issue_types)

    def is_board_allowed(self, board_id: int, board_name: str) -> bool:
        return is_board_allowed(board_id, board_name, self.boards)

    def describe(self) -> dict:
        """Summary of the active restrictions for health output."""
        return {
            'boards_restricted': not self.boards.unrestricted,
            'projects': sorted(self.projects) if self.projects is not None else None,
            'issue_types': sorted(self.issue_types) if self.issue_types is not None else None,
        }
