"""
Jira Sprint MCP Server
Backlog statistics, pivot tables and sprint retrospective reports for Jira Cloud
"""
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import Context, FastMCP

from .auth import JiraAuth
from .config import ServerConfig, parse_timezone
from .errors import ConfigurationError, NotFoundError
from .permissions import AccessPolicy, is_tool_allowed, parse_scopes
from .service_manager import ServiceManager
from .validation import (
    validate_dimensions,
    validate_field_filters,
    validate_issue_key,
    validate_jql,
    validate_pivot,
    validate_positive_id,
    validate_status_groups,
)

SERVER_NAME = "Jira Sprint Reports"
SERVER_VERSION = "1.0"

logger = logging.getLogger(__name__)


# Global state for authentication and service manager
# Initialized during lifespan startup
_auth = None
_service_manager = None

# Tool names enabled by JIRA_SCOPES; None until startup, meaning all
_allowed_tools = None


def _require_tool(name: str) -> None:
    """Reject a tool disabled by JIRA_SCOPES exactly like an unknown one"""
    if _allowed_tools is not None and not is_tool_allowed(name, _allowed_tools):
        raise NotFoundError(resource=f"Tool {name}")


def _resolve_jql_timezone(config: ServerConfig, auth: JiraAuth):
    """JIRA_TIMEZONE if set, else the time zone of the authenticated account"""
    if config.time_zone:
        return parse_timezone(config.time_zone)
    try:
        return parse_timezone(auth.time_zone, setting="account time zone")
    except ConfigurationError as e:
        logger.warning(f"{e}; sprint start dates stay in Jira's own offset")
        return None


@asynccontextmanager
async def lifespan(app):
    """Initialize services on startup"""
    global _auth, _service_manager, _allowed_tools

    # Load environment variables from .env file
    load_dotenv()
    config = ServerConfig.from_env()

    _auth = JiraAuth(
        config.base_url,
        config.email,
        config.api_token,
        timeout=config.request_timeout
    )
    await _auth.initialize()

    policy = AccessPolicy.from_env_values(
        boards=config.allowed_boards,
        projects=config.allowed_projects,
        issue_types=config.allowed_issue_types
    )
    _service_manager = ServiceManager(
        _auth,
        policy=policy,
        default_project=config.default_project,
        story_points_field=config.story_points_field,
        inflow_concurrency=config.inflow_concurrency,
        jql_timezone=_resolve_jql_timezone(config, _auth)
    )
    _allowed_tools = parse_scopes(config.scopes)
    logger.info(f"{SERVER_NAME} ready for {config.base_url}")

    yield  # Server runs

    # Cleanup on shutdown
    await _service_manager.client.close()
    await _auth.close()


# Initialize FastMCP server with lifespan
mcp = FastMCP(
    name=SERVER_NAME,
    lifespan=lifespan
)


# ============================================================================
# TOOLS
# ============================================================================

@mcp.tool()
async def get_backlog_stats(
    jql: str,
    board_id: Optional[int] = None,
    exclude_resolved: bool = False,
    issue_types: Optional[List[str]] = None,
    assignees: Optional[List[str]] = None,
    sprint_id: Optional[int] = None,
    field_filters: Optional[List[Dict[str, Any]]] = None,
    group_by: Optional[List[str]] = None,
    pivot: Optional[Dict[str, Any]] = None,
    deadline_seconds: Optional[float] = None,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Get aggregated statistics for the issues matching a JQL query.

    Counts are grouped by status, type, priority and assignee unless
    group_by names other dimensions. At most 4000 issues are analyzed;
    when analyzed < total the result is a sample ("sampled": true).

    Args:
        jql: JQL query (e.g., "project = PROJ ORDER BY created DESC")
        board_id: Restrict to the project of this board
        exclude_resolved: Only unresolved issues (adds "resolution IS EMPTY")
        issue_types: Restrict to these issue types (e.g., ["Bug", "Story"])
        assignees: Restrict to these assignees; "unassigned" means no assignee
        sprint_id: Restrict to one sprint
        field_filters: Extra filters, each {"field", "operator", "value"} with
            operator one of eq, in, not, contains, empty, notEmpty
        group_by: Dimensions to count by instead of the defaults. Options:
            status, type, priority, assignee, reporter, labels, components,
            resolution, project
        pivot: Cross-tab {"row_field", "column_field", "action", "value_field"}
            with action one of count, sum, avg, cardinality; sum and avg need
            a numeric value_field such as a story points field id
        deadline_seconds: Give up with a timeout error after this many seconds

    Returns:
        Dictionary with total, analyzed, grouped counts and the optional pivot table
    """
    _require_tool("get_backlog_stats")
    backlog_service = _service_manager.get_backlog_service()
    await ctx.info(f"Aggregating issues for: {jql}")

    result = await backlog_service.get_backlog_stats(
        jql=validate_jql(jql),
        board_id=validate_positive_id(board_id, "board_id"),
        exclude_resolved=exclude_resolved,
        issue_types=issue_types,
        assignees=assignees,
        sprint_id=validate_positive_id(sprint_id, "sprint_id"),
        field_filters=validate_field_filters(field_filters),
        group_by=validate_dimensions(group_by),
        pivot=validate_pivot(pivot),
        deadline_seconds=deadline_seconds
    )

    await ctx.info(f"Analyzed {result['analyzed']} of {result['total']} issues")
    return result


@mcp.tool()
async def get_sprint_report(
    sprint_id: int,
    previous_sprint_id: Optional[int] = None,
    project: Optional[str] = None,
    story_points_field: Optional[str] = None,
    status_groups: Optional[Dict[str, List[str]]] = None,
    labels: Optional[List[str]] = None,
    include_triage: bool = False,
    include_inflow: bool = False,
    fixed_groups: Optional[List[str]] = None,
    complete_groups: Optional[List[str]] = None,
    deadline_seconds: Optional[float] = None,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Build a retrospective report for a sprint, optionally compared with a previous one.

    Args:
        sprint_id: Sprint to report on
        previous_sprint_id: Optional earlier sprint for comparison
        project: Project key. If None, uses JIRA_DEFAULT_PROJECT, then the
            project of the sprint's board.
        story_points_field: Story points field id (e.g., "customfield_10016").
            If None, uses JIRA_STORY_POINTS_FIELD.
        status_groups: Group name to status names. Defaults to To Do, Blocked,
            In Progress, Design Review, To Test and Done.
        labels: Labels to track as complete vs not complete
        include_triage: Add issues created in the sprint after it started
        include_inflow: Add issues pulled into the sprint after it started
            (reads one changelog per candidate issue, so it is slow)
        fixed_groups: Groups whose bugs count as fixed (default: To Test, Done)
        complete_groups: Groups whose issues count as complete (default: Done)
        deadline_seconds: Give up with a timeout error after this many seconds

    Returns:
        Dictionary with per-group metrics, totals, triage, inflow, bugs and labels
    """
    _require_tool("get_sprint_report")
    report_service = _service_manager.get_sprint_report_service()
    await ctx.info(f"Building sprint report for sprint {sprint_id}...")

    result = await report_service.get_sprint_report(
        sprint_id=sprint_id,
        previous_sprint_id=previous_sprint_id,
        project=project,
        story_points_field=story_points_field,
        status_groups=validate_status_groups(status_groups),
        labels=labels,
        include_triage=include_triage,
        include_inflow=include_inflow,
        fixed_groups=fixed_groups,
        complete_groups=complete_groups,
        deadline_seconds=deadline_seconds
    )

    await ctx.info(f"Report ready for sprint '{result['current_sprint']['name']}'")
    return result


@mcp.tool()
async def list_boards(ctx: Context = None) -> Dict[str, Any]:
    """
    List the agile boards this server may read.

    Returns:
        Dictionary with boards (id, name, type, project_key) and their count
    """
    _require_tool("list_boards")
    sprint_service = _service_manager.get_sprint_service()
    await ctx.info("Fetching boards...")

    result = await sprint_service.list_boards()

    await ctx.info(f"Found {result['total']} boards")
    return result


@mcp.tool()
async def get_active_sprint(board_id: int, ctx: Context = None) -> Dict[str, Any]:
    """
    Get the active sprint of a board.

    Args:
        board_id: Board id (see list_boards)

    Returns:
        Dictionary with the board and its active sprint, or sprint = None
    """
    _require_tool("get_active_sprint")
    sprint_service = _service_manager.get_sprint_service()
    await ctx.info(f"Fetching active sprint for board {board_id}...")

    result = await sprint_service.get_active_sprint(board_id)

    if result['sprint']:
        await ctx.info(f"Active sprint: {result['sprint']['name']}")
    else:
        await ctx.info("No active sprint")
    return result


@mcp.tool()
async def list_sprints(
    board_id: Optional[int] = None,
    project_key: Optional[str] = None,
    state: Optional[str] = None,
    start_at: int = 0,
    max_results: int = 50,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    List sprints of a board, or of every readable board of a project, most recent first.

    Args:
        board_id: Board id (see list_boards)
        project_key: Project key, used when board_id is not given
        state: Only sprints in this state. Options: active, future, closed
        start_at: Offset into the sorted sprints (default: 0)
        max_results: Maximum number of sprints to return (default: 50)

    Returns:
        Dictionary with sprints, total, start_at, max_results and has_more
    """
    _require_tool("list_sprints")
    sprint_service = _service_manager.get_sprint_service()
    target = f"board {board_id}" if board_id is not None else f"project {project_key}"
    await ctx.info(f"Listing sprints for {target}...")

    result = await sprint_service.list_sprints(
        board_id=board_id,
        project_key=project_key,
        state=state,
        start_at=start_at,
        max_results=max_results
    )

    await ctx.info(f"Found {result['total']} sprints")
    return result


@mcp.tool()
async def get_sprint_issues(
    sprint_id: int,
    max_results: int = 50,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Get the issues in a sprint.

    Args:
        sprint_id: Sprint id (see list_sprints or get_active_sprint)
        max_results: Maximum number of issues to return (default: 50)

    Returns:
        Dictionary with issue keys, summaries, statuses, assignees and priorities
    """
    _require_tool("get_sprint_issues")
    sprint_service = _service_manager.get_sprint_service()
    await ctx.info(f"Fetching issues for sprint {sprint_id}...")

    result = await sprint_service.get_sprint_issues(sprint_id, max_results=max_results)

    await ctx.info(f"Found {len(result['issues'])} of {result['total']} issues")
    return result


@mcp.tool()
async def get_my_sprint_issues(
    sprint_id: int,
    max_results: int = 200,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Get the issues in a sprint assigned to the API account, sorted by status then priority.

    Args:
        sprint_id: Sprint id
        max_results: Maximum number of issues to return (default: 200)

    Returns:
        Dictionary with issue keys, summaries, statuses, assignees and priorities
    """
    _require_tool("get_my_sprint_issues")
    sprint_service = _service_manager.get_sprint_service()
    await ctx.info(f"Fetching my issues for sprint {sprint_id}...")

    result = await sprint_service.get_my_sprint_issues(sprint_id, max_results=max_results)

    await ctx.info(f"Found {len(result['issues'])} issues")
    return result


@mcp.tool()
async def search_issues(
    jql: str,
    max_results: int = 50,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Search issues with JQL.

    Queries must be bounded by a project, sprint, assignee or similar
    restriction; Jira rejects unbounded ones.

    Args:
        jql: JQL query (e.g., 'project = PROJ AND status = "In Progress"')
        max_results: Maximum number of issues to return (default: 50)

    Returns:
        Dictionary with issue summaries (key, summary, status, assignee, type, parent) and total
    """
    _require_tool("search_issues")
    backlog_service = _service_manager.get_backlog_service()
    jql = validate_jql(jql)
    await ctx.info(f"Searching issues: {jql}")

    result = await backlog_service.search_issues(jql, max_results=max_results)

    await ctx.info(f"Found {len(result['issues'])} of {result['total']} issues")
    return result


@mcp.tool()
async def get_issue_history(
    issue_key: str,
    max_results: int = 100,
    ctx: Context = None
) -> Dict[str, Any]:
    """
    Get the changelog of an issue: field changes, status transitions and sprint moves.

    Args:
        issue_key: Issue key (e.g., "PROJ-123")
        max_results: Maximum number of history entries to return (default: 100)

    Returns:
        Dictionary with the issue key, entries (id, author, created, changes) and total
    """
    _require_tool("get_issue_history")
    backlog_service = _service_manager.get_backlog_service()
    issue_key = validate_issue_key(issue_key)
    await ctx.info(f"Fetching history for {issue_key}...")

    result = await backlog_service.get_issue_history(
        issue_key,
        max_results=validate_positive_id(max_results, "max_results")
    )

    await ctx.info(f"Found {len(result['entries'])} history entries")
    return result


# ============================================================================
# MONITORING TOOLS (Health and Statistics)
# ============================================================================

@mcp.tool()
async def health_check(ctx: Context = None) -> Dict[str, Any]:
    """
    Get server health status for monitoring.

    Returns:
        Dictionary with health status, authentication info, and version
    """
    try:
        auth = _auth
        auth_info = auth.get_auth_info() if auth else None
        auth_failure_stats = auth.get_auth_failure_stats() if auth else {}

        return {
            "status": "healthy",
            "service": SERVER_NAME,
            "version": SERVER_VERSION,
            "authenticated": auth_info.get("authenticated") if auth_info else False,
            "auth_method": auth_info.get("method") if auth_info else None,
            "base_url": auth_info.get("base_url") if auth_info else None,
            "auth_failure_stats": auth_failure_stats
        }
    except Exception as e:
        logger.exception("Health check failed")
        return {
            "status": "unhealthy",
            "error": str(e)
        }


@mcp.tool()
async def get_service_statistics(ctx: Context = None) -> Dict[str, Any]:
    """
    Get service manager statistics.

    Returns:
        Dictionary with service manager stats and the active allowlists
    """
    if not _service_manager:
        return {"error": "Service manager not initialized"}

    return {
        "service_manager": _service_manager.get_statistics(),
        "timestamp": datetime.utcnow().isoformat()
    }


def main():
    """Entry point: configure logging and run over stdio or HTTP"""
    load_dotenv()

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr
    )

    # Support both STDIO and HTTP transports via configuration
    transport_mode = os.getenv("MCP_TRANSPORT", "stdio").lower()

    if transport_mode == "http":
        port = int(os.getenv("PORT", 8000))
        logger.info(f"Starting MCP server with HTTP streaming on port {port}")
        mcp.run(transport="streamable-http", port=port, host="0.0.0.0")
    else:
        # STDIO mode: stdout carries JSON-RPC, so logs go to stderr
        logger.info("Starting MCP server in STDIO mode")
        mcp.run()


if __name__ == "__main__":
    main()
