"""
Constants and field definitions for Jira operations.

Defines field sets, query limits, sentinel values and the default status
groups used by sprint reports.
"""

from typing import Dict, List, Tuple


# ============================================================================
# Field Ids
# ============================================================================

class FieldNames:
    """Jira issue field ids as used in search requests and responses."""

    SUMMARY = "summary"
    STATUS = "status"
    ISSUE_TYPE = "issuetype"
    PRIORITY = "priority"
    ASSIGNEE = "assignee"
    REPORTER = "reporter"
    LABELS = "labels"
    COMPONENTS = "components"
    RESOLUTION = "resolution"
    PARENT = "parent"
    CREATED = "created"

    # Changelog item field name for sprint membership changes
    SPRINT = "Sprint"


# Fields the default aggregation always needs
AGGREGATION_FIELDS: List[str] = [
    FieldNames.STATUS,
    FieldNames.ISSUE_TYPE,
    FieldNames.PRIORITY,
    FieldNames.ASSIGNEE,
]

# Fields shown for each issue by search_issues and the sprint issue listings
ISSUE_LIST_FIELDS: List[str] = [
    FieldNames.SUMMARY,
    FieldNames.STATUS,
    FieldNames.ASSIGNEE,
    FieldNames.PRIORITY,
    FieldNames.ISSUE_TYPE,
    FieldNames.PARENT,
]


# ============================================================================
# Query Limits
# ============================================================================

class QueryLimits:
    """Page sizes and hard caps for backend calls."""

    # Issues requested per search page
    PAGE_SIZE = 100

    # Maximum pages fetched per aggregation pass (PAGE_SIZE * MAX_PAGES issues)
    MAX_PAGES = 40

    # Issues whose changelog is scanned during inflow detection
    MAX_INFLOW_CANDIDATES = 500

    # Changelog entries requested per issue
    CHANGELOG_PAGE_SIZE = 100

    # Boards requested by list_boards
    BOARD_LIMIT = 100

    # Sprints requested per page when listing a board's sprints
    SPRINT_PAGE_SIZE = 50

    # Defaults for the one-page issue listings
    SEARCH_DEFAULT_RESULTS = 50
    MY_SPRINT_DEFAULT_RESULTS = 200


# ============================================================================
# Sprint States
# ============================================================================

class SprintStates:
    """Sprint states accepted by the agile sprint listing."""

    ACTIVE = "active"
    FUTURE = "future"
    CLOSED = "closed"

    # Listing order when no state is requested; Jira returns oldest first
    # within a state, so each state is paged separately
    ALL: Tuple[str, ...] = (ACTIVE, FUTURE, CLOSED)


# ============================================================================
# Sentinels
# ============================================================================

class Sentinels:
    """Values reported for single-valued dimensions an issue has no value for."""

    UNASSIGNED = "Unassigned"
    NONE = "None"
    UNRESOLVED = "Unresolved"
    UNKNOWN = "Unknown"

    # Assignee filter value meaning "no assignee"
    UNASSIGNED_FILTER = "unassigned"


# ============================================================================
# Issue Types
# ============================================================================

class IssueTypes:
    """Issue type names the sprint report relies on."""

    BUG = "Bug"


# ============================================================================
# Status Groups
# ============================================================================

class StatusGroups:
    """Names of the default sprint report status groups."""

    TO_DO = "To Do"
    BLOCKED = "Blocked"
    IN_PROGRESS = "In Progress"
    DESIGN_REVIEW = "Design Review"
    TO_TEST = "To Test"
    DONE = "Done"

    # Groups whose bugs count as fixed
    FIXED = (TO_TEST, DONE)

    # Groups whose issues count as complete for label tracking
    COMPLETE = (DONE,)


DEFAULT_STATUS_GROUPS: Dict[str, List[str]] = {
    StatusGroups.TO_DO: ["To Do", "Open", "Backlog", "Selected for Development", "Reopened"],
    StatusGroups.BLOCKED: ["Blocked", "On Hold"],
    StatusGroups.IN_PROGRESS: ["In Progress", "In Development"],
    StatusGroups.DESIGN_REVIEW: ["Design Review", "In Review", "Code Review"],
    StatusGroups.TO_TEST: ["To Test", "Ready for QA", "In QA", "Testing"],
    StatusGroups.DONE: ["Done", "Closed", "Resolved"],
}


# ============================================================================
# Filter Operators
# ============================================================================

class FilterOperators:
    """Field filter operators and the JQL they translate to."""

    EQ = "eq"
    IN = "in"
    NOT = "not"
    CONTAINS = "contains"
    EMPTY = "empty"
    NOT_EMPTY = "notEmpty"

    ALL: Tuple[str, ...] = (EQ, IN, NOT, CONTAINS, EMPTY, NOT_EMPTY)

    # Operators that take no value
    UNARY: Tuple[str, ...] = (EMPTY, NOT_EMPTY)


# ============================================================================
# Helper Functions
# ============================================================================

def format_jql_datetime(value, tz=None) -> str:
    """
    Format a datetime for a JQL date comparison.

    Jira reads JQL date literals in the searching account's time zone, so
    an aware value is first converted to that zone when it is known.

    Args:
        value: A datetime
        tz: Time zone of the Jira account, or None to keep value's own offset

    Returns:
        The "yyyy-MM-dd HH:mm" form Jira accepts in JQL
    """
    if tz is not None and value.tzinfo is not None:
        value = value.astimezone(tz)
    return value.strftime("%Y-%m-%d %H:%M")
