"""
Backlog statistics, issue search and issue history
"""
import logging
from typing import Any, Dict, List, Optional

from ..constants import ISSUE_LIST_FIELDS, FieldNames, QueryLimits
from ..decorators import PerformanceMonitor, log_execution, run_with_deadline
from ..errors import NotFoundError
from ..models import AggregationResult, Dimension, FieldFilter, FilterSpec, PivotSpec
from ..permissions import AccessPolicy, project_from_issue_key
from ..validation import sanitize_jql_string, validate_issue_key, validate_positive_id
from .aggregator import aggregate, fields_for
from .field_extractor import issue_summary
from .issue_fetcher import IssueFetcher
from .query_builder import QueryBuilder

logger = logging.getLogger(__name__)


class BacklogService:
    """Runs query → fetch → aggregate passes over the backlog"""

    def __init__(self, client, policy: Optional[AccessPolicy] = None):
        """
        Initialize backlog service

        Args:
            client: JiraClient instance
            policy: Allowlists applied to every fetched issue
        """
        self.client = client
        self.policy = policy or AccessPolicy()
        self.query_builder = QueryBuilder(client, self.policy)
        self.fetcher = IssueFetcher(
            client,
            is_project_allowed=self.policy.is_project_allowed,
            is_issue_type_allowed=self.policy.is_issue_type_allowed
        )

    async def aggregate(
        self,
        spec: FilterSpec,
        group_by: Optional[List[Dimension]] = None,
        pivot: Optional[PivotSpec] = None,
        max_pages: Optional[int] = None
    ) -> AggregationResult:
        """
        One aggregation pass: compose the JQL, fetch every page, aggregate.

        Args:
            spec: Base query and structured filters
            group_by: Dimensions replacing the default counts
            pivot: Optional pivot specification
            max_pages: Override of the fetcher's page cap

        Returns:
            AggregationResult for the matched issues
        """
        jql = await self.query_builder.build(spec)
        fetched = await self.fetcher.fetch(jql, fields_for(group_by, pivot), max_pages=max_pages)
        return aggregate(
            fetched.issues,
            fetched.total,
            group_by=group_by,
            pivot=pivot,
            truncated=fetched.truncated
        )

    @log_execution(level=logging.DEBUG, log_args=True)
    async def get_backlog_stats(
        self,
        jql: str,
        board_id: Optional[int] = None,
        exclude_resolved: bool = False,
        issue_types: Optional[List[str]] = None,
        assignees: Optional[List[str]] = None,
        sprint_id: Optional[int] = None,
        field_filters: Optional[List[FieldFilter]] = None,
        group_by: Optional[List[Dimension]] = None,
        pivot: Optional[PivotSpec] = None,
        deadline_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Aggregate statistics for the issues matching a query

        Args:
            jql: Base JQL, optionally ending in ORDER BY
            board_id: Restrict to the board's project
            exclude_resolved: Only unresolved issues
            issue_types: Restrict to these issue types
            assignees: Restrict to these assignees ("unassigned" means no assignee)
            sprint_id: Restrict to one sprint
            field_filters: Additional structured filters
            group_by: Dimensions replacing the default counts
            pivot: Optional pivot specification
            deadline_seconds: Abort with TimeoutError after this long

        Returns:
            The aggregation result as a dictionary
        """
        spec = FilterSpec(
            base_query=jql,
            board_id=board_id,
            exclude_resolved=exclude_resolved,
            issue_types=issue_types,
            assignees=assignees,
            sprint_id=sprint_id,
            field_filters=field_filters or [],
        )

        async with PerformanceMonitor("get_backlog_stats"):
            result = await run_with_deadline(
                self.aggregate(spec, group_by=group_by, pivot=pivot),
                deadline_seconds,
                "get_backlog_stats"
            )

        if result.sampled:
            logger.info(f"Backlog stats analyzed {result.analyzed} of {result.total} issues")
        return result.to_dict()

    async def search_issues(
        self,
        jql: str,
        max_results: int = QueryLimits.SEARCH_DEFAULT_RESULTS
    ) -> Dict[str, Any]:
        """
        Search issues with JQL, returning one page of summaries

        Jira rejects unbounded queries, so the JQL should name a project,
        sprint, assignee or similar restriction.

        Args:
            jql: JQL query
            max_results: Maximum number of issues to return

        Returns:
            Dictionary with issue summaries, Jira's total and whether more exist
        """
        max_results = validate_positive_id(max_results, "max_results")
        result = await self.fetcher.fetch_page(jql, ISSUE_LIST_FIELDS, max_results)
        if result.analyzed < result.retrieved:
            logger.debug(f"Allowlists hid {result.retrieved - result.analyzed} search result(s)")
        return {
            'issues': [issue_summary(issue) for issue in result.issues],
            'total': result.total,
            'has_more': result.truncated,
        }

    async def get_issue_history(
        self,
        issue_key: str,
        max_results: int = QueryLimits.CHANGELOG_PAGE_SIZE
    ) -> Dict[str, Any]:
        """
        Get the changelog of an issue

        Args:
            issue_key: Issue key (e.g., "PROJ-123")
            max_results: Maximum number of entries to return

        Returns:
            Dictionary with the issue key, entries and Jira's total entry count

        Raises:
            NotFoundError: If the issue does not exist or an allowlist hides it
        """
        issue_key = validate_issue_key(issue_key)
        project_key = project_from_issue_key(issue_key)
        if not self.policy.is_project_allowed(project_key):
            raise NotFoundError(resource=f"Issue {issue_key}")

        if self.policy.issue_types is not None:
            page = await self.client.search_issues(
                f"key = {sanitize_jql_string(issue_key)}",
                page_size=1,
                fields=[FieldNames.ISSUE_TYPE]
            )
            if not page.issues or not self.fetcher.is_allowed(page.issues[0]):
                raise NotFoundError(resource=f"Issue {issue_key}")

        entries, total = await self.client.get_change_history(issue_key, page_size=max_results)
        return {
            'issue_key': issue_key,
            'entries': [entry.to_dict() for entry in entries],
            'total': total,
        }
