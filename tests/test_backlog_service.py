"""
Unit tests for BacklogService.

Tests one full query → fetch → aggregate pass and issue history access.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from jira_sprint_mcp.errors import NotFoundError, TimeoutError as JiraTimeoutError
from jira_sprint_mcp.models import (
    BoardInfo,
    ChangelogEntry,
    Dimension,
    IssueRecord,
    PivotAction,
    PivotSpec,
    SearchPage,
)
from jira_sprint_mcp.permissions import AccessPolicy
from jira_sprint_mcp.services.backlog_service import BacklogService
from jira_sprint_mcp.validation import ValidationError


def make_issue(key, issue_type="Story", status="Open", points=None):
    fields = {"issuetype": {"name": issue_type}, "status": {"name": status}}
    if points is not None:
        fields["sp"] = points
    return IssueRecord(key=key, fields=fields)


class TestGetBacklogStats:
    """Test get_backlog_stats end to end over a mocked client."""

    @pytest.mark.asyncio
    async def test_default_statistics(self):
        client = AsyncMock()
        client.search_issues.return_value = SearchPage(
            issues=[make_issue("A-1", "Bug", "Done"), make_issue("A-2", "Story", "Open")],
            total=2,
            is_last=True,
        )

        result = await BacklogService(client).get_backlog_stats("project = A", exclude_resolved=True)

        client.search_issues.assert_awaited_once()
        assert client.search_issues.await_args.args == ("project = A AND resolution IS EMPTY",)
        assert client.search_issues.await_args.kwargs["fields"] == [
            "status", "issuetype", "priority", "assignee",
        ]
        assert result["total"] == 2
        assert result["analyzed"] == 2
        assert result["sampled"] is False
        assert result["by_type_and_status"] == {"Bug": {"Done": 1}, "Story": {"Open": 1}}
        assert "pivot" not in result

    @pytest.mark.asyncio
    async def test_board_and_pivot(self):
        client = AsyncMock()
        client.get_board.return_value = BoardInfo(id=3, name="Board", project_key="A")
        client.search_issues.return_value = SearchPage(
            issues=[make_issue("A-1", points=3), make_issue("A-2", points=2)],
            total=2,
            is_last=True,
        )

        result = await BacklogService(client).get_backlog_stats(
            "type = Story",
            board_id=3,
            group_by=[Dimension.STATUS],
            pivot=PivotSpec(Dimension.STATUS, Dimension.TYPE, PivotAction.SUM, "sp"),
        )

        assert client.search_issues.await_args.args == ('type = Story AND project = "A"',)
        assert result["grouped_by"] == {"status": {"Open": 2}}
        assert result["pivot"]["totals"]["grand"] == 5
        assert result["by_status"] == {}

    @pytest.mark.asyncio
    async def test_board_outside_allowlist(self):
        client = AsyncMock()
        client.get_board.return_value = BoardInfo(id=1, name="Secret", project_key="PROJ")
        service = BacklogService(client, AccessPolicy.from_env_values(boards="99"))

        with pytest.raises(NotFoundError):
            await service.get_backlog_stats("type = Bug", board_id=1)

        client.search_issues.assert_not_called()

    @pytest.mark.asyncio
    async def test_sampled_when_total_exceeds_analyzed(self):
        client = AsyncMock()
        client.search_issues.return_value = SearchPage(
            issues=[make_issue("A-1")], total=9000, is_last=False, next_page_token=None,
        )

        result = await BacklogService(client).get_backlog_stats("project = A")

        assert result["sampled"] is True
        assert result["total"] == 9000

    @pytest.mark.asyncio
    async def test_deadline(self):
        async def slow_search(*args, **kwargs):
            await asyncio.sleep(1)

        client = AsyncMock()
        client.search_issues.side_effect = slow_search

        with pytest.raises(JiraTimeoutError):
            await BacklogService(client).get_backlog_stats("project = A", deadline_seconds=0.01)


class TestSearchIssues:
    """Test search_issues."""

    @pytest.mark.asyncio
    async def test_summaries_returned(self):
        client = AsyncMock()
        client.search_issues.return_value = SearchPage(
            issues=[
                IssueRecord(key="PROJ-1", fields={
                    "summary": "Login fails",
                    "status": {"name": "Open", "statusCategory": {"name": "To Do"}},
                    "issuetype": {"name": "Bug"},
                    "assignee": {"displayName": "Alice"},
                    "parent": {"key": "PROJ-100", "fields": {"summary": "Auth epic"}},
                }),
            ],
            total=12,
            is_last=False,
            next_page_token="t1",
        )

        result = await BacklogService(client).search_issues("project = PROJ", max_results=1)

        client.search_issues.assert_awaited_once()
        assert client.search_issues.await_args.args == ("project = PROJ",)
        assert client.search_issues.await_args.kwargs["page_size"] == 1
        assert result["total"] == 12
        assert result["has_more"] is True
        assert result["issues"] == [{
            "key": "PROJ-1",
            "summary": "Login fails",
            "status": "Open",
            "status_category": "To Do",
            "assignee": "Alice",
            "priority": None,
            "type": "Bug",
            "parent": {"key": "PROJ-100", "summary": "Auth epic"},
        }]

    @pytest.mark.asyncio
    async def test_allowlists_hide_results(self):
        client = AsyncMock()
        client.search_issues.return_value = SearchPage(
            issues=[make_issue("PROJ-1", "Bug"), make_issue("OPS-2", "Bug"), make_issue("PROJ-3", "Epic")],
            total=3,
            is_last=True,
        )
        service = BacklogService(
            client, AccessPolicy.from_env_values(projects="PROJ", issue_types="Bug")
        )

        result = await service.search_issues("type = Bug")

        assert [issue["key"] for issue in result["issues"]] == ["PROJ-1"]
        assert result["has_more"] is False

    @pytest.mark.asyncio
    async def test_invalid_max_results(self):
        with pytest.raises(ValidationError):
            await BacklogService(AsyncMock()).search_issues("project = PROJ", max_results=0)


class TestGetIssueHistory:
    """Test get_issue_history allowlist checks."""

    @pytest.mark.asyncio
    async def test_history_returned(self):
        client = AsyncMock()
        client.get_change_history.return_value = (
            [ChangelogEntry(id="1", created="2024-01-16T10:00:00.000+0000", author="Alice")],
            1,
        )

        result = await BacklogService(client).get_issue_history("proj-1", max_results=10)

        client.get_change_history.assert_awaited_once_with("PROJ-1", page_size=10)
        client.search_issues.assert_not_called()
        assert result["issue_key"] == "PROJ-1"
        assert result["total"] == 1
        assert result["entries"][0]["author"] == "Alice"

    @pytest.mark.asyncio
    async def test_project_outside_allowlist(self):
        client = AsyncMock()
        service = BacklogService(client, AccessPolicy.from_env_values(projects="OPS"))

        with pytest.raises(NotFoundError):
            await service.get_issue_history("PROJ-1")

        client.get_change_history.assert_not_called()

    @pytest.mark.asyncio
    async def test_issue_type_outside_allowlist(self):
        client = AsyncMock()
        client.search_issues.return_value = SearchPage(issues=[make_issue("PROJ-1", "Epic")], total=1)
        service = BacklogService(client, AccessPolicy.from_env_values(issue_types="Bug"))

        with pytest.raises(NotFoundError):
            await service.get_issue_history("PROJ-1")

        assert client.search_issues.await_args.args == ('key = "PROJ-1"',)
        client.get_change_history.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_key(self):
        with pytest.raises(ValidationError):
            await BacklogService(AsyncMock()).get_issue_history("nope")
