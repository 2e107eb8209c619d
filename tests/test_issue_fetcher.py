"""
Unit tests for the paginated issue fetcher.

Tests termination conditions, the page cap, totals, and allowlist filtering.
"""

import pytest
from unittest.mock import AsyncMock

from jira_sprint_mcp.models import IssueRecord, SearchPage
from jira_sprint_mcp.permissions import AccessPolicy
from jira_sprint_mcp.services.issue_fetcher import IssueFetcher


def make_issue(key, issue_type="Story"):
    return IssueRecord(key=key, fields={"issuetype": {"name": issue_type}})


def allow_all(_value):
    return True


def make_fetcher(pages, **kwargs):
    client = AsyncMock()
    client.search_issues.side_effect = pages
    fetcher = IssueFetcher(client, allow_all, allow_all, **kwargs)
    return fetcher, client


class TestPagination:
    """Test the loop's stop conditions."""

    @pytest.mark.asyncio
    async def test_single_page_marked_last(self):
        fetcher, client = make_fetcher([
            SearchPage(issues=[make_issue("A-1"), make_issue("A-2")], total=2, is_last=True),
        ])

        result = await fetcher.fetch("project = A", ["status"])

        assert result.analyzed == 2
        assert result.total == 2
        assert result.pages == 1
        assert not result.truncated
        assert client.search_issues.await_count == 1

    @pytest.mark.asyncio
    async def test_follows_continuation_tokens(self):
        fetcher, client = make_fetcher([
            SearchPage(issues=[make_issue("A-1")], total=3, next_page_token="t1"),
            SearchPage(issues=[make_issue("A-2")], next_page_token="t2"),
            SearchPage(issues=[make_issue("A-3")], is_last=True),
        ])

        result = await fetcher.fetch("project = A", ["status"])

        assert [issue.key for issue in result.issues] == ["A-1", "A-2", "A-3"]
        tokens = [call.kwargs["next_page_token"] for call in client.search_issues.await_args_list]
        assert tokens == [None, "t1", "t2"]

    @pytest.mark.asyncio
    async def test_stops_without_token(self):
        fetcher, client = make_fetcher([
            SearchPage(issues=[make_issue("A-1")], total=10, is_last=False, next_page_token=None),
        ])

        result = await fetcher.fetch("project = A", [])

        assert result.pages == 1
        assert not result.truncated

    @pytest.mark.asyncio
    async def test_stops_on_empty_page(self):
        fetcher, client = make_fetcher([
            SearchPage(issues=[make_issue("A-1")], total=1, next_page_token="t1"),
            SearchPage(issues=[], next_page_token="t2"),
        ])

        result = await fetcher.fetch("project = A", [])

        assert result.analyzed == 1
        assert client.search_issues.await_count == 2

    @pytest.mark.asyncio
    async def test_page_cap(self):
        """Pagination stops at the cap even though more pages exist."""
        pages = [
            SearchPage(issues=[make_issue(f"A-{n}")], total=100, next_page_token=f"t{n}")
            for n in range(10)
        ]
        fetcher, client = make_fetcher(pages, max_pages=3)

        result = await fetcher.fetch("project = A", [])

        assert client.search_issues.await_count == 3
        assert result.analyzed == 3
        assert result.total == 100
        assert result.truncated

    @pytest.mark.asyncio
    async def test_max_pages_override(self):
        pages = [
            SearchPage(issues=[make_issue(f"A-{n}")], next_page_token=f"t{n}")
            for n in range(10)
        ]
        fetcher, client = make_fetcher(pages)

        result = await fetcher.fetch("project = A", [], max_pages=2)

        assert result.pages == 2
        assert result.truncated

    @pytest.mark.asyncio
    async def test_last_page_at_cap_is_not_truncated(self):
        fetcher, client = make_fetcher([
            SearchPage(issues=[make_issue("A-1")], next_page_token="t1"),
            SearchPage(issues=[make_issue("A-2")], is_last=True),
        ], max_pages=2)

        result = await fetcher.fetch("project = A", [])

        assert not result.truncated

    @pytest.mark.asyncio
    async def test_requests_issue_type_and_page_size(self):
        fetcher, client = make_fetcher([SearchPage(issues=[], total=0)], page_size=50)

        await fetcher.fetch("project = A", ["status", "issuetype"])

        call = client.search_issues.await_args
        assert call.args == ("project = A",)
        assert call.kwargs["page_size"] == 50
        assert call.kwargs["fields"] == ["status", "issuetype"]


class TestTotals:
    """Test how the reported total is derived."""

    @pytest.mark.asyncio
    async def test_total_recorded_from_first_page(self):
        fetcher, _ = make_fetcher([
            SearchPage(issues=[make_issue("A-1")], total=5, next_page_token="t"),
            SearchPage(issues=[make_issue("A-2")], total=7, is_last=True),
        ])

        result = await fetcher.fetch("project = A", [])

        assert result.total == 5

    @pytest.mark.asyncio
    async def test_missing_total_falls_back_to_retrieved(self):
        """Without a backend total, total counts retrieved issues before filtering."""
        client = AsyncMock()
        client.search_issues.side_effect = [
            SearchPage(issues=[make_issue("A-1"), make_issue("B-1")], is_last=True),
        ]
        policy = AccessPolicy.from_env_values(projects="A")
        fetcher = IssueFetcher(client, policy.is_project_allowed, policy.is_issue_type_allowed)

        result = await fetcher.fetch("text ~ x", [])

        assert result.total == 2
        assert result.analyzed == 1


class TestAllowlists:
    """Test post-fetch allowlist filtering."""

    @pytest.mark.asyncio
    async def test_project_allowlist_uses_key_prefix(self):
        policy = AccessPolicy.from_env_values(projects="proj")
        client = AsyncMock()
        client.search_issues.side_effect = [
            SearchPage(
                issues=[make_issue("PROJ-1"), make_issue("OTHER-1"), make_issue("PROJ-2")],
                total=3,
                is_last=True,
            ),
        ]
        fetcher = IssueFetcher(client, policy.is_project_allowed, policy.is_issue_type_allowed)

        result = await fetcher.fetch("text ~ x", [])

        assert [issue.key for issue in result.issues] == ["PROJ-1", "PROJ-2"]
        assert result.total == 3
        assert result.analyzed <= result.total

    @pytest.mark.asyncio
    async def test_issue_type_allowlist(self):
        policy = AccessPolicy.from_env_values(issue_types="bug|Story")
        client = AsyncMock()
        client.search_issues.side_effect = [
            SearchPage(
                issues=[
                    make_issue("A-1", "Bug"),
                    make_issue("A-2", "Epic"),
                    make_issue("A-3", "Story"),
                    IssueRecord(key="A-4", fields={}),
                ],
                total=4,
                is_last=True,
            ),
        ]
        fetcher = IssueFetcher(client, policy.is_project_allowed, policy.is_issue_type_allowed)

        result = await fetcher.fetch("project = A", [])

        assert [issue.key for issue in result.issues] == ["A-1", "A-3"]


class TestFetchPage:
    """Test the single-page fetch used by listings."""

    @pytest.mark.asyncio
    async def test_first_page_only(self):
        fetcher, client = make_fetcher([
            SearchPage(issues=[make_issue("A-1"), make_issue("A-2")], total=40, next_page_token="t1"),
        ])

        result = await fetcher.fetch_page("project = A", ["summary"], page_size=2)

        client.search_issues.assert_awaited_once()
        assert client.search_issues.await_args.kwargs == {
            "page_size": 2,
            "fields": ["summary", "issuetype"],
        }
        assert result.analyzed == 2
        assert result.total == 40
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_allowlists_applied(self):
        policy = AccessPolicy.from_env_values(issue_types="Bug")
        client = AsyncMock()
        client.search_issues.return_value = SearchPage(
            issues=[make_issue("A-1", "Bug"), make_issue("A-2", "Story")], is_last=True,
        )
        fetcher = IssueFetcher(client, policy.is_project_allowed, policy.is_issue_type_allowed)

        result = await fetcher.fetch_page("project = A", [], page_size=50)

        assert [issue.key for issue in result.issues] == ["A-1"]
        assert result.retrieved == 2
        assert result.total == 2
        assert result.truncated is False
