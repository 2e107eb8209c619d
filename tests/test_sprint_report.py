"""
Unit tests for the sprint report composer.

Uses an in-memory fake of the Jira client that answers searches by
looking at the composed JQL.
"""

import asyncio
from zoneinfo import ZoneInfo

import pytest

from jira_sprint_mcp.errors import (
    BackendError,
    ConfigurationError,
    NotFoundError,
    TimeoutError as JiraTimeoutError,
)
from jira_sprint_mcp.models import (
    BoardInfo,
    ChangelogEntry,
    ChangelogItem,
    IssueRecord,
    SearchPage,
    SprintInfo,
    parse_jira_datetime,
)
from jira_sprint_mcp.permissions import AccessPolicy
from jira_sprint_mcp.services.backlog_service import BacklogService
from jira_sprint_mcp.services.sprint_report_service import (
    SprintReportService,
    StatusGroupMap,
    is_inflow,
)
from jira_sprint_mcp.validation import ValidationError


SP = "customfield_10016"
SPRINT_START = "2024-01-15T09:00:00.000+0000"


def make_issue(key, issue_type="Story", status="To Do", points=None, labels=None):
    fields = {
        "issuetype": {"name": issue_type},
        "status": {"name": status},
        "labels": labels or [],
    }
    if points is not None:
        fields[SP] = points
    return IssueRecord(key=key, fields=fields)


def sprint_change(entry_id, created, to_string, field="Sprint"):
    return ChangelogEntry(
        id=str(entry_id),
        created=created,
        author="Alice",
        items=[ChangelogItem(field=field, from_string="", to_string=to_string)],
    )


class FakeJiraClient:
    """Answers searches through a routing function over the JQL"""

    def __init__(self, route, sprints, changelogs=None, boards=None, catalog=None):
        self.route = route
        self.sprints = sprints
        self.changelogs = changelogs or {}
        self.boards = boards or {}
        self.catalog = catalog if catalog is not None else [{"id": SP, "name": "Story Points"}]
        self.queries = []
        self.history_calls = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def search_issues(self, jql, page_size=100, fields=None, next_page_token=None):
        self.queries.append(jql)
        issues = self.route(jql)
        return SearchPage(issues=issues, total=len(issues), is_last=True)

    async def get_sprint(self, sprint_id):
        return self.sprints[sprint_id]

    async def get_board(self, board_id):
        return self.boards[board_id]

    async def get_field_catalog(self):
        return self.catalog

    async def get_change_history(self, issue_key, page_size=100, start_at=0):
        self.history_calls.append((issue_key, start_at))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            pages = self.changelogs.get(issue_key, [[]])
            page_index = 0 if start_at == 0 else 1
            entries = pages[page_index]
            total = sum(len(page) for page in pages)
            return entries, total
        finally:
            self.in_flight -= 1


SPRINT_ISSUES = [
    make_issue("PROJ-1", "Story", "To Do", 3),
    make_issue("PROJ-2", "Story", "In Progress", 5),
    make_issue("PROJ-3", "Bug", "Done", 2, labels=["api"]),
    make_issue("PROJ-4", "Story", "closed", 1, labels=["api"]),
    make_issue("PROJ-5", "Task", "Weird", 8),
    make_issue("PROJ-6", "Bug", "Testing", 1, labels=["api"]),
]

BACKLOG_BUGS = [
    make_issue("PROJ-20", "Bug", "Open"),
    make_issue("PROJ-21", "Bug", "Resolved"),
]

TRIAGE_ISSUES = [make_issue("PROJ-30", "Bug", "To Do", 2), make_issue("PROJ-31", "Story", "To Do")]

CANDIDATES = [
    make_issue("PROJ-1", "Story", "To Do", 3),
    make_issue("PROJ-2", "Story", "In Progress", 5),
    make_issue("PROJ-3", "Bug", "Done", 2),
]


def route(jql):
    if "sprint IS EMPTY" in jql:
        return BACKLOG_BUGS
    if 'issuetype IN ("Bug")' in jql:
        return [i for i in SPRINT_ISSUES if i.fields["issuetype"]["name"] == "Bug"]
    if 'labels = "api"' in jql:
        return [i for i in SPRINT_ISSUES if "api" in i.fields["labels"]]
    if "created >=" in jql:
        return TRIAGE_ISSUES
    if "created <" in jql:
        return CANDIDATES
    return SPRINT_ISSUES


def make_sprints():
    return {
        10: SprintInfo(id=10, name="Sprint 10", state="active", start_date=SPRINT_START, origin_board_id=1),
        9: SprintInfo(id=9, name="Sprint 9", state="closed", start_date=None, origin_board_id=1),
    }


def make_service(client, inflow_concurrency=1, policy=None, **kwargs):
    backlog = BacklogService(client, policy or AccessPolicy())
    return SprintReportService(
        client,
        backlog,
        default_project=kwargs.pop("default_project", "PROJ"),
        default_story_points_field=kwargs.pop("default_story_points_field", SP),
        inflow_concurrency=inflow_concurrency,
        jql_timezone=kwargs.pop("jql_timezone", None),
    )


def group(report, name):
    return next(g for g in report["status_groups"] if g["name"] == name)


class TestConfiguration:
    """Test inputs rejected before any network call."""

    @pytest.mark.asyncio
    async def test_missing_story_points_field(self):
        client = FakeJiraClient(route, make_sprints())
        service = make_service(client, default_story_points_field=None)

        with pytest.raises(ConfigurationError):
            await service.get_sprint_report(10)

        assert client.queries == []

    @pytest.mark.asyncio
    async def test_argument_overrides_default_field(self):
        client = FakeJiraClient(route, make_sprints(), catalog=[{"id": "customfield_1", "name": "Points"}])
        service = make_service(client)

        report = await service.get_sprint_report(10, story_points_field="customfield_1")

        assert report["story_points_field"] == {"id": "customfield_1", "name": "Points"}

    @pytest.mark.asyncio
    async def test_field_name_falls_back_to_id(self):
        client = FakeJiraClient(route, make_sprints(), catalog=[])
        report = await make_service(client).get_sprint_report(10)

        assert report["story_points_field"] == {"id": SP, "name": SP}

    @pytest.mark.asyncio
    async def test_unknown_fixed_group(self):
        client = FakeJiraClient(route, make_sprints())

        with pytest.raises(ValidationError):
            await make_service(client).get_sprint_report(10, fixed_groups=["Shipped"])

        assert client.queries == []

    @pytest.mark.asyncio
    async def test_project_from_sprint_board(self):
        client = FakeJiraClient(
            route, make_sprints(), boards={1: BoardInfo(id=1, name="Board", project_key="proj")}
        )
        service = make_service(client, default_project=None)

        report = await service.get_sprint_report(10)

        assert report["project"] == "PROJ"
        assert client.queries[0].startswith('project = "PROJ"')

    @pytest.mark.asyncio
    async def test_no_project_anywhere(self):
        sprints = {10: SprintInfo(id=10, name="Sprint 10", start_date=SPRINT_START)}
        client = FakeJiraClient(route, sprints)

        with pytest.raises(ConfigurationError):
            await make_service(client, default_project=None).get_sprint_report(10)


class TestStatusGroups:
    """Test folding statuses into groups."""

    @pytest.mark.asyncio
    async def test_current_sprint_groups(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(10)

        assert group(report, "To Do")["current"] == {"issues": 1, "story_points": 3}
        assert group(report, "In Progress")["current"] == {"issues": 1, "story_points": 5}
        # "closed" matches the Done group case-insensitively
        assert group(report, "Done")["current"] == {"issues": 2, "story_points": 3}
        assert group(report, "To Test")["current"] == {"issues": 1, "story_points": 1}
        assert group(report, "Blocked")["current"] == {"issues": 0, "story_points": 0}
        assert group(report, "Done")["previous"] is None
        assert report["totals"]["current"] == {
            "issues": 6,
            "story_points": 20,
            "unmapped_statuses": {"Weird": 1},
        }
        assert report["sampled"] is False

    @pytest.mark.asyncio
    async def test_previous_sprint(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(10, previous_sprint_id=9)

        assert report["previous_sprint"]["name"] == "Sprint 9"
        assert group(report, "To Do")["previous"] == {"issues": 1, "story_points": 3}
        assert 'project = "PROJ" AND sprint = 9' in client.queries

    @pytest.mark.asyncio
    async def test_custom_status_groups(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(
            10,
            status_groups={"Open": ["To Do", "In Progress"], "Closed": ["Done", "Closed"]},
            fixed_groups=["Closed"],
            complete_groups=["Closed"],
        )

        assert [g["name"] for g in report["status_groups"]] == ["Open", "Closed"]
        assert group(report, "Open")["current"] == {"issues": 2, "story_points": 8}
        assert report["totals"]["current"]["unmapped_statuses"] == {"Weird": 1, "Testing": 1}


class TestTriage:
    """Test the triage section."""

    @pytest.mark.asyncio
    async def test_triage_row(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(10, include_triage=True)

        assert report["triage"] == {"current": {"issues": 2, "story_points": 2}}
        assert 'project = "PROJ" AND created >= "2024-01-15 09:00" AND sprint = 10' in client.queries

    @pytest.mark.asyncio
    async def test_start_date_in_account_time_zone(self):
        """JQL dates are read in the account's zone, so the cutoff is converted."""
        client = FakeJiraClient(route, make_sprints())
        service = make_service(client, jql_timezone=ZoneInfo("Asia/Kolkata"))

        await service.get_sprint_report(10, include_triage=True, include_inflow=True)

        assert 'project = "PROJ" AND created >= "2024-01-15 14:30" AND sprint = 10' in client.queries
        assert 'project = "PROJ" AND created < "2024-01-15 14:30" AND sprint = 10' in client.queries

    @pytest.mark.asyncio
    async def test_sprint_without_start_date(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(
            10, previous_sprint_id=9, include_triage=True, include_inflow=True
        )

        assert report["triage"]["previous"] is None
        assert report["inflow"]["previous"] is None

    @pytest.mark.asyncio
    async def test_sections_off_by_default(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(10)

        assert report["triage"] is None
        assert report["inflow"] is None
        assert client.history_calls == []


class TestInflow:
    """Test changelog-based inflow detection."""

    CHANGELOGS = {
        # Added after start; a later unrelated entry and a second sprint move must not double-count
        "PROJ-1": [[
            sprint_change(1, "2024-01-16T10:00:00.000+0000", "Sprint 9, Sprint 10"),
            sprint_change(2, "2024-01-17T10:00:00.000+0000", "In Progress", field="status"),
            sprint_change(3, "2024-01-18T10:00:00.000+0000", "Sprint 10"),
        ]],
        # Added before start
        "PROJ-2": [[sprint_change(4, "2024-01-14T10:00:00.000+0000", "Sprint 10")]],
        # Moved to another sprint after start
        "PROJ-3": [[sprint_change(5, "2024-01-16T10:00:00.000+0000", "Sprint 11")]],
    }

    @pytest.mark.asyncio
    async def test_inflow_counts_issue_once(self):
        client = FakeJiraClient(route, make_sprints(), changelogs=self.CHANGELOGS)

        report = await make_service(client).get_sprint_report(10, include_inflow=True)

        assert report["inflow"]["current"] == {
            "issues": 1,
            "story_points": 3,
            "issue_keys": ["PROJ-1"],
            "candidates": 3,
        }
        assert 'project = "PROJ" AND created < "2024-01-15 09:00" AND sprint = 10' in client.queries

    @pytest.mark.asyncio
    async def test_parallel_scan_keeps_candidate_order(self):
        changelogs = {
            key: [[sprint_change(1, "2024-01-16T10:00:00.000+0000", "Sprint 10")]]
            for key in ("PROJ-1", "PROJ-2", "PROJ-3")
        }
        client = FakeJiraClient(route, make_sprints(), changelogs=changelogs)

        report = await make_service(client, inflow_concurrency=2).get_sprint_report(10, include_inflow=True)

        assert report["inflow"]["current"]["issue_keys"] == ["PROJ-1", "PROJ-2", "PROJ-3"]
        assert report["inflow"]["current"]["story_points"] == 10
        assert client.peak_in_flight <= 2

    @pytest.mark.asyncio
    async def test_sequential_by_default(self):
        client = FakeJiraClient(route, make_sprints(), changelogs=self.CHANGELOGS)

        await make_service(client).get_sprint_report(10, include_inflow=True)

        assert client.peak_in_flight == 1

    @pytest.mark.asyncio
    async def test_changelog_is_paged(self):
        changelogs = {
            "PROJ-1": [
                [sprint_change(1, "2024-01-14T10:00:00.000+0000", "Sprint 9")],
                [sprint_change(2, "2024-01-16T10:00:00.000+0000", "Sprint 10")],
            ],
        }
        client = FakeJiraClient(route, make_sprints(), changelogs=changelogs)

        report = await make_service(client).get_sprint_report(10, include_inflow=True)

        assert report["inflow"]["current"]["issue_keys"] == ["PROJ-1"]
        assert ("PROJ-1", 1) in client.history_calls


class TestIsInflow:
    """Test the changelog scan on its own."""

    START = parse_jira_datetime(SPRINT_START)

    def test_entry_at_start_does_not_count(self):
        entries = [sprint_change(1, SPRINT_START, "Sprint 10")]
        assert not is_inflow(entries, "Sprint 10", self.START)

    def test_field_name_is_case_insensitive(self):
        entries = [sprint_change(1, "2024-01-16T10:00:00.000+0000", "Sprint 10", field="sprint")]
        assert is_inflow(entries, "Sprint 10", self.START)

    def test_empty_to_string(self):
        entries = [sprint_change(1, "2024-01-16T10:00:00.000+0000", None)]
        assert not is_inflow(entries, "Sprint 10", self.START)

    def test_offset_is_respected(self):
        # 10:30 at +02:00 is 08:30 UTC, before the 09:00 UTC start
        entries = [sprint_change(1, "2024-01-15T10:30:00.000+0200", "Sprint 10")]
        assert not is_inflow(entries, "Sprint 10", self.START)


class TestBugsAndLabels:
    """Test bug metrics and label tracking."""

    @pytest.mark.asyncio
    async def test_bug_breakdown(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(10)

        assert report["bugs"]["backlog"] == {
            "total": 2, "fixed": 1, "not_fixed": 1, "by_status": {"Open": 1, "Resolved": 1},
        }
        # Done and Testing (To Test group) both count as fixed
        assert report["bugs"]["current"]["fixed"] == 2
        assert report["bugs"]["current"]["not_fixed"] == 0
        assert (
            'project = "PROJ" AND sprint IS EMPTY AND resolution IS EMPTY AND issuetype IN ("Bug")'
            in client.queries
        )

    @pytest.mark.asyncio
    async def test_label_tracking(self):
        client = FakeJiraClient(route, make_sprints())

        report = await make_service(client).get_sprint_report(10, labels=["api"])

        assert report["labels"] == [{
            "label": "api",
            "current": {
                "complete": {"issues": 2, "story_points": 3},
                "not_complete": {"issues": 1, "story_points": 1},
            },
        }]
        assert 'project = "PROJ" AND sprint = 10 AND labels = "api"' in client.queries


class TestFailures:
    """Test that any failing pass fails the report."""

    @pytest.mark.asyncio
    async def test_backend_error_aborts_report(self):
        def failing_route(jql):
            if "sprint IS EMPTY" in jql:
                raise BackendError(status_code=500, body="boom")
            return route(jql)

        client = FakeJiraClient(failing_route, make_sprints())

        with pytest.raises(BackendError) as exc_info:
            await make_service(client).get_sprint_report(10)

        assert "boom" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_deadline(self):
        client = FakeJiraClient(route, make_sprints())

        async def slow_sprint(sprint_id):
            await asyncio.sleep(1)

        client.get_sprint = slow_sprint

        with pytest.raises(JiraTimeoutError):
            await make_service(client).get_sprint_report(10, deadline_seconds=0.01)

    @pytest.mark.asyncio
    async def test_project_outside_allowlist(self):
        client = FakeJiraClient(route, make_sprints())
        service = make_service(client, policy=AccessPolicy.from_env_values(projects="OTHER"))

        with pytest.raises(NotFoundError):
            await service.get_sprint_report(10)

    @pytest.mark.asyncio
    async def test_sprint_on_hidden_board(self):
        client = FakeJiraClient(
            route, make_sprints(), boards={1: BoardInfo(id=1, name="Secret", project_key="PROJ")}
        )
        service = make_service(client, policy=AccessPolicy.from_env_values(boards="99"))

        with pytest.raises(NotFoundError) as exc_info:
            await service.get_sprint_report(10)

        assert "Sprint 10 not found" in str(exc_info.value)
        assert client.queries == []

    @pytest.mark.asyncio
    async def test_previous_sprint_on_hidden_board(self):
        sprints = make_sprints()
        sprints[9].origin_board_id = 2
        client = FakeJiraClient(
            route,
            sprints,
            boards={
                1: BoardInfo(id=1, name="Platform", project_key="PROJ"),
                2: BoardInfo(id=2, name="Secret", project_key="PROJ"),
            },
        )
        service = make_service(client, policy=AccessPolicy.from_env_values(boards="Platform"))

        with pytest.raises(NotFoundError) as exc_info:
            await service.get_sprint_report(10, previous_sprint_id=9)

        assert "Sprint 9 not found" in str(exc_info.value)
        assert client.queries == []

    @pytest.mark.asyncio
    async def test_sprint_on_allowed_board(self):
        client = FakeJiraClient(
            route, make_sprints(), boards={1: BoardInfo(id=1, name="Platform", project_key="PROJ")}
        )
        service = make_service(client, policy=AccessPolicy.from_env_values(boards="1"))

        report = await service.get_sprint_report(10)

        assert report["totals"]["current"]["issues"] == 6


class TestStatusGroupMap:
    """Test the status group lookup."""

    def test_lookup_is_case_insensitive(self):
        groups = StatusGroupMap({"Done": ["Done", "Closed"]})
        assert groups.group_of("CLOSED") == "Done"
        assert groups.group_of("Open") is None

    def test_statuses_in_ignores_unknown_groups_unless_strict(self):
        groups = StatusGroupMap({"Done": ["Done"]})
        assert groups.statuses_in(["Done", "Missing"]) == {"done"}
        with pytest.raises(ValidationError):
            groups.statuses_in(["Missing"], strict=True)
