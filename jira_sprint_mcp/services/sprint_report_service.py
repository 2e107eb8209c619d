"""
Sprint retrospective reports

A report is assembled from independent aggregation passes, run one after
another: status groups per sprint, triage, inflow, bug metrics and label
tracking. Any failing pass fails the whole report.
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..constants import (
    DEFAULT_STATUS_GROUPS,
    FieldNames,
    FilterOperators,
    IssueTypes,
    QueryLimits,
    StatusGroups,
    format_jql_datetime,
)
from ..decorators import PerformanceMonitor, log_execution, run_with_deadline
from ..errors import ConfigurationError, NotFoundError
from ..models import (
    AggregationResult,
    BugBreakdown,
    ChangelogEntry,
    Dimension,
    FieldFilter,
    FilterSpec,
    IssueRecord,
    PivotAction,
    PivotSpec,
    SprintInfo,
    SprintMetric,
)
from ..validation import ValidationError, sanitize_jql_string, validate_positive_id
from .field_extractor import extract_number
from .sprint_service import load_visible_sprint

logger = logging.getLogger(__name__)


class StatusGroupMap:
    """Named groups of status names, matched case-insensitively"""

    def __init__(self, groups: Dict[str, List[str]]):
        self.groups = groups
        self._lookup: Dict[str, str] = {}
        for name, statuses in groups.items():
            for status in statuses:
                self._lookup.setdefault(status.lower(), name)

    @property
    def names(self) -> List[str]:
        return list(self.groups)

    def group_of(self, status: str) -> Optional[str]:
        return self._lookup.get(status.lower())

    def statuses_in(self, group_names: Iterable[str], strict: bool = False) -> Set[str]:
        """
        Lower-cased status names belonging to any of the given groups.

        Raises:
            ValidationError: If strict and a group name is not in the map
        """
        statuses: Set[str] = set()
        for name in group_names:
            if name not in self.groups:
                if strict:
                    raise ValidationError(
                        "status_groups",
                        f"Unknown status group '{name}'. Known groups: {', '.join(self.names)}"
                    )
                continue
            statuses.update(status.lower() for status in self.groups[name])
        return statuses


def is_inflow(entries: List[ChangelogEntry], sprint_name: str, started_at: datetime) -> bool:
    """
    Whether a changelog shows the issue being added to the sprint after it started.

    Only entries strictly after the start count, and only changes to the
    Sprint field whose new value mentions the sprint's name. The first
    matching entry decides.
    """
    sprint_field = FieldNames.SPRINT.lower()
    for entry in entries:
        created = entry.created_at
        if created is None or created <= started_at:
            continue
        for item in entry.items:
            if item.field.lower() == sprint_field and sprint_name in (item.to_string or ''):
                return True
    return False


def status_group_metrics(
    result: AggregationResult,
    groups: StatusGroupMap
) -> Tuple[Dict[str, SprintMetric], Dict[str, int]]:
    """
    Fold per-status counts and story points into status groups.

    Issue counts come from the status grouping and story points from the
    pivot's status rows.

    Returns:
        Tuple of (metric per group, counts of statuses no group claims)
    """
    metrics = {name: SprintMetric() for name in groups.names}
    unmapped: Dict[str, int] = {}
    by_status = (result.grouped_by or {}).get(Dimension.STATUS.value, {})
    story_points = result.pivot.row_totals if result.pivot else {}

    for status, count in by_status.items():
        group = groups.group_of(status)
        if group is None:
            unmapped[status] = count
            continue
        metrics[group].add(SprintMetric(issues=count, story_points=story_points.get(status, 0)))

    return metrics, unmapped


def bug_breakdown(result: AggregationResult, fixed_statuses: Set[str]) -> BugBreakdown:
    """Split bugs by status into fixed and not fixed"""
    by_status = dict((result.grouped_by or {}).get(Dimension.STATUS.value, {}))
    fixed = sum(count for status, count in by_status.items() if status.lower() in fixed_statuses)
    return BugBreakdown(
        total=result.analyzed,
        fixed=fixed,
        not_fixed=result.analyzed - fixed,
        by_status=by_status,
    )


def completion_breakdown(result: AggregationResult, complete_statuses: Set[str]) -> Dict[str, Any]:
    """Split issues by status into complete and not complete"""
    complete = SprintMetric()
    not_complete = SprintMetric()
    by_status = (result.grouped_by or {}).get(Dimension.STATUS.value, {})
    story_points = result.pivot.row_totals if result.pivot else {}

    for status, count in by_status.items():
        target = complete if status.lower() in complete_statuses else not_complete
        target.add(SprintMetric(issues=count, story_points=story_points.get(status, 0)))

    return {'complete': complete.to_dict(), 'not_complete': not_complete.to_dict()}


@dataclass
class _ReportContext:
    """Settings shared by every pass of one report"""
    project_key: str
    story_points_field: str
    groups: StatusGroupMap
    sampled: bool = False

    @property
    def project_clause(self) -> str:
        return f"project = {sanitize_jql_string(self.project_key)}"

    @property
    def story_points_pivot(self) -> PivotSpec:
        return PivotSpec(
            row_field=Dimension.STATUS,
            column_field=Dimension.TYPE,
            action=PivotAction.SUM,
            value_field=self.story_points_field
        )


class SprintReportService:
    """Composes sprint reports from backlog aggregation passes"""

    def __init__(
        self,
        client,
        backlog_service,
        default_project: Optional[str] = None,
        default_story_points_field: Optional[str] = None,
        inflow_concurrency: int = 1,
        jql_timezone: Optional[tzinfo] = None
    ):
        """
        Initialize sprint report service

        Args:
            client: JiraClient instance
            backlog_service: BacklogService running the aggregation passes
            default_project: Project key used when a report names none
            default_story_points_field: Story points field id used when a report names none
            inflow_concurrency: Changelog fetches allowed in flight during inflow detection
            jql_timezone: Time zone of the Jira account; sprint start dates are
                          written into JQL in this zone
        """
        self.client = client
        self.backlog = backlog_service
        self.default_project = default_project
        self.default_story_points_field = default_story_points_field
        self.inflow_concurrency = max(1, inflow_concurrency)
        self.jql_timezone = jql_timezone

    @log_execution(level=logging.DEBUG, log_args=True)
    async def get_sprint_report(
        self,
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
        deadline_seconds: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Build a retrospective report for a sprint

        Args:
            sprint_id: Sprint to report on
            previous_sprint_id: Optional sprint to compare against
            project: Project key; defaults to the configured project, then
                     to the project of the sprint's board
            story_points_field: Numeric field holding story points
            status_groups: Group name → status names (defaults to six groups)
            labels: Labels to track
            include_triage: Add issues created in the sprint after it started
            include_inflow: Add issues pulled into the sprint after it started
            fixed_groups: Groups whose bugs count as fixed
            complete_groups: Groups whose issues count as complete
            deadline_seconds: Abort with TimeoutError after this long

        Returns:
            The report as a dictionary

        Raises:
            ConfigurationError: If no story points field is available
            NotFoundError: If a sprint, its board or the project is hidden by an allowlist
        """
        field_id = story_points_field or self.default_story_points_field
        if not field_id:
            raise ConfigurationError(
                "A story points field is required: pass story_points_field "
                "or set JIRA_STORY_POINTS_FIELD.",
                setting="JIRA_STORY_POINTS_FIELD"
            )

        sprint_id = validate_positive_id(sprint_id, "sprint_id")
        previous_sprint_id = validate_positive_id(previous_sprint_id, "previous_sprint_id")

        groups = StatusGroupMap(status_groups or DEFAULT_STATUS_GROUPS)
        fixed_statuses = groups.statuses_in(
            fixed_groups or StatusGroups.FIXED, strict=bool(fixed_groups)
        )
        complete_statuses = groups.statuses_in(
            complete_groups or StatusGroups.COMPLETE, strict=bool(complete_groups)
        )

        async with PerformanceMonitor("get_sprint_report", warn_threshold_ms=30000.0):
            return await run_with_deadline(
                self._compose(
                    sprint_id,
                    previous_sprint_id,
                    project,
                    field_id,
                    groups,
                    labels or [],
                    include_triage,
                    include_inflow,
                    fixed_statuses,
                    complete_statuses
                ),
                deadline_seconds,
                "get_sprint_report"
            )

    async def _compose(
        self,
        sprint_id: int,
        previous_sprint_id: Optional[int],
        project: Optional[str],
        field_id: str,
        groups: StatusGroupMap,
        labels: List[str],
        include_triage: bool,
        include_inflow: bool,
        fixed_statuses: Set[str],
        complete_statuses: Set[str]
    ) -> Dict[str, Any]:
        policy = self.backlog.policy
        current = await load_visible_sprint(self.client, policy, sprint_id)
        previous = None
        if previous_sprint_id:
            previous = await load_visible_sprint(self.client, policy, previous_sprint_id)

        project_key = await self._resolve_project(project, current)
        ctx = _ReportContext(project_key=project_key, story_points_field=field_id, groups=groups)
        field_name = await self._field_name(field_id)

        sprints: List[Tuple[str, SprintInfo]] = [('current', current)]
        if previous:
            sprints.append(('previous', previous))

        group_metrics: Dict[str, Dict[str, SprintMetric]] = {}
        totals: Dict[str, Dict[str, Any]] = {}
        for slot, sprint in sprints:
            logger.info(f"Aggregating sprint {sprint.id} ({sprint.name}) for {project_key}")
            result = await self._run(ctx, FilterSpec(base_query=ctx.project_clause, sprint_id=sprint.id))
            metrics, unmapped = status_group_metrics(result, groups)
            group_metrics[slot] = metrics
            totals[slot] = {
                'issues': result.analyzed,
                'story_points': result.pivot.grand if result.pivot else 0,
                'unmapped_statuses': unmapped,
            }

        triage = None
        if include_triage:
            triage = {slot: await self._triage(ctx, sprint) for slot, sprint in sprints}

        inflow = None
        if include_inflow:
            inflow = {slot: await self._inflow(ctx, sprint) for slot, sprint in sprints}

        bugs = await self._bugs(ctx, sprints, fixed_statuses)

        tracked_labels = []
        for label in labels:
            entry: Dict[str, Any] = {'label': label}
            for slot, sprint in sprints:
                spec = FilterSpec(
                    base_query=ctx.project_clause,
                    sprint_id=sprint.id,
                    field_filters=[FieldFilter(FieldNames.LABELS, FilterOperators.EQ, label)]
                )
                entry[slot] = completion_breakdown(await self._run(ctx, spec), complete_statuses)
            tracked_labels.append(entry)

        return {
            'project': project_key,
            'story_points_field': {'id': field_id, 'name': field_name},
            'current_sprint': current.to_dict(),
            'previous_sprint': previous.to_dict() if previous else None,
            'status_groups': [
                {
                    'name': name,
                    'statuses': groups.groups[name],
                    'current': group_metrics['current'][name].to_dict(),
                    'previous': group_metrics['previous'][name].to_dict() if previous else None,
                }
                for name in groups.names
            ],
            'totals': totals,
            'triage': triage,
            'inflow': inflow,
            'bugs': bugs,
            'labels': tracked_labels,
            'sampled': ctx.sampled,
        }

    async def _run(
        self,
        ctx: _ReportContext,
        spec: FilterSpec,
        with_story_points: bool = True
    ) -> AggregationResult:
        result = await self.backlog.aggregate(
            spec,
            group_by=[Dimension.STATUS],
            pivot=ctx.story_points_pivot if with_story_points else None
        )
        if result.sampled or result.truncated:
            ctx.sampled = True
        return result

    async def _resolve_project(self, project: Optional[str], sprint: SprintInfo) -> str:
        project_key = project or self.default_project
        if not project_key and sprint.origin_board_id:
            board = await self.client.get_board(sprint.origin_board_id)
            project_key = board.project_key
        if not project_key:
            raise ConfigurationError(
                "A project is required: pass project or set JIRA_DEFAULT_PROJECT.",
                setting="JIRA_DEFAULT_PROJECT"
            )

        project_key = project_key.strip().upper()
        if not self.backlog.policy.is_project_allowed(project_key):
            raise NotFoundError(resource=f"Project {project_key}")
        return project_key

    async def _field_name(self, field_id: str) -> str:
        catalog = await self.client.get_field_catalog()
        for item in catalog:
            if item.get('id') == field_id:
                return item.get('name') or field_id
        logger.warning(f"Story points field {field_id} is not in the field catalog")
        return field_id

    async def _triage(self, ctx: _ReportContext, sprint: SprintInfo) -> Optional[Dict[str, Any]]:
        started_at = sprint.started_at
        if started_at is None:
            return None

        created_after = sanitize_jql_string(format_jql_datetime(started_at, self.jql_timezone))
        spec = FilterSpec(
            base_query=f"{ctx.project_clause} AND {FieldNames.CREATED} >= {created_after}",
            sprint_id=sprint.id
        )
        result = await self._run(ctx, spec)
        return SprintMetric(
            issues=result.total,
            story_points=result.pivot.grand if result.pivot else 0
        ).to_dict()

    async def _inflow(self, ctx: _ReportContext, sprint: SprintInfo) -> Optional[Dict[str, Any]]:
        started_at = sprint.started_at
        if started_at is None:
            return None

        created_before = sanitize_jql_string(format_jql_datetime(started_at, self.jql_timezone))
        spec = FilterSpec(
            base_query=f"{ctx.project_clause} AND {FieldNames.CREATED} < {created_before}",
            sprint_id=sprint.id
        )
        jql = await self.backlog.query_builder.build(spec)
        fetched = await self.backlog.fetcher.fetch(
            jql,
            [ctx.story_points_field],
            max_pages=math.ceil(QueryLimits.MAX_INFLOW_CANDIDATES / self.backlog.fetcher.page_size)
        )
        candidates = fetched.issues[:QueryLimits.MAX_INFLOW_CANDIDATES]
        if fetched.truncated or len(fetched.issues) > len(candidates):
            ctx.sampled = True

        logger.info(f"Scanning {len(candidates)} changelog(s) for inflow into {sprint.name}")
        matches = await self._scan_changelogs(candidates, sprint.name, started_at)

        metric = SprintMetric()
        keys: List[str] = []
        for issue, matched in zip(candidates, matches):
            if not matched:
                continue
            points = extract_number(issue, ctx.story_points_field)
            metric.add(SprintMetric(issues=1, story_points=points if points is not None else 0))
            keys.append(issue.key)

        return {**metric.to_dict(), 'issue_keys': keys, 'candidates': len(candidates)}

    async def _scan_changelogs(
        self,
        candidates: List[IssueRecord],
        sprint_name: str,
        started_at: datetime
    ) -> List[bool]:
        """Scan every candidate's changelog; results are in candidate order"""
        semaphore = asyncio.Semaphore(self.inflow_concurrency)

        async def scan(issue: IssueRecord) -> bool:
            start_at = 0
            while True:
                async with semaphore:
                    entries, total = await self.client.get_change_history(
                        issue.key,
                        page_size=QueryLimits.CHANGELOG_PAGE_SIZE,
                        start_at=start_at
                    )
                if is_inflow(entries, sprint_name, started_at):
                    return True
                start_at += len(entries)
                if not entries or start_at >= total:
                    return False

        tasks = [asyncio.ensure_future(scan(issue)) for issue in candidates]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _bugs(
        self,
        ctx: _ReportContext,
        sprints: List[Tuple[str, SprintInfo]],
        fixed_statuses: Set[str]
    ) -> Dict[str, Any]:
        backlog_spec = FilterSpec(
            base_query=f"{ctx.project_clause} AND sprint IS EMPTY",
            exclude_resolved=True,
            issue_types=[IssueTypes.BUG]
        )
        backlog = await self._run(ctx, backlog_spec, with_story_points=False)
        bugs: Dict[str, Any] = {'backlog': bug_breakdown(backlog, fixed_statuses).to_dict()}

        for slot, sprint in sprints:
            spec = FilterSpec(
                base_query=ctx.project_clause,
                sprint_id=sprint.id,
                issue_types=[IssueTypes.BUG]
            )
            result = await self._run(ctx, spec, with_story_points=False)
            bugs[slot] = bug_breakdown(result, fixed_statuses).to_dict()

        return bugs
