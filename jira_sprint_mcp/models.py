"""
Data models for the Jira sprint MCP server
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Union


_OFFSET_WITHOUT_COLON = re.compile(r'([+-]\d{2})(\d{2})$')


def parse_jira_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a Jira timestamp into an aware datetime.

    Jira sends "2024-01-15T09:00:00.000+0000" style values; offsets
    without a colon and a trailing "Z" are normalised first. Naive values
    are taken as UTC.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    text = _OFFSET_WITHOUT_COLON.sub(r'\1:\2', text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Dimension(str, Enum):
    """An issue field that can be grouped or pivoted by"""
    STATUS = "status"
    TYPE = "type"
    PRIORITY = "priority"
    ASSIGNEE = "assignee"
    REPORTER = "reporter"
    LABELS = "labels"
    COMPONENTS = "components"
    RESOLUTION = "resolution"
    PROJECT = "project"

    @property
    def field_id(self) -> Optional[str]:
        """Jira field that must be requested to extract this dimension."""
        return _DIMENSION_FIELDS[self]


_DIMENSION_FIELDS: Dict[Dimension, Optional[str]] = {
    Dimension.STATUS: "status",
    Dimension.TYPE: "issuetype",
    Dimension.PRIORITY: "priority",
    Dimension.ASSIGNEE: "assignee",
    Dimension.REPORTER: "reporter",
    Dimension.LABELS: "labels",
    Dimension.COMPONENTS: "components",
    Dimension.RESOLUTION: "resolution",
    # Derived from the issue key
    Dimension.PROJECT: None,
}


class PivotAction(str, Enum):
    """How pivot cells are resolved"""
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    CARDINALITY = "cardinality"


@dataclass(frozen=True)
class IssueRecord:
    """An issue as returned by search: its key plus a field-id → value mapping"""
    key: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def project_key(self) -> str:
        return self.key.split('-', 1)[0].upper()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IssueRecord":
        return cls(key=data['key'], fields=data.get('fields') or {})


@dataclass
class SearchPage:
    """One page of an issue search"""
    issues: List[IssueRecord]
    total: Optional[int] = None
    is_last: Optional[bool] = None
    next_page_token: Optional[str] = None


@dataclass
class FieldFilter:
    """A structured filter on an arbitrary field"""
    field: str
    operator: str
    value: Optional[Union[str, List[str]]] = None


@dataclass
class FilterSpec:
    """Structured filters ANDed onto a base JQL query"""
    base_query: str = ""
    board_id: Optional[int] = None
    exclude_resolved: bool = False
    issue_types: Optional[List[str]] = None
    assignees: Optional[List[str]] = None
    sprint_id: Optional[int] = None
    field_filters: List[FieldFilter] = field(default_factory=list)


@dataclass
class PivotSpec:
    """Row/column dimensions and the action applied to each cell"""
    row_field: Dimension
    column_field: Dimension
    action: PivotAction = PivotAction.COUNT
    value_field: Optional[str] = None


@dataclass
class PivotTable:
    """Resolved two-dimensional aggregation with totals"""
    rows: List[str]
    columns: List[str]
    data: Dict[str, Dict[str, float]]
    row_totals: Dict[str, float]
    column_totals: Dict[str, float]
    grand: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'rows': self.rows,
            'columns': self.columns,
            'data': self.data,
            'totals': {
                'rows': self.row_totals,
                'columns': self.column_totals,
                'grand': self.grand,
            },
        }


@dataclass
class AggregationResult:
    """Statistics computed over one fetched issue set"""
    total: int
    analyzed: int
    by_status: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)
    by_priority: Dict[str, int] = field(default_factory=dict)
    by_assignee: Dict[str, int] = field(default_factory=dict)
    by_type_and_status: Dict[str, Dict[str, int]] = field(default_factory=dict)
    grouped_by: Optional[Dict[str, Dict[str, int]]] = None
    pivot: Optional[PivotTable] = None
    truncated: bool = False

    @property
    def sampled(self) -> bool:
        return self.analyzed < self.total

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'total': self.total,
            'analyzed': self.analyzed,
            'sampled': self.sampled,
            'truncated': self.truncated,
            'by_status': self.by_status,
            'by_type': self.by_type,
            'by_priority': self.by_priority,
            'by_assignee': self.by_assignee,
            'by_type_and_status': self.by_type_and_status,
        }
        if self.grouped_by is not None:
            result['grouped_by'] = self.grouped_by
        if self.pivot is not None:
            result['pivot'] = self.pivot.to_dict()
        return result


@dataclass
class SprintInfo:
    """Represents a sprint"""
    id: int
    name: str
    state: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    complete_date: Optional[str] = None
    goal: Optional[str] = None
    origin_board_id: Optional[int] = None

    @property
    def started_at(self) -> Optional[datetime]:
        return parse_jira_datetime(self.start_date)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SprintInfo":
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            state=data.get('state'),
            start_date=data.get('startDate'),
            end_date=data.get('endDate'),
            complete_date=data.get('completeDate'),
            goal=data.get('goal'),
            origin_board_id=data.get('originBoardId'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'state': self.state,
            'start_date': self.start_date,
            'end_date': self.end_date,
            'goal': self.goal,
        }


@dataclass
class BoardInfo:
    """Represents an agile board"""
    id: int
    name: str
    type: Optional[str] = None
    project_key: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BoardInfo":
        location = data.get('location') or {}
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            type=data.get('type'),
            project_key=location.get('projectKey'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'project_key': self.project_key,
        }


@dataclass
class ChangelogItem:
    """A single field change within a changelog entry"""
    field: str
    from_string: Optional[str] = None
    to_string: Optional[str] = None


@dataclass
class ChangelogEntry:
    """One changelog entry: who changed what, and when"""
    id: str
    created: str
    author: Optional[str] = None
    items: List[ChangelogItem] = field(default_factory=list)

    @property
    def created_at(self) -> Optional[datetime]:
        return parse_jira_datetime(self.created)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ChangelogEntry":
        author = data.get('author') or {}
        return cls(
            id=str(data.get('id', '')),
            created=data.get('created', ''),
            author=author.get('displayName'),
            items=[
                ChangelogItem(
                    field=item.get('field', ''),
                    from_string=item.get('fromString'),
                    to_string=item.get('toString'),
                )
                for item in (data.get('items') or [])
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'author': self.author,
            'created': self.created,
            'changes': [
                {'field': item.field, 'from': item.from_string, 'to': item.to_string}
                for item in self.items
            ],
        }


@dataclass
class SprintMetric:
    """Issue count and story-point sum for one slice of a sprint"""
    issues: int = 0
    story_points: float = 0

    def add(self, other: "SprintMetric") -> None:
        self.issues += other.issues
        self.story_points += other.story_points

    def to_dict(self) -> Dict[str, Any]:
        return {'issues': self.issues, 'story_points': self.story_points}


@dataclass
class BugBreakdown:
    """Bug counts split into fixed and not fixed"""
    total: int = 0
    fixed: int = 0
    not_fixed: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'fixed': self.fixed,
            'not_fixed': self.not_fixed,
            'by_status': self.by_status,
        }
