"""
Grouped counts and pivot tables over a fetched issue set.

Multi-valued dimensions (labels, components) fan out: an issue with two
labels counts once under each label, and contributes to every pivot cell
in the cross product of its row and column values. An issue with no
value for a dimension contributes to none of that dimension's buckets.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import product
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..constants import AGGREGATION_FIELDS
from ..models import (
    AggregationResult,
    Dimension,
    IssueRecord,
    PivotAction,
    PivotSpec,
    PivotTable,
)
from .field_extractor import (
    extract_assignee,
    extract_number,
    extract_priority,
    extract_status,
    extract_type,
    extract_values,
    required_fields,
)


@dataclass
class _Accumulator:
    count: int = 0
    sum: float = 0
    keys: Set[str] = field(default_factory=set)

    def add(self, key: str, value: float) -> None:
        self.count += 1
        self.sum += value
        self.keys.add(key)


class _PivotBuilder:
    """Running per-cell and total accumulators for one pivot computation"""

    def __init__(self, spec: PivotSpec):
        self.spec = spec
        self.cells: Dict[Tuple[str, str], _Accumulator] = defaultdict(_Accumulator)
        self.rows: Dict[str, _Accumulator] = defaultdict(_Accumulator)
        self.columns: Dict[str, _Accumulator] = defaultdict(_Accumulator)
        self.grand = _Accumulator()

    def _value(self, issue: IssueRecord) -> float:
        if self.spec.action in (PivotAction.COUNT, PivotAction.CARDINALITY):
            return 1
        number = extract_number(issue, self.spec.value_field)
        return number if number is not None else 0

    def add(self, issue: IssueRecord) -> None:
        row_values = extract_values(issue, self.spec.row_field)
        column_values = extract_values(issue, self.spec.column_field)
        value = self._value(issue)

        for row, column in product(row_values, column_values):
            self.cells[(row, column)].add(issue.key, value)
            self.rows[row].add(issue.key, value)
            self.columns[column].add(issue.key, value)
            self.grand.add(issue.key, value)

    def _resolve(self, accumulator: _Accumulator) -> float:
        action = self.spec.action
        if action == PivotAction.COUNT:
            return accumulator.count
        if action == PivotAction.SUM:
            return accumulator.sum
        if action == PivotAction.AVG:
            return accumulator.sum / accumulator.count if accumulator.count else 0
        return len(accumulator.keys)

    def _union(self, cells: Iterable[_Accumulator]) -> int:
        keys: Set[str] = set()
        for cell in cells:
            keys |= cell.keys
        return len(keys)

    def build(self) -> PivotTable:
        rows = sorted(self.rows)
        columns = sorted(self.columns)

        data: Dict[str, Dict[str, float]] = {}
        for (row, column) in sorted(self.cells):
            data.setdefault(row, {})[column] = self._resolve(self.cells[(row, column)])

        row_totals = {row: self._resolve(self.rows[row]) for row in rows}

        if self.spec.action == PivotAction.CARDINALITY:
            column_totals = {
                column: self._union(
                    cell for (_, c), cell in self.cells.items() if c == column
                )
                for column in columns
            }
            grand = self._union(self.cells.values())
        else:
            column_totals = {column: self._resolve(self.columns[column]) for column in columns}
            grand = self._resolve(self.grand)

        return PivotTable(
            rows=rows,
            columns=columns,
            data=data,
            row_totals=row_totals,
            column_totals=column_totals,
            grand=grand,
        )


def _increment(counts: Dict[str, int], value: str) -> None:
    counts[value] = counts.get(value, 0) + 1


def fields_for(
    group_by: Optional[List[Dimension]] = None,
    pivot: Optional[PivotSpec] = None
) -> List[str]:
    """Field ids a search must request for the given aggregation"""
    fields: List[str] = [] if group_by else list(AGGREGATION_FIELDS)
    for dimension in group_by or []:
        fields.extend(required_fields(dimension))
    if pivot:
        fields.extend(required_fields(pivot.row_field))
        fields.extend(required_fields(pivot.column_field))
        if pivot.value_field:
            fields.append(pivot.value_field)
    return list(dict.fromkeys(fields))


def aggregate(
    issues: List[IssueRecord],
    total: int,
    group_by: Optional[List[Dimension]] = None,
    pivot: Optional[PivotSpec] = None,
    truncated: bool = False
) -> AggregationResult:
    """
    Aggregate a fetched issue set.

    Args:
        issues: Allowlist-passed issues
        total: Match count the backend reported for the query
        group_by: Dimensions to count by; replaces the default counts
        pivot: Optional pivot specification
        truncated: Whether pagination stopped at the page cap

    Returns:
        AggregationResult with analyzed == len(issues)
    """
    result = AggregationResult(
        total=max(total, len(issues)),
        analyzed=len(issues),
        truncated=truncated,
    )
    grouped: Optional[Dict[str, Dict[str, int]]] = (
        {dimension.value: {} for dimension in group_by} if group_by else None
    )
    builder = _PivotBuilder(pivot) if pivot else None

    for issue in issues:
        if grouped is None:
            status = extract_status(issue)
            issue_type = extract_type(issue)
            _increment(result.by_status, status)
            _increment(result.by_type, issue_type)
            _increment(result.by_priority, extract_priority(issue))
            _increment(result.by_assignee, extract_assignee(issue))
            _increment(result.by_type_and_status.setdefault(issue_type, {}), status)
        else:
            for dimension in group_by:
                for value in extract_values(issue, dimension):
                    _increment(grouped[dimension.value], value)

        if builder:
            builder.add(issue)

    result.grouped_by = grouped
    result.pivot = builder.build() if builder else None
    return result
