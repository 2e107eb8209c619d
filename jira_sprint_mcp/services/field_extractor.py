"""
Per-dimension value extraction from issue records.

Each Dimension has its own extraction function; DIMENSION_EXTRACTORS maps
every member of the enum, so adding a dimension without an extractor
fails at import time.
"""
from typing import Any, Callable, Dict, List, Optional, Union

from ..constants import FieldNames, Sentinels
from ..models import Dimension, IssueRecord

DimensionValue = Union[str, List[str]]


def _named(value: Any, attribute: str = 'name') -> Optional[str]:
    if isinstance(value, dict):
        return value.get(attribute) or None
    return None


def extract_status(issue: IssueRecord) -> str:
    return _named(issue.fields.get(FieldNames.STATUS)) or Sentinels.UNKNOWN


def extract_type(issue: IssueRecord) -> str:
    return _named(issue.fields.get(FieldNames.ISSUE_TYPE)) or Sentinels.UNKNOWN


def extract_priority(issue: IssueRecord) -> str:
    return _named(issue.fields.get(FieldNames.PRIORITY)) or Sentinels.NONE


def extract_assignee(issue: IssueRecord) -> str:
    return _named(issue.fields.get(FieldNames.ASSIGNEE), 'displayName') or Sentinels.UNASSIGNED


def extract_reporter(issue: IssueRecord) -> str:
    return _named(issue.fields.get(FieldNames.REPORTER), 'displayName') or Sentinels.UNKNOWN


def extract_labels(issue: IssueRecord) -> List[str]:
    labels = issue.fields.get(FieldNames.LABELS)
    return [str(label) for label in labels] if isinstance(labels, list) else []


def extract_components(issue: IssueRecord) -> List[str]:
    components = issue.fields.get(FieldNames.COMPONENTS)
    if not isinstance(components, list):
        return []
    names = (_named(component) for component in components)
    return [name for name in names if name]


def extract_resolution(issue: IssueRecord) -> str:
    return _named(issue.fields.get(FieldNames.RESOLUTION)) or Sentinels.UNRESOLVED


def extract_project(issue: IssueRecord) -> str:
    return issue.project_key


DIMENSION_EXTRACTORS: Dict[Dimension, Callable[[IssueRecord], DimensionValue]] = {
    Dimension.STATUS: extract_status,
    Dimension.TYPE: extract_type,
    Dimension.PRIORITY: extract_priority,
    Dimension.ASSIGNEE: extract_assignee,
    Dimension.REPORTER: extract_reporter,
    Dimension.LABELS: extract_labels,
    Dimension.COMPONENTS: extract_components,
    Dimension.RESOLUTION: extract_resolution,
    Dimension.PROJECT: extract_project,
}

_missing = set(Dimension) - set(DIMENSION_EXTRACTORS)
if _missing:
    raise RuntimeError(f"No extractor for dimension(s): {sorted(d.value for d in _missing)}")


def extract(issue: IssueRecord, dimension: Dimension) -> DimensionValue:
    """Extract a dimension's value: a string, or a list for multi-valued dimensions"""
    return DIMENSION_EXTRACTORS[dimension](issue)


def extract_values(issue: IssueRecord, dimension: Dimension) -> List[str]:
    """Extract a dimension's value(s) as a list, possibly empty"""
    value = extract(issue, dimension)
    return value if isinstance(value, list) else [value]


def extract_number(issue: IssueRecord, field_id: Optional[str]) -> Optional[float]:
    """
    Read a numeric field.

    Numbers are returned as-is and numeric strings are parsed; anything
    else (missing, empty, unparseable, booleans) yields None.
    """
    if not field_id:
        return None
    value = issue.fields.get(field_id)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def required_fields(dimension: Dimension) -> List[str]:
    """Field ids a search must request to extract a dimension"""
    return [dimension.field_id] if dimension.field_id else []


def extract_status_category(issue: IssueRecord) -> Optional[str]:
    status = issue.fields.get(FieldNames.STATUS)
    if not isinstance(status, dict):
        return None
    return _named(status.get('statusCategory'))


def extract_parent(issue: IssueRecord) -> Optional[Dict[str, Any]]:
    parent = issue.fields.get(FieldNames.PARENT)
    if not isinstance(parent, dict) or not parent.get('key'):
        return None
    parent_fields = parent.get('fields') or {}
    return {'key': parent['key'], 'summary': parent_fields.get(FieldNames.SUMMARY)}


def issue_summary(issue: IssueRecord) -> Dict[str, Any]:
    """
    One-line view of an issue for listings.

    Assignee and priority are None rather than a sentinel when absent, so
    a listing shows what Jira holds.
    """
    return {
        'key': issue.key,
        'summary': issue.fields.get(FieldNames.SUMMARY),
        'status': extract_status(issue),
        'status_category': extract_status_category(issue),
        'assignee': _named(issue.fields.get(FieldNames.ASSIGNEE), 'displayName'),
        'priority': _named(issue.fields.get(FieldNames.PRIORITY)),
        'type': extract_type(issue),
        'parent': extract_parent(issue),
    }
