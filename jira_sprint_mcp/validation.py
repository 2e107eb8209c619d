"""
Input validation for tool arguments.

Tool arguments arrive as plain JSON values. The helpers here turn them
into the typed models the services work with and reject anything outside
the closed sets (dimensions, pivot actions, filter operators). Field
names used in filters are not checked: Jira reports unknown fields itself.
"""

import re
from typing import Optional, List, Dict, Any

from .constants import FilterOperators
from .models import Dimension, PivotAction, PivotSpec, FieldFilter


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


ISSUE_KEY_PATTERN = re.compile(r'^([A-Z][A-Z0-9]*)-\d+$', re.IGNORECASE)


class DimensionValidator:
    """Validator for grouping/pivot dimensions."""

    @staticmethod
    def validate(value: Any, field: str = "dimension") -> Dimension:
        """
        Validate a dimension name.

        Raises:
            ValidationError: If the name is not a known dimension
        """
        if isinstance(value, Dimension):
            return value
        try:
            return Dimension(str(value).strip().lower())
        except ValueError:
            allowed = ', '.join(d.value for d in Dimension)
            raise ValidationError(
                field,
                f"Invalid dimension: '{value}'. Allowed dimensions: {allowed}"
            )


class PivotValidator:
    """Validator for pivot specifications."""

    @staticmethod
    def validate(pivot: Dict[str, Any]) -> PivotSpec:
        """
        Validate a pivot specification.

        Args:
            pivot: Mapping with row_field, column_field, action and
                   optional value_field (camelCase keys are accepted too)

        Returns:
            The validated PivotSpec

        Raises:
            ValidationError: If a dimension or the action is unknown, or
                             sum/avg is requested without a value field
        """
        if not isinstance(pivot, dict):
            raise ValidationError("pivot", "Pivot must be an object")

        row = pivot.get('row_field', pivot.get('rowField'))
        column = pivot.get('column_field', pivot.get('columnField'))
        action_name = pivot.get('action', PivotAction.COUNT.value)
        value_field = pivot.get('value_field', pivot.get('valueField'))

        if not row or not column:
            raise ValidationError("pivot", "Both row_field and column_field are required")

        try:
            action = PivotAction(str(action_name).strip().lower())
        except ValueError:
            allowed = ', '.join(a.value for a in PivotAction)
            raise ValidationError(
                "pivot.action",
                f"Invalid pivot action: '{action_name}'. Allowed actions: {allowed}"
            )

        if action in (PivotAction.SUM, PivotAction.AVG) and not value_field:
            raise ValidationError(
                "pivot.value_field",
                f"Pivot action '{action.value}' requires a value_field"
            )

        return PivotSpec(
            row_field=DimensionValidator.validate(row, "pivot.row_field"),
            column_field=DimensionValidator.validate(column, "pivot.column_field"),
            action=action,
            value_field=value_field
        )


class FieldFilterValidator:
    """Validator for structured field filters."""

    @staticmethod
    def validate(raw: Dict[str, Any]) -> FieldFilter:
        if not isinstance(raw, dict):
            raise ValidationError("field_filters", "Each field filter must be an object")

        field_name = raw.get('field')
        operator = raw.get('operator')
        value = raw.get('value')

        if not field_name:
            raise ValidationError("field_filters", "Field filter requires a field")

        if operator not in FilterOperators.ALL:
            raise ValidationError(
                "field_filters",
                f"Invalid operator: '{operator}'. "
                f"Allowed operators: {', '.join(FilterOperators.ALL)}"
            )

        if operator not in FilterOperators.UNARY and value in (None, "", []):
            raise ValidationError(
                "field_filters",
                f"Operator '{operator}' on field '{field_name}' requires a value"
            )

        return FieldFilter(field=field_name, operator=operator, value=value)


class IssueKeyValidator:
    """Validator for issue keys."""

    @staticmethod
    def validate(issue_key: str) -> str:
        """
        Validate and normalise an issue key.

        Returns:
            The key upper-cased (e.g. "proj-1" → "PROJ-1")
        """
        if not issue_key:
            raise ValidationError("issue_key", "Issue key cannot be empty")

        issue_key = issue_key.strip()
        if not ISSUE_KEY_PATTERN.match(issue_key):
            raise ValidationError(
                "issue_key",
                f"Invalid issue key format: '{issue_key}'. Expected e.g. PROJ-123"
            )
        return issue_key.upper()


# Convenience functions for common validations

def validate_dimensions(values: Optional[List[Any]]) -> Optional[List[Dimension]]:
    """Validate a group_by list if provided."""
    if not values:
        return None
    return [DimensionValidator.validate(v, "group_by") for v in values]


def validate_pivot(pivot: Optional[Dict[str, Any]]) -> Optional[PivotSpec]:
    """Validate a pivot specification if provided."""
    return PivotValidator.validate(pivot) if pivot else None


def validate_field_filters(filters: Optional[List[Dict[str, Any]]]) -> List[FieldFilter]:
    """Validate a list of field filters."""
    return [FieldFilterValidator.validate(f) for f in (filters or [])]


def validate_positive_id(value: Optional[int], field: str) -> Optional[int]:
    """Validate a board or sprint id if provided."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(field, f"Invalid {field}: {value}. Must be a positive integer.")
    return value


def validate_jql(query: Optional[str]) -> str:
    """Validate that a JQL query was supplied."""
    if not query or not query.strip():
        raise ValidationError("jql", "JQL query cannot be empty")
    return query.strip()


def validate_issue_key(issue_key: str) -> str:
    """Validate an issue key."""
    return IssueKeyValidator.validate(issue_key)


def validate_status_groups(groups: Optional[Dict[str, Any]]) -> Optional[Dict[str, List[str]]]:
    """Validate a custom status-group map (group name → list of status names)."""
    if groups is None:
        return None
    if not isinstance(groups, dict) or not groups:
        raise ValidationError("status_groups", "Status groups must be a non-empty object")

    validated: Dict[str, List[str]] = {}
    for name, statuses in groups.items():
        if isinstance(statuses, str):
            statuses = [statuses]
        if not isinstance(statuses, list) or not all(isinstance(s, str) for s in statuses):
            raise ValidationError(
                "status_groups",
                f"Group '{name}' must map to a list of status names"
            )
        validated[name] = statuses
    return validated


def sanitize_jql_string(value: str) -> str:
    """
    Quote a value for use in a JQL clause.

    Backslashes and double quotes are escaped and the result is wrapped
    in double quotes.
    """
    escaped = str(value).replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'
