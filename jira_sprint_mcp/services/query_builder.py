"""
JQL composition from a base query plus structured filters
"""
import logging
import re
from typing import List, Optional, Tuple

from ..constants import FilterOperators, Sentinels
from ..errors import NotFoundError
from ..models import FieldFilter, FilterSpec
from ..permissions import AccessPolicy
from ..validation import sanitize_jql_string

logger = logging.getLogger(__name__)


_ORDER_BY = re.compile(r'(?<!\S)ORDER\s+BY\b', re.IGNORECASE)
_TOP_LEVEL_OR = re.compile(r'\bOR\b', re.IGNORECASE)


def _quoted_mask(query: str) -> List[bool]:
    """Per character, whether it is part of a quoted JQL string"""
    mask: List[bool] = []
    quote = None
    escaped = False
    for char in query:
        if quote is None:
            if char in ('"', "'"):
                quote = char
            mask.append(quote is not None)
            continue
        mask.append(True)
        if escaped:
            escaped = False
        elif char == '\\':
            escaped = True
        elif char == quote:
            quote = None
    return mask


def split_order_by(query: str) -> Tuple[str, Optional[str]]:
    """
    Split a trailing ORDER BY clause off a JQL query.

    ORDER BY inside a quoted value is part of the value, not a clause.

    Returns:
        Tuple of (query without the clause, the clause or None)
    """
    query = (query or "").strip()
    quoted = _quoted_mask(query)
    for match in _ORDER_BY.finditer(query):
        if not quoted[match.start()]:
            return query[:match.start()].strip(), query[match.start():].strip()
    return query, None


def _has_top_level_or(query: str) -> bool:
    quoted = _quoted_mask(query)
    depth = 0
    for index, char in enumerate(query):
        if quoted[index]:
            continue
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
        elif depth == 0 and _TOP_LEVEL_OR.match(query, index) and (
            index == 0 or not query[index - 1].isalnum()
        ):
            return True
    return False


def _quote_list(values: List[str]) -> str:
    return "(" + ", ".join(sanitize_jql_string(v) for v in values) + ")"


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def field_filter_clause(field_filter: FieldFilter) -> str:
    """Translate one field filter into a JQL clause"""
    field_name = field_filter.field
    operator = field_filter.operator
    value = field_filter.value

    if operator == FilterOperators.EMPTY:
        return f"{field_name} IS EMPTY"
    if operator == FilterOperators.NOT_EMPTY:
        return f"{field_name} IS NOT EMPTY"
    if operator == FilterOperators.IN:
        return f"{field_name} IN {_quote_list(_as_list(value))}"
    if operator == FilterOperators.CONTAINS:
        return f"{field_name} ~ {sanitize_jql_string(value)}"
    if operator == FilterOperators.EQ:
        if isinstance(value, (list, tuple)):
            return f"{field_name} IN {_quote_list(_as_list(value))}"
        return f"{field_name} = {sanitize_jql_string(value)}"
    if operator == FilterOperators.NOT:
        if isinstance(value, (list, tuple)):
            return f"{field_name} NOT IN {_quote_list(_as_list(value))}"
        return f"{field_name} != {sanitize_jql_string(value)}"
    raise ValueError(f"Unsupported filter operator: {operator}")


def _assignee_clause(assignees: List[str]) -> str:
    clauses = [
        "assignee IS EMPTY" if a.strip().lower() == Sentinels.UNASSIGNED_FILTER
        else f"assignee = {sanitize_jql_string(a)}"
        for a in assignees
    ]
    if len(clauses) == 1:
        return clauses[0]
    return "(" + " OR ".join(clauses) + ")"


def build_filter_clauses(spec: FilterSpec, board_project: Optional[str] = None) -> List[str]:
    """
    Translate the structured part of a FilterSpec into JQL clauses.

    Args:
        spec: The filters to translate
        board_project: Project key the spec's board belongs to, if resolved

    Returns:
        Clauses in a fixed order, ready to be ANDed together
    """
    clauses: List[str] = []

    if board_project:
        clauses.append(f"project = {sanitize_jql_string(board_project)}")
    if spec.exclude_resolved:
        clauses.append("resolution IS EMPTY")
    if spec.issue_types:
        clauses.append(f"issuetype IN {_quote_list(spec.issue_types)}")
    if spec.assignees:
        clauses.append(_assignee_clause(spec.assignees))
    if spec.sprint_id is not None:
        clauses.append(f"sprint = {int(spec.sprint_id)}")
    for field_filter in spec.field_filters or []:
        clauses.append(field_filter_clause(field_filter))

    return clauses


def compose_query(spec: FilterSpec, board_project: Optional[str] = None) -> str:
    """
    Compose the final JQL for a FilterSpec.

    The base query's ORDER BY clause, if any, stays at the very end:

        >>> compose_query(FilterSpec("project = X ORDER BY created DESC", exclude_resolved=True))
        'project = X AND resolution IS EMPTY ORDER BY created DESC'
    """
    base, order_by = split_order_by(spec.base_query)
    clauses = build_filter_clauses(spec, board_project)

    if base and clauses and _has_top_level_or(base):
        base = f"({base})"

    parts = ([base] if base else []) + clauses
    query = " AND ".join(parts)

    if order_by:
        query = f"{query} {order_by}" if query else order_by

    logger.debug(f"Composed JQL: {query}")
    return query


class QueryBuilder:
    """Composes JQL, resolving a board filter to its project through the client"""

    def __init__(self, client, policy: Optional[AccessPolicy] = None):
        self.client = client
        self.policy = policy or AccessPolicy()

    async def build(self, spec: FilterSpec) -> str:
        """
        Compose the JQL for a FilterSpec.

        Raises:
            NotFoundError: If the spec's board is hidden by the board allowlist
        """
        board_project = None
        if spec.board_id is not None:
            board = await self.client.get_board(spec.board_id)
            if not self.policy.is_board_allowed(board.id, board.name):
                raise NotFoundError(resource=f"Board {spec.board_id}")
            board_project = board.project_key
            if not board_project:
                logger.warning(f"Board {spec.board_id} has no project location; board filter skipped")
        return compose_query(spec, board_project)
