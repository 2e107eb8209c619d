"""
Board and sprint lookups for Jira agile boards
"""
import logging
from typing import Any, Dict, List, Optional

from ..constants import ISSUE_LIST_FIELDS, QueryLimits, SprintStates
from ..decorators import log_execution
from ..errors import NotFoundError
from ..models import BoardInfo, SprintInfo
from ..permissions import AccessPolicy
from ..validation import ValidationError, validate_positive_id
from .field_extractor import issue_summary
from .issue_fetcher import IssueFetcher

logger = logging.getLogger(__name__)


async def load_visible_board(client, policy: AccessPolicy, board_id: int) -> BoardInfo:
    """
    Load a board, treating one hidden by the board allowlist as missing

    Raises:
        NotFoundError: If the board does not exist or the allowlist hides it
    """
    board = await client.get_board(board_id)
    if not policy.is_board_allowed(board.id, board.name):
        raise NotFoundError(resource=f"Board {board_id}")
    return board


async def load_visible_sprint(client, policy: AccessPolicy, sprint_id: int) -> SprintInfo:
    """
    Load a sprint whose origin board passes the board allowlist

    The board is only looked up when the allowlist restricts boards.

    Raises:
        NotFoundError: If the sprint does not exist or its board is hidden
    """
    sprint = await client.get_sprint(sprint_id)
    if policy.boards.unrestricted:
        return sprint

    if sprint.origin_board_id is None:
        raise NotFoundError(resource=f"Sprint {sprint_id}")
    board = await client.get_board(sprint.origin_board_id)
    if not policy.is_board_allowed(board.id, board.name):
        raise NotFoundError(resource=f"Sprint {sprint_id}")
    return sprint


def _sprint_listing_key(sprint: SprintInfo):
    # Most recent start first, sprints without a start date last
    started_at = sprint.started_at
    return (started_at is None, -started_at.timestamp() if started_at else 0)


class SprintService:
    """Service for board and sprint operations, filtered by the board allowlist"""

    def __init__(self, client, policy: AccessPolicy = None):
        """
        Initialize sprint service

        Args:
            client: JiraClient instance
            policy: Allowlists; boards gate every lookup, projects and issue
                    types filter the issue listings
        """
        self.client = client
        self.policy = policy or AccessPolicy()
        self.fetcher = IssueFetcher(
            client,
            is_project_allowed=self.policy.is_project_allowed,
            is_issue_type_allowed=self.policy.is_issue_type_allowed
        )

    async def list_boards(self) -> Dict[str, Any]:
        """
        List the boards the allowlist permits

        Returns:
            Dictionary with boards (id, name, type, project key) and their count
        """
        boards = await self.client.list_boards()
        allowed = [
            board for board in boards
            if self.policy.is_board_allowed(board.id, board.name)
        ]
        if len(allowed) < len(boards):
            logger.debug(f"Board allowlist hid {len(boards) - len(allowed)} board(s)")

        return {
            'boards': [board.to_dict() for board in allowed],
            'total': len(allowed),
        }

    async def get_active_sprint(self, board_id: int) -> Dict[str, Any]:
        """
        Get the active sprint of a board

        Args:
            board_id: Board id

        Returns:
            Dictionary with the board and its active sprint (None if no sprint is active)

        Raises:
            NotFoundError: If the board does not exist or the allowlist hides it
        """
        board_id = validate_positive_id(board_id, "board_id")
        board = await load_visible_board(self.client, self.policy, board_id)

        sprint = await self.client.get_active_sprint(board_id)
        return {
            'board': board.to_dict(),
            'sprint': sprint.to_dict() if sprint else None,
        }

    @log_execution(level=logging.DEBUG, log_args=True)
    async def list_sprints(
        self,
        board_id: Optional[int] = None,
        project_key: Optional[str] = None,
        state: Optional[str] = None,
        start_at: int = 0,
        max_results: int = QueryLimits.SPRINT_PAGE_SIZE
    ) -> Dict[str, Any]:
        """
        List sprints of one board, or of every allowed board of a project

        Each state is paged separately, because Jira returns the oldest
        sprints of a state first. Sprints are de-duplicated, sorted by start
        date (most recent first, undated last), then sliced.

        Args:
            board_id: Board to list
            project_key: Project whose boards are listed when no board is given
            state: Only sprints in this state (active, future or closed)
            start_at: Offset into the sorted sprints
            max_results: Sprints to return

        Returns:
            Dictionary with sprints, total, start_at, max_results and has_more

        Raises:
            ValidationError: If neither board_id nor project_key is given
            NotFoundError: If the board is hidden or the project has no allowed board
        """
        if state is not None and state not in SprintStates.ALL:
            raise ValidationError(
                "state",
                f"Invalid sprint state '{state}'. Options: {', '.join(SprintStates.ALL)}"
            )
        if start_at < 0:
            raise ValidationError("start_at", "start_at must not be negative")
        max_results = validate_positive_id(max_results, "max_results")

        if board_id is not None:
            board_id = validate_positive_id(board_id, "board_id")
            await load_visible_board(self.client, self.policy, board_id)
            board_ids = [board_id]
        elif project_key:
            project_key = project_key.strip().upper()
            boards = await self.client.list_boards()
            board_ids = [
                board.id for board in boards
                if (board.project_key or '').upper() == project_key
                and self.policy.is_board_allowed(board.id, board.name)
            ]
            if not board_ids:
                raise NotFoundError(resource=f"Boards for project {project_key}")
        else:
            raise ValidationError("board_id", "Either board_id or project_key is required")

        sprints: List[SprintInfo] = []
        seen = set()
        for current_board in board_ids:
            for sprint_state in ([state] if state else SprintStates.ALL):
                for sprint in await self._board_sprints(current_board, sprint_state):
                    if sprint.id not in seen:
                        seen.add(sprint.id)
                        sprints.append(sprint)

        sprints.sort(key=_sprint_listing_key)
        page = sprints[start_at:start_at + max_results]

        return {
            'sprints': [
                {
                    **sprint.to_dict(),
                    'complete_date': sprint.complete_date,
                    'board_id': sprint.origin_board_id,
                }
                for sprint in page
            ],
            'total': len(sprints),
            'start_at': start_at,
            'max_results': max_results,
            'has_more': start_at + max_results < len(sprints),
        }

    async def _board_sprints(self, board_id: int, state: str) -> List[SprintInfo]:
        page_size = QueryLimits.SPRINT_PAGE_SIZE
        sprints: List[SprintInfo] = []
        start_at = 0
        while True:
            values, is_last = await self.client.list_sprints(
                board_id,
                state=state,
                start_at=start_at,
                max_results=page_size
            )
            sprints.extend(values)
            if is_last or len(values) < page_size:
                return sprints
            start_at += page_size

    async def get_sprint_issues(
        self,
        sprint_id: int,
        max_results: int = QueryLimits.SEARCH_DEFAULT_RESULTS
    ) -> Dict[str, Any]:
        """
        List the issues of a sprint

        Args:
            sprint_id: Sprint id
            max_results: Maximum number of issues to return

        Returns:
            Dictionary with the sprint id, issue summaries and Jira's total

        Raises:
            NotFoundError: If the sprint does not exist or its board is hidden
        """
        return await self._sprint_issues(sprint_id, max_results, mine=False)

    async def get_my_sprint_issues(
        self,
        sprint_id: int,
        max_results: int = QueryLimits.MY_SPRINT_DEFAULT_RESULTS
    ) -> Dict[str, Any]:
        """
        List the sprint's issues assigned to the API account, by status then priority
        """
        return await self._sprint_issues(sprint_id, max_results, mine=True)

    async def _sprint_issues(self, sprint_id: int, max_results: int, mine: bool) -> Dict[str, Any]:
        sprint_id = validate_positive_id(sprint_id, "sprint_id")
        max_results = validate_positive_id(max_results, "max_results")
        await load_visible_sprint(self.client, self.policy, sprint_id)

        jql = f"sprint = {sprint_id}"
        if mine:
            jql += " AND assignee = currentUser() ORDER BY status ASC, priority DESC"

        result = await self.fetcher.fetch_page(jql, ISSUE_LIST_FIELDS, max_results)
        return {
            'sprint_id': sprint_id,
            'issues': [issue_summary(issue) for issue in result.issues],
            'total': result.total,
            'has_more': result.truncated,
        }
