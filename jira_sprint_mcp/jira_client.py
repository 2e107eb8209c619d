"""
Thin async wrapper over the Jira Cloud REST endpoints the server reads.

Every method returns models from models.py and raises the typed errors
from errors.py; httpx exceptions never escape.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .constants import QueryLimits
from .decorators import jira_operation
from .errors import MalformedQueryError
from .log_sanitizer import sanitize_log_message
from .models import BoardInfo, ChangelogEntry, IssueRecord, SearchPage, SprintInfo

logger = logging.getLogger(__name__)


class JiraClient:
    """Issue search, agile metadata and changelog access"""

    def __init__(self, auth):
        """
        Initialize the client

        Args:
            auth: Initialized JiraAuth instance
        """
        self.auth = auth
        self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        """Lazy load the authenticated HTTP client"""
        if self._http is None:
            self._http = self.auth.get_client()
        return self._http

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.http.get(path, params=params)
        response.raise_for_status()
        return response.json()

    @jira_operation(timeout_seconds=60)
    async def search_issues(
        self,
        jql: str,
        page_size: int = QueryLimits.PAGE_SIZE,
        fields: Optional[List[str]] = None,
        next_page_token: Optional[str] = None
    ) -> SearchPage:
        """
        Fetch one page of issues matching a JQL query

        Args:
            jql: The composed JQL query
            page_size: Issues per page
            fields: Field ids to return for each issue
            next_page_token: Continuation token from the previous page

        Returns:
            SearchPage with the issues and pagination markers

        Raises:
            MalformedQueryError: If Jira rejects the JQL
        """
        body: Dict[str, Any] = {
            "jql": jql,
            "maxResults": page_size,
            "fields": fields or [],
        }
        if next_page_token:
            body["nextPageToken"] = next_page_token

        logger.debug(f"Searching issues: {jql} (token={'yes' if next_page_token else 'no'})")
        response = await self.http.post("/rest/api/3/search/jql", json=body)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if response.status_code == 400:
                raise MalformedQueryError(
                    body=sanitize_log_message(response.text),
                    original_error=e,
                    query=jql
                ) from e
            raise

        data = response.json()
        return SearchPage(
            issues=[IssueRecord.from_api(issue) for issue in data.get("issues") or []],
            total=data.get("total"),
            is_last=data.get("isLast"),
            next_page_token=data.get("nextPageToken"),
        )

    @jira_operation(timeout_seconds=30)
    async def get_sprint(self, sprint_id: int) -> SprintInfo:
        """Get sprint metadata (name, state, dates, origin board)"""
        data = await self._get(f"/rest/agile/1.0/sprint/{sprint_id}")
        return SprintInfo.from_api(data)

    @jira_operation(timeout_seconds=30)
    async def get_board(self, board_id: int) -> BoardInfo:
        """Get a board, including the key of the project it belongs to"""
        data = await self._get(f"/rest/agile/1.0/board/{board_id}")
        return BoardInfo.from_api(data)

    @jira_operation(timeout_seconds=30)
    async def list_boards(
        self,
        start_at: int = 0,
        max_results: int = QueryLimits.BOARD_LIMIT
    ) -> List[BoardInfo]:
        """List agile boards visible to the account (one page)"""
        data = await self._get(
            "/rest/agile/1.0/board",
            params={"startAt": start_at, "maxResults": max_results}
        )
        return [BoardInfo.from_api(board) for board in data.get("values") or []]

    @jira_operation(timeout_seconds=30)
    async def get_active_sprint(self, board_id: int) -> Optional[SprintInfo]:
        """Get the active sprint of a board, or None if no sprint is active"""
        data = await self._get(
            f"/rest/agile/1.0/board/{board_id}/sprint",
            params={"state": "active", "startAt": 0, "maxResults": 1}
        )
        values = data.get("values") or []
        return SprintInfo.from_api(values[0]) if values else None

    @jira_operation(timeout_seconds=30)
    async def list_sprints(
        self,
        board_id: int,
        state: Optional[str] = None,
        start_at: int = 0,
        max_results: int = QueryLimits.SPRINT_PAGE_SIZE
    ) -> Tuple[List[SprintInfo], bool]:
        """
        Get one page of a board's sprints

        Args:
            board_id: Board id
            state: Optional sprint state (active, future or closed)
            start_at: Index of the first sprint to return
            max_results: Sprints per page

        Returns:
            Tuple of (sprints, whether this is the last page)
        """
        params: Dict[str, Any] = {"startAt": start_at, "maxResults": max_results}
        if state:
            params["state"] = state
        data = await self._get(f"/rest/agile/1.0/board/{board_id}/sprint", params=params)
        values = data.get("values") or []
        is_last = data.get("isLast")
        if is_last is None:
            is_last = len(values) < max_results
        return [SprintInfo.from_api(sprint) for sprint in values], bool(is_last)

    @jira_operation(timeout_seconds=30)
    async def get_change_history(
        self,
        issue_key: str,
        page_size: int = QueryLimits.CHANGELOG_PAGE_SIZE,
        start_at: int = 0
    ) -> Tuple[List[ChangelogEntry], int]:
        """
        Get one page of an issue's changelog

        Returns:
            Tuple of (entries, total entries Jira reports for the issue)
        """
        data = await self._get(
            f"/rest/api/3/issue/{issue_key}/changelog",
            params={"startAt": start_at, "maxResults": page_size}
        )
        entries = [ChangelogEntry.from_api(entry) for entry in data.get("values") or []]
        return entries, data.get("total", len(entries))

    @jira_operation(timeout_seconds=30)
    async def get_field_catalog(self) -> List[Dict[str, str]]:
        """Get every field as {id, name}"""
        response = await self.http.get("/rest/api/3/field")
        response.raise_for_status()
        return [
            {"id": item.get("id"), "name": item.get("name")}
            for item in response.json()
        ]

    async def close(self):
        """Release the HTTP client reference; the auth object owns the connection"""
        self._http = None
