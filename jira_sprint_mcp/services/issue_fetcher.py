"""
Token-based pagination over issue search with allowlist filtering
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..constants import FieldNames, QueryLimits, Sentinels
from ..models import IssueRecord

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Issues retrieved by one paginated search"""
    issues: List[IssueRecord] = field(default_factory=list)
    total: int = 0
    retrieved: int = 0
    pages: int = 0
    truncated: bool = False

    @property
    def analyzed(self) -> int:
        return len(self.issues)


def _issue_type_name(issue: IssueRecord) -> str:
    issue_type = issue.fields.get(FieldNames.ISSUE_TYPE) or {}
    return issue_type.get('name') or Sentinels.UNKNOWN


def _request_fields(fields: List[str]) -> List[str]:
    return list(dict.fromkeys(list(fields) + [FieldNames.ISSUE_TYPE]))


class IssueFetcher:
    """
    Drives issue search page by page.

    Stops on an empty page, on the backend's last-page marker, when no
    continuation token comes back, or once max_pages pages were read.
    Issues failing either allowlist predicate are dropped after each page.
    """

    def __init__(
        self,
        client,
        is_project_allowed: Callable[[str], bool],
        is_issue_type_allowed: Callable[[str], bool],
        page_size: int = QueryLimits.PAGE_SIZE,
        max_pages: int = QueryLimits.MAX_PAGES
    ):
        self.client = client
        self.is_project_allowed = is_project_allowed
        self.is_issue_type_allowed = is_issue_type_allowed
        self.page_size = page_size
        self.max_pages = max_pages

    def is_allowed(self, issue: IssueRecord) -> bool:
        return (
            self.is_project_allowed(issue.project_key)
            and self.is_issue_type_allowed(_issue_type_name(issue))
        )

    async def fetch(
        self,
        jql: str,
        fields: List[str],
        max_pages: Optional[int] = None
    ) -> FetchResult:
        """
        Fetch every allowed issue matching the query, up to the page cap

        Args:
            jql: Composed JQL query
            fields: Field ids to request; issuetype is always added so the
                    issue type allowlist can be applied
            max_pages: Override of the page cap for this call

        Returns:
            FetchResult; total is the backend's match count, or the number
            of issues retrieved when the backend does not report one
        """
        page_cap = max_pages if max_pages is not None else self.max_pages
        request_fields = _request_fields(fields)

        result = FetchResult()
        reported_total: Optional[int] = None
        token: Optional[str] = None

        while result.pages < page_cap:
            page = await self.client.search_issues(
                jql,
                page_size=self.page_size,
                fields=request_fields,
                next_page_token=token
            )
            result.pages += 1

            if reported_total is None and page.total is not None:
                reported_total = page.total

            if not page.issues:
                break

            result.retrieved += len(page.issues)
            result.issues.extend(issue for issue in page.issues if self.is_allowed(issue))

            token = page.next_page_token
            if page.is_last or not token:
                break
        else:
            result.truncated = True
            logger.info(
                f"Stopped after {page_cap} pages ({result.retrieved} issues retrieved); "
                f"results are a sample"
            )

        result.total = reported_total if reported_total is not None else result.retrieved
        logger.debug(
            f"Fetched {result.analyzed} allowed of {result.retrieved} retrieved issues "
            f"(total {result.total}) in {result.pages} page(s)"
        )
        return result

    async def fetch_page(self, jql: str, fields: List[str], page_size: int) -> FetchResult:
        """
        Fetch the first page only, for listings that show a bounded number of issues

        Returns:
            FetchResult with truncated set when the backend has more pages
        """
        page = await self.client.search_issues(
            jql,
            page_size=page_size,
            fields=_request_fields(fields)
        )
        issues = [issue for issue in page.issues if self.is_allowed(issue)]
        return FetchResult(
            issues=issues,
            total=page.total if page.total is not None else len(page.issues),
            retrieved=len(page.issues),
            pages=1,
            truncated=bool(page.next_page_token) and not page.is_last
        )
