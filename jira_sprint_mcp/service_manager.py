"""
Service Manager for the Jira sprint MCP server
Provides lazy-loaded service instances sharing one client and one access policy
"""
from datetime import tzinfo
from typing import Any, Dict, Optional

from .auth import JiraAuth
from .jira_client import JiraClient
from .permissions import AccessPolicy
from .services.backlog_service import BacklogService
from .services.sprint_report_service import SprintReportService
from .services.sprint_service import SprintService


class ServiceManager:
    """
    Manages the service instances behind the MCP tools

    Features:
    - Single authenticated client shared by every service
    - Lazy-loading: services created only when first accessed
    - One access policy applied everywhere
    - Usage statistics for the monitoring tools

    Example:
        auth = JiraAuth(base_url, email, api_token)
        await auth.initialize()

        manager = ServiceManager(auth, policy=AccessPolicy())

        # Created on first access, reused afterwards
        backlog = manager.get_backlog_service()
        reports = manager.get_sprint_report_service()
    """

    def __init__(
        self,
        auth: JiraAuth,
        policy: Optional[AccessPolicy] = None,
        default_project: Optional[str] = None,
        story_points_field: Optional[str] = None,
        inflow_concurrency: int = 1,
        jql_timezone: Optional[tzinfo] = None
    ):
        """
        Initialize service manager

        Args:
            auth: Initialized JiraAuth instance
            policy: Allowlists; everything is allowed when omitted
            default_project: Project key used by reports that name none
            story_points_field: Story points field id used by reports that name none
            inflow_concurrency: Changelog fetch workers for inflow detection
            jql_timezone: Time zone used for dates written into report JQL
        """
        if not auth or not auth.connection:
            raise ValueError(
                "ServiceManager requires an initialized JiraAuth instance. "
                "Call auth.initialize() before creating ServiceManager."
            )

        self.auth = auth
        self.policy = policy or AccessPolicy()
        self.default_project = default_project
        self.story_points_field = story_points_field
        self.inflow_concurrency = inflow_concurrency
        self.jql_timezone = jql_timezone

        self.client = JiraClient(auth)
        self._services: Dict[str, Any] = {}

        # Statistics
        self._service_creation_count = 0
        self._cache_hit_count = 0

    def _get_or_create(self, name: str, factory):
        if name in self._services:
            self._cache_hit_count += 1
            return self._services[name]

        service = factory()
        self._services[name] = service
        self._service_creation_count += 1
        return service

    def get_backlog_service(self) -> BacklogService:
        """Get or create the BacklogService"""
        return self._get_or_create(
            "backlog",
            lambda: BacklogService(self.client, self.policy)
        )

    def get_sprint_service(self) -> SprintService:
        """Get or create the SprintService"""
        return self._get_or_create(
            "sprint",
            lambda: SprintService(self.client, self.policy)
        )

    def get_sprint_report_service(self) -> SprintReportService:
        """Get or create the SprintReportService; it shares the BacklogService"""
        return self._get_or_create(
            "sprint_report",
            lambda: SprintReportService(
                self.client,
                self.get_backlog_service(),
                default_project=self.default_project,
                default_story_points_field=self.story_points_field,
                inflow_concurrency=self.inflow_concurrency,
                jql_timezone=self.jql_timezone
            )
        )

    def get_loaded_services(self):
        """Names of the services created so far"""
        return sorted(self._services)

    def clear_all_services(self) -> None:
        """
        Drop every service instance
        Useful for testing or after the allowlists change
        """
        self._services.clear()

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get service manager statistics

        Returns:
            Dictionary with usage statistics:
            - loaded_services: Names of the services created so far
            - service_creations: Total services created (including cleared)
            - cache_hits: Number of times an existing service was returned
            - cache_hit_rate_percent: Percentage of cache hits vs total requests
            - access_policy: Active allowlist restrictions
        """
        total_requests = self._service_creation_count + self._cache_hit_count
        cache_hit_rate = (
            (self._cache_hit_count / total_requests * 100)
            if total_requests > 0 else 0.0
        )

        return {
            "loaded_services": self.get_loaded_services(),
            "total_services": len(self._services),
            "service_creations": self._service_creation_count,
            "cache_hits": self._cache_hit_count,
            "cache_hit_rate_percent": round(cache_hit_rate, 2),
            "default_project": self.default_project,
            "story_points_field": self.story_points_field,
            "inflow_concurrency": self.inflow_concurrency,
            "jql_timezone": str(self.jql_timezone) if self.jql_timezone else None,
            "access_policy": self.policy.describe()
        }

    def __repr__(self) -> str:
        """String representation for debugging"""
        stats = self.get_statistics()
        return (
            f"ServiceManager(services={stats['total_services']}, "
            f"default_project='{self.default_project}')"
        )
