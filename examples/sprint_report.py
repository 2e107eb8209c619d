#!/usr/bin/env python
"""Print backlog statistics and a sprint report for the active sprint of a board"""
import asyncio
import sys

from dotenv import load_dotenv

from jira_sprint_mcp.auth import JiraAuth
from jira_sprint_mcp.config import ServerConfig
from jira_sprint_mcp.permissions import AccessPolicy
from jira_sprint_mcp.service_manager import ServiceManager


async def main(board_id: int):
    # Load environment
    load_dotenv()
    config = ServerConfig.from_env()

    print(f"🔗 Jira: {config.base_url}")
    print(f"📋 Board: {board_id}\n")

    auth = JiraAuth(config.base_url, config.email, config.api_token, timeout=config.request_timeout)
    await auth.initialize()

    manager = ServiceManager(
        auth,
        policy=AccessPolicy.from_env_values(
            config.allowed_boards, config.allowed_projects, config.allowed_issue_types
        ),
        default_project=config.default_project,
        story_points_field=config.story_points_field,
        inflow_concurrency=config.inflow_concurrency
    )

    try:
        active = await manager.get_sprint_service().get_active_sprint(board_id)
        sprint = active['sprint']
        project = active['board']['project_key']
        if not sprint:
            print("No active sprint on this board")
            return

        print("=" * 70)
        print(f"📊 BACKLOG: {project}")
        print("=" * 70)
        stats = await manager.get_backlog_service().get_backlog_stats(
            f'project = "{project}"', exclude_resolved=True
        )
        print(f"  Total: {stats['total']} (analyzed {stats['analyzed']})")
        for status, count in sorted(stats['by_status'].items()):
            print(f"  {status}: {count}")

        print(f"\n{'=' * 70}")
        print(f"🏃 SPRINT: {sprint['name']}")
        print("=" * 70)
        report = await manager.get_sprint_report_service().get_sprint_report(
            sprint['id'],
            project=project,
            include_triage=True,
            include_inflow=True
        )
        for group in report['status_groups']:
            current = group['current']
            print(f"  {group['name']}: {current['issues']} issues, {current['story_points']} points")

        if report['triage']:
            print(f"\n  Triage: {report['triage']['current']}")
        if report['inflow']:
            print(f"  Inflow: {report['inflow']['current']}")
        bugs = report['bugs']['current']
        print(f"  Bugs: {bugs['fixed']} fixed, {bugs['not_fixed']} not fixed")
        if report['sampled']:
            print("\n  ⚠️  Some sections were sampled (page cap reached)")
    finally:
        await auth.close()


if __name__ == '__main__':
    if len(sys.argv) != 2:
        print("Usage: python examples/sprint_report.py <board_id>")
        sys.exit(1)
    asyncio.run(main(int(sys.argv[1])))
