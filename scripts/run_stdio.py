#!/usr/bin/env python3
"""
Run MCP server in STDIO mode for Claude Desktop
Reads JIRA_BASE_URL, JIRA_EMAIL and JIRA_API_TOKEN from the environment or .env
"""
import sys
import os

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from jira_sprint_mcp.server import mcp

if __name__ == "__main__":
    # Run with stdio transport (default for MCP)
    mcp.run()
