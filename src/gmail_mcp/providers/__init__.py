"""
External collaborators: Composio auth and upstream MCP client handles.
"""

from .composio_auth import GmailAuth, create_composio_client
from .mcp_client import MCPClientHandle, open_client

__all__ = ['GmailAuth', 'create_composio_client', 'MCPClientHandle', 'open_client']
