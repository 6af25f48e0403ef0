"""
Gmail MCP Bridge - Gmail tools from Composio behind an MCP endpoint.

Caches per-user Gmail auth status, upstream MCP client handles and their
tool sets, and re-exposes the tools over HTTP.
"""

__version__ = "1.0.0"
__description__ = "Gmail tools from Composio exposed through an MCP server"

# Public API
from gmail_mcp.core.exceptions import GmailMCPError
from gmail_mcp.core.models import AuthStatus, OAuthInitiation, ToolDefinition

__all__ = [
    "__version__",
    "__description__",
    "GmailMCPError",
    "AuthStatus",
    "OAuthInitiation",
    "ToolDefinition",
]
