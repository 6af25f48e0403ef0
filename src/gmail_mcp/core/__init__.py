"""Core Gmail MCP bridge functionality."""

from gmail_mcp.core.exceptions import (
    ConfigError, DisposalError, GmailMCPError, InvalidUserError, ProviderError,
    ToolsUnavailableError, UpstreamError,
)
from gmail_mcp.core.models import AuthStatus, OAuthInitiation, ToolDefinition, ToolSet

__all__ = [
    "GmailMCPError",
    "ConfigError",
    "DisposalError",
    "InvalidUserError",
    "ProviderError",
    "ToolsUnavailableError",
    "UpstreamError",
    "AuthStatus",
    "OAuthInitiation",
    "ToolDefinition",
    "ToolSet",
]
