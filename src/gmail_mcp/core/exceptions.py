"""
Exception classes for the Gmail MCP bridge.

Defines the error hierarchy shared by the cache, the Composio glue,
the upstream MCP client and the bridge server.
"""

from typing import Any, Dict, Optional


class GmailMCPError(Exception):
    """Base exception for all Gmail MCP bridge errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize GmailMCPError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigError(GmailMCPError):
    """Configuration-related errors."""
    pass


class ProviderError(GmailMCPError):
    """Composio provider call failed."""
    pass


class UpstreamError(GmailMCPError):
    """Upstream MCP server request failed or returned a JSON-RPC error."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        rpc_code: Optional[int] = None,
    ):
        super().__init__(message, error_code, details)
        self.rpc_code = rpc_code


class ToolsUnavailableError(GmailMCPError):
    """Tool set could not be loaded; the caller should retry later."""
    pass


class DisposalError(GmailMCPError):
    """Closing a cached client handle failed.

    Only ever logged; disposal is best-effort cleanup.
    """

    def __init__(
        self,
        message: str,
        key: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, "DISPOSAL_FAILED", {"key": key})
        self.key = key
        self.cause = cause


class InvalidUserError(GmailMCPError):
    """User identifier cannot be used to build cache keys."""
    pass
