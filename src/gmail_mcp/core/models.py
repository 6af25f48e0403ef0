"""
Core data models for the Gmail MCP bridge.
"""

from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

OAUTH_TOOL_NAME = "initiate_gmail_oauth"


class AuthStatus(BaseModel):
    """Result of one Gmail connection check for a user."""

    model_config = ConfigDict(frozen=True)

    connected: bool = Field(..., description="An ACTIVE Gmail connection exists")
    connection_id: Optional[str] = Field(default=None, description="Composio connected account id")

    @property
    def label(self) -> str:
        return "AUTHENTICATED" if self.connected else "NOT AUTHENTICATED"


class ToolDefinition(BaseModel):
    """A tool advertised by an MCP server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )

    def to_mcp(self) -> Dict[str, Any]:
        """Serialize in MCP ``tools/list`` shape."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


ToolSet = Mapping[str, ToolDefinition]


def freeze_tools(tools: Iterable[ToolDefinition]) -> ToolSet:
    """Build a read-only name -> definition mapping; later duplicates win."""
    return MappingProxyType({tool.name: tool for tool in tools})


class OAuthInitiation(BaseModel):
    """A started OAuth flow the user still has to complete in a browser."""

    model_config = ConfigDict(frozen=True)

    redirect_url: str
    connection_id: Optional[str] = None

    @property
    def message(self) -> str:
        return f"Please click this link to connect your Gmail account: {self.redirect_url}"
