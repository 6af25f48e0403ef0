"""
Per-user Gmail tool access backed by the expiring resource cache.

Auth status is cached per user; each auth state gets its own upstream
client handle and tool set, registered as dependents of the user's auth
entry so that an auth change tears them down.
"""

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from gmail_mcp.core.cache import CacheKeys, CacheKind, ExpiringResourceCache
from gmail_mcp.core.exceptions import InvalidUserError, ToolsUnavailableError, UpstreamError
from gmail_mcp.core.models import (
    OAUTH_TOOL_NAME, AuthStatus, OAuthInitiation, ToolDefinition, ToolSet,
)
from gmail_mcp.providers.composio_auth import GmailAuth, create_composio_client
from gmail_mcp.providers.mcp_client import MCPClientHandle, open_client
from gmail_mcp.utils.config import Config
from gmail_mcp.utils.logging import get_logger

logger = get_logger(__name__)

ClientFactory = Callable[[str, str], Awaitable[MCPClientHandle]]

# Upstream failures after which a handle is assumed dead.
_BROKEN_HANDLE_CODES = {"TRANSPORT_ERROR", "HTTP_ERROR", "HANDLE_CLOSED", "NOT_CONNECTED"}


def oauth_tool_definition() -> ToolDefinition:
    """The locally handled tool that starts the Gmail OAuth flow."""
    return ToolDefinition(
        name=OAUTH_TOOL_NAME,
        description=(
            "Initiates Gmail OAuth flow and returns the authorization URL. "
            "Use this to connect your Gmail account so the Gmail tools can access your data."
        ),
        input_schema={"type": "object", "properties": {}},
    )


def text_result(text: str, structured: Optional[Dict[str, Any]] = None, is_error: bool = False) -> Dict[str, Any]:
    """Build a ``tools/call`` result with one text block."""
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}], "isError": is_error}
    if structured is not None:
        result["structuredContent"] = structured
    return result


class GmailToolService:
    """
    Resolves auth status, client handles and tool sets for a user.

    The cache is passed in; the service never creates a module-level one.
    """

    def __init__(
        self,
        cache: ExpiringResourceCache,
        config: Config,
        composio: Any = None,
        client_factory: Optional[ClientFactory] = None,
        keys: Optional[CacheKeys] = None,
    ):
        """
        Initialize the service.

        Args:
            cache: Shared expiring resource cache
            config: Loaded configuration
            composio: Composio SDK client; created from config on first use if None
            client_factory: Coroutine ``(url, user_id) -> handle``; defaults to ``open_client``
            keys: Cache key builder
        """
        self.cache = cache
        self.config = config
        self.keys = keys or CacheKeys()
        self._composio = composio
        self._client_factory = client_factory or self._open_client

    def resolve_user(self, user_id: Optional[str]) -> str:
        """
        Fall back to the configured default user.

        Raises:
            InvalidUserError: If the id cannot be used in cache keys
        """
        user = user_id.strip() if user_id and user_id.strip() else self.config.default_user_id
        try:
            self.keys.auth(user)
        except ValueError as e:
            raise InvalidUserError(str(e), "INVALID_USER", {"user_id": user}) from e
        return user

    def auth_for(self, user_id: str) -> GmailAuth:
        if self._composio is None:
            self._composio = create_composio_client(self.config.composio)
        return GmailAuth(user_id, self._composio, self.config.composio)

    async def _open_client(self, url: str, user_id: str) -> MCPClientHandle:
        return await open_client(
            url,
            timeout=self.config.composio.request_timeout,
            client_id=f"gmail-mcp-{user_id}-{int(time.time() * 1000)}",
        )

    # ------------------------------------------------------------------
    # Cached lookups
    # ------------------------------------------------------------------

    async def get_auth_status(self, user_id: str) -> AuthStatus:
        """Cached Gmail connection status for a user."""
        auth = self.auth_for(user_id)
        status = await self.cache.get_or_fetch(
            CacheKind.AUTH_STATUS, self.keys.auth(user_id), auth.check_connection
        )
        logger.debug(f"User {user_id} auth status: {status.label}")
        return status

    async def _get_client(self, user_id: str) -> Tuple[str, MCPClientHandle]:
        status = await self.get_auth_status(user_id)
        key = self.keys.client(user_id, status.connection_id)
        url = self.config.composio.mcp_url_for(status.connection_id)

        async def connect() -> MCPClientHandle:
            logger.info(f"Creating upstream MCP client for {key}")
            return await self._client_factory(url, user_id)

        try:
            handle = await self.cache.get_or_fetch(
                CacheKind.CLIENT, key, connect,
                parent=(CacheKind.AUTH_STATUS, self.keys.auth(user_id)),
            )
        except UpstreamError as e:
            raise ToolsUnavailableError(
                "Gmail tools are temporarily unavailable, retry shortly",
                error_code="UPSTREAM_CONNECT_FAILED",
                details={"user_id": user_id, "cause": str(e)},
            ) from e
        return key, handle

    async def get_tools(self, user_id: str) -> ToolSet:
        """
        Upstream tool set for the user's current auth state.

        Raises:
            ToolsUnavailableError: If the upstream could not be reached or
                listed; the failed handle is disposed and nothing is cached
            ProviderError: If the auth status check itself failed
        """
        key, handle = await self._get_client(user_id)
        try:
            return await self.cache.get_or_fetch(CacheKind.TOOL_SET, key, handle.list_tools)
        except Exception as e:
            logger.error(f"Failed to load tools for {key}: {e}")
            await self._drop_handle(key, handle)
            raise ToolsUnavailableError(
                "Gmail tools are temporarily unavailable, retry shortly",
                error_code="TOOLS_UNAVAILABLE",
                details={"user_id": user_id, "cause": str(e)},
            ) from e

    async def list_tools(self, user_id: str) -> List[ToolDefinition]:
        """The OAuth tool followed by the user's upstream tools."""
        tools = await self.get_tools(user_id)
        return [oauth_tool_definition()] + [t for name, t in tools.items() if name != OAUTH_TOOL_NAME]

    async def call_tool(
        self,
        user_id: str,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run the OAuth tool locally or forward the call upstream."""
        if name == OAUTH_TOOL_NAME:
            initiation = await self.initiate_oauth(user_id)
            return text_result(initiation.message, {
                "oauthUrl": initiation.redirect_url,
                "message": (
                    "Please click the OAuth URL above to authorize Gmail access. After "
                    "authorization, the Gmail tools will be able to access your Gmail data."
                ),
            })

        key, handle = await self._get_client(user_id)
        try:
            return await handle.call_tool(name, arguments)
        except UpstreamError as e:
            if e.error_code in _BROKEN_HANDLE_CODES:
                await self._drop_handle(key, handle)
            raise

    async def _drop_handle(self, key: str, handle: MCPClientHandle) -> None:
        """Invalidate a failed handle, unless the cache already holds a different one."""
        if self.cache.peek(CacheKind.CLIENT, key) is handle:
            await self.cache.invalidate(CacheKind.CLIENT, key)

    # ------------------------------------------------------------------
    # Auth lifecycle
    # ------------------------------------------------------------------

    async def initiate_oauth(self, user_id: str) -> OAuthInitiation:
        """Start OAuth and forget the user's cached auth status."""
        initiation = await self.auth_for(user_id).initiate_connection()
        await self.cache.invalidate(CacheKind.AUTH_STATUS, self.keys.auth(user_id))
        logger.info(f"Cleared auth cache for {user_id} after OAuth initiation")
        return initiation

    async def on_authorization_completed(self, user_id: str) -> None:
        """Drop the user's auth status and everything derived from it."""
        await self.cache.invalidate(CacheKind.AUTH_STATUS, self.keys.auth(user_id))
        await self.cache.invalidate(CacheKind.CLIENT, self.keys.client(user_id, None))
        logger.info(f"Invalidated cached Gmail state for {user_id}")

    async def shutdown(self) -> None:
        """Dispose every client handle and clear the cache."""
        await self.cache.invalidate_all()
