"""
Client handle for an upstream MCP server reachable over HTTP.

Speaks JSON-RPC 2.0 over the streamable HTTP transport: every message is a
POST, replies arrive either as a JSON body or as a short server-sent event
stream. The handle is long-lived; ``close()`` ends the upstream session and
is safe to call more than once.
"""

import asyncio
import itertools
import json
import time
from typing import Any, Dict, List, Optional

import aiohttp

from gmail_mcp import __version__
from gmail_mcp.core.exceptions import UpstreamError
from gmail_mcp.core.models import ToolDefinition, ToolSet, freeze_tools
from gmail_mcp.utils.logging import get_logger

logger = get_logger(__name__)

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"
MAX_TOOL_PAGES = 50


def parse_sse_messages(body: str) -> List[Dict[str, Any]]:
    """Decode the JSON payloads of a server-sent event stream."""
    messages = []
    data_lines: List[str] = []
    for line in body.splitlines() + [""]:
        if not line.strip():
            if data_lines:
                payload = "\n".join(data_lines)
                data_lines = []
                try:
                    messages.append(json.loads(payload))
                except json.JSONDecodeError:
                    logger.debug(f"Skipping non-JSON SSE payload: {payload[:80]}")
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    return messages


class MCPClientHandle:
    """
    Connection to one upstream MCP endpoint.

    Typical use::

        handle = await MCPClientHandle(url).connect()
        tools = await handle.list_tools()
        await handle.close()
    """

    def __init__(
        self,
        url: str,
        *,
        client_id: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the handle without touching the network.

        Args:
            url: Upstream MCP endpoint
            client_id: Name reported in ``initialize``
            timeout: Total timeout per request in seconds
            session: Shared aiohttp session; a private one is created otherwise
        """
        self.url = url
        self.client_id = client_id or f"gmail-mcp-{int(time.time() * 1000)}"
        self.timeout = timeout
        self.session_id: Optional[str] = None
        self.server_info: Dict[str, Any] = {}

        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> "MCPClientHandle":
        """Run the MCP initialize handshake."""
        if self._closed:
            raise UpstreamError("Client handle is closed", "HANDLE_CLOSED")
        if self._connected:
            return self

        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

        result = await self._request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": self.client_id, "version": __version__},
        })
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self._notify("notifications/initialized")
        self._connected = True

        logger.info(
            "Connected to upstream MCP server",
            extra={"client_id": self.client_id, "server": self.server_info.get("name")},
        )
        return self

    async def list_tools(self) -> ToolSet:
        """Fetch every tool the upstream advertises, following pagination."""
        self._require_connected()

        tools: List[ToolDefinition] = []
        cursor: Optional[str] = None
        for _ in range(MAX_TOOL_PAGES):
            params = {"cursor": cursor} if cursor else None
            result = await self._request("tools/list", params)
            for raw in result.get("tools", []):
                tools.append(ToolDefinition.model_validate(raw))
            cursor = result.get("nextCursor")
            if not cursor:
                break
        else:
            logger.warning(f"Stopped tool pagination after {MAX_TOOL_PAGES} pages")

        logger.info(f"Loaded {len(tools)} tools from upstream", extra={"client_id": self.client_id})
        return freeze_tools(tools)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke an upstream tool and return its raw ``tools/call`` result."""
        self._require_connected()
        return await self._request("tools/call", {"name": name, "arguments": arguments or {}})

    async def close(self) -> None:
        """End the upstream session. Idempotent."""
        if self._closed:
            return
        self._closed = True

        try:
            if self.session_id and self._session is not None and not self._session.closed:
                try:
                    async with self._session.delete(self.url, headers=self._headers()) as response:
                        logger.debug(f"Upstream session delete returned {response.status}")
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    # The server may already have dropped the session.
                    logger.debug(f"Upstream session delete failed: {e}")
        finally:
            if self._owns_session and self._session is not None:
                await self._session.close()
            self._connected = False

        logger.info("Disconnected from upstream MCP server", extra={"client_id": self.client_id})

    def _require_connected(self) -> None:
        if self._closed:
            raise UpstreamError("Client handle is closed", "HANDLE_CLOSED")
        if not self._connected:
            raise UpstreamError("Client handle is not connected", "NOT_CONNECTED")

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": PROTOCOL_VERSION,
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request_id = next(self._ids)
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            payload["params"] = params

        messages = await self._post(payload)
        reply = next((m for m in messages if m.get("id") == request_id), None)
        if reply is None:
            raise UpstreamError(
                f"No response to {method} from upstream",
                "NO_RESPONSE",
                {"method": method},
            )

        error = reply.get("error")
        if error:
            raise UpstreamError(
                f"Upstream {method} failed: {error.get('message', 'unknown error')}",
                "RPC_ERROR",
                {"method": method, "error": error},
                rpc_code=error.get("code"),
            )
        result = reply.get("result")
        return result if isinstance(result, dict) else {}

    async def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        await self._post(payload)

    async def _post(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self._session is None:
            raise UpstreamError("Client handle is not connected", "NOT_CONNECTED")

        method = payload.get("method")
        try:
            async with self._session.post(self.url, json=payload, headers=self._headers()) as response:
                session_id = response.headers.get(SESSION_HEADER)
                if session_id:
                    self.session_id = session_id

                if response.status == 202:
                    return []
                if response.status >= 400:
                    body = await response.text()
                    raise UpstreamError(
                        f"Upstream returned HTTP {response.status} for {method}",
                        "HTTP_ERROR",
                        {"method": method, "status": response.status, "body": body[:500]},
                    )

                content_type = response.headers.get("Content-Type", "")
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(
                f"Upstream request {method} failed: {e or type(e).__name__}",
                "TRANSPORT_ERROR",
                {"method": method, "url": self.url},
            ) from e

        if not body.strip():
            return []
        if "text/event-stream" in content_type:
            return parse_sse_messages(body)

        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as e:
            raise UpstreamError(
                f"Upstream returned invalid JSON for {method}",
                "PARSE_ERROR",
                {"method": method},
            ) from e
        return decoded if isinstance(decoded, list) else [decoded]


async def open_client(url: str, *, timeout: float = 30.0, client_id: Optional[str] = None) -> MCPClientHandle:
    """Create and connect a handle, closing it again if the handshake fails."""
    handle = MCPClientHandle(url, client_id=client_id, timeout=timeout)
    try:
        return await handle.connect()
    except BaseException:
        await handle.close()
        raise
