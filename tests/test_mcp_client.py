"""
Tests for the upstream MCP client handle against a local fake upstream.
"""

import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from gmail_mcp.core.exceptions import UpstreamError
from gmail_mcp.providers.mcp_client import (
    SESSION_HEADER, MCPClientHandle, open_client, parse_sse_messages,
)


class FakeUpstream:
    """Minimal streamable-HTTP MCP server recording what it receives."""

    def __init__(self):
        self.received = []
        self.deleted_sessions = []
        self.fail_initialize = False

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/mcp", self.handle_post)
        app.router.add_delete("/mcp", self.handle_delete)
        return app

    async def handle_post(self, request: web.Request) -> web.Response:
        message = await request.json()
        self.received.append({"message": message, "session": request.headers.get(SESSION_HEADER)})
        method = message.get("method")

        if "id" not in message:
            return web.Response(status=202)
        if method == "initialize":
            if self.fail_initialize:
                return web.Response(status=503, text="maintenance")
            return web.json_response(
                self.reply(message, {"protocolVersion": "2025-03-26", "serverInfo": {"name": "composio"}}),
                headers={SESSION_HEADER: "upstream-session-1"},
            )
        if method == "tools/list":
            cursor = (message.get("params") or {}).get("cursor")
            if cursor is None:
                return web.json_response(self.reply(message, {
                    "tools": [{"name": "GMAIL_SEND_EMAIL", "description": "Send", "inputSchema": {"type": "object"}}],
                    "nextCursor": "page-2",
                }))
            body = "event: message\ndata: " + json.dumps(self.reply(message, {
                "tools": [{"name": "GMAIL_FETCH_EMAILS", "description": "Fetch"}],
            })) + "\n\n"
            return web.Response(text=body, content_type="text/event-stream")
        if method == "tools/call":
            name = message["params"]["name"]
            if name == "MISSING":
                return web.json_response({
                    "jsonrpc": "2.0", "id": message["id"],
                    "error": {"code": -32602, "message": "Unknown tool"},
                })
            return web.json_response(self.reply(message, {
                "content": [{"type": "text", "text": f"ran {name} with {message['params']['arguments']}"}],
            }))
        return web.json_response({"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "nope"}})

    async def handle_delete(self, request: web.Request) -> web.Response:
        self.deleted_sessions.append(request.headers.get(SESSION_HEADER))
        return web.Response(status=200)

    @staticmethod
    def reply(message, result):
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    server = TestServer(fake.app())
    await server.start_server()
    fake.url = str(server.make_url("/mcp"))
    try:
        yield fake
    finally:
        await server.close()


class TestParseSSE:
    """Test server-sent event decoding."""

    def test_multiple_events(self):
        body = 'event: message\ndata: {"id": 1}\n\ndata: {"id": 2}\n\n'

        assert parse_sse_messages(body) == [{"id": 1}, {"id": 2}]

    def test_multiline_data_and_garbage(self):
        body = 'data: {"id":\ndata: 3}\n\ndata: not json\n\n: comment\n'

        assert parse_sse_messages(body) == [{"id": 3}]

    def test_trailing_event_without_blank_line(self):
        assert parse_sse_messages('data: {"id": 4}') == [{"id": 4}]


class TestMCPClientHandle:
    """Test the handle against the fake upstream."""

    @pytest.mark.asyncio
    async def test_connect_handshake(self, upstream):
        handle = await open_client(upstream.url, client_id="test-client")
        try:
            assert handle.connected
            assert handle.session_id == "upstream-session-1"
            assert handle.server_info == {"name": "composio"}

            methods = [r["message"]["method"] for r in upstream.received]
            assert methods == ["initialize", "notifications/initialized"]
            assert upstream.received[0]["message"]["params"]["clientInfo"]["name"] == "test-client"
            assert upstream.received[1]["session"] == "upstream-session-1"
        finally:
            await handle.close()

    @pytest.mark.asyncio
    async def test_list_tools_follows_pagination(self, upstream):
        handle = await open_client(upstream.url)
        try:
            tools = await handle.list_tools()
        finally:
            await handle.close()

        assert list(tools) == ["GMAIL_SEND_EMAIL", "GMAIL_FETCH_EMAILS"]
        assert tools["GMAIL_SEND_EMAIL"].input_schema == {"type": "object"}
        with pytest.raises(TypeError):
            tools["NEW"] = tools["GMAIL_SEND_EMAIL"]

    @pytest.mark.asyncio
    async def test_call_tool(self, upstream):
        handle = await open_client(upstream.url)
        try:
            result = await handle.call_tool("GMAIL_SEND_EMAIL", {"to": "bob@example.com"})
        finally:
            await handle.close()

        assert result["content"][0]["text"].startswith("ran GMAIL_SEND_EMAIL")

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self, upstream):
        handle = await open_client(upstream.url)
        try:
            with pytest.raises(UpstreamError) as exc_info:
                await handle.call_tool("MISSING")
        finally:
            await handle.close()

        assert exc_info.value.error_code == "RPC_ERROR"
        assert exc_info.value.rpc_code == -32602

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, upstream):
        handle = await open_client(upstream.url)

        await handle.close()
        await handle.close()

        assert handle.closed
        assert upstream.deleted_sessions == ["upstream-session-1"]
        with pytest.raises(UpstreamError) as exc_info:
            await handle.list_tools()
        assert exc_info.value.error_code == "HANDLE_CLOSED"

    @pytest.mark.asyncio
    async def test_not_connected(self, upstream):
        handle = MCPClientHandle(upstream.url)

        with pytest.raises(UpstreamError) as exc_info:
            await handle.call_tool("GMAIL_SEND_EMAIL")

        assert exc_info.value.error_code == "NOT_CONNECTED"
        await handle.close()

    @pytest.mark.asyncio
    async def test_http_error_on_connect(self, upstream):
        upstream.fail_initialize = True

        with pytest.raises(UpstreamError) as exc_info:
            await open_client(upstream.url)

        assert exc_info.value.error_code == "HTTP_ERROR"
        assert exc_info.value.details["status"] == 503

    @pytest.mark.asyncio
    async def test_transport_error(self, upstream):
        with pytest.raises(UpstreamError) as exc_info:
            await open_client("http://127.0.0.1:1/mcp", timeout=2.0)

        assert exc_info.value.error_code == "TRANSPORT_ERROR"
