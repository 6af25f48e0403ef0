"""
MCP bridge server.

Exposes the OAuth tool and the user's upstream Gmail tools on a JSON-RPC
endpoint, plus health, statistics and an OAuth completion callback. The
server owns the process-wide cache and disposes it on shutdown.
"""

import asyncio
import json
import secrets
import signal
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web
from aiohttp.web import Application, Request, Response
from pydantic import ValidationError

from gmail_mcp import __version__
from gmail_mcp.core.cache import ExpiringResourceCache
from gmail_mcp.core.exceptions import GmailMCPError, InvalidUserError
from gmail_mcp.core.gmail_service import GmailToolService
from gmail_mcp.providers.mcp_client import PROTOCOL_VERSION, SESSION_HEADER
from gmail_mcp.server.models import (
    INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR,
    SERVER_ERROR, RPCError, RPCRequest, rpc_error, rpc_result,
)
from gmail_mcp.utils.config import Config, get_config
from gmail_mcp.utils.logging import get_logger

logger = get_logger(__name__)

USER_HEADER = "X-User-ID"

MethodHandler = Callable[[RPCRequest], Awaitable[Any]]


def new_session_id() -> str:
    return f"session-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


def build_cache(config: Config) -> ExpiringResourceCache:
    """Process-wide cache sized from configuration."""
    return ExpiringResourceCache(
        ttl_seconds=config.cache.ttl_seconds,
        single_flight=config.cache.single_flight,
    )


class GmailMCPServer:
    """
    HTTP server for the Gmail MCP bridge.

    One instance owns one ``GmailToolService`` and therefore one cache;
    ``stop()`` runs the cache shutdown hook.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        service: Optional[GmailToolService] = None,
    ):
        """
        Initialize the bridge server.

        Args:
            config: Configuration. If None, uses the loaded global configuration.
            service: Tool service. If None, one is built with a fresh cache.
        """
        self.config = config or get_config()
        self.service = service or GmailToolService(build_cache(self.config), self.config)

        self.app: Optional[Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        # session id -> last seen (monotonic seconds)
        self.sessions: Dict[str, float] = {}
        self._stopped = False
        self._stop_event: Optional[asyncio.Event] = None

        self._methods: Dict[str, MethodHandler] = {
            "initialize": self._rpc_initialize,
            "ping": self._rpc_ping,
            "tools/list": self._rpc_tools_list,
            "tools/call": self._rpc_tools_call,
        }

        logger.info("Gmail MCP server initialized", extra={
            "host": self.config.server.host,
            "port": self.config.server.port,
            "http_path": self.config.server.http_path,
        })

    @property
    def cache(self) -> ExpiringResourceCache:
        return self.service.cache

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start listening."""
        try:
            self.app = self.create_app()
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, self.config.server.host, self.config.server.port)
            await self.site.start()
            self._stopped = False

            base = f"http://{self.config.server.host}:{self.config.server.port}"
            logger.info(f"Gmail MCP server listening on {base}")
            logger.info(f"MCP clients can connect to: {base}{self.config.server.http_path}")
        except Exception as e:
            logger.error(f"Failed to start Gmail MCP server: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Dispose cached clients and stop the HTTP server. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down Gmail MCP server")

        try:
            await self.service.shutdown()
        finally:
            if self.site:
                await self.site.stop()
                self.site = None
            if self.runner:
                await self.runner.cleanup()
                self.runner = None
            self.sessions.clear()

        logger.info("Server closed")

    async def run_forever(self) -> None:
        """Start and serve until SIGINT/SIGTERM, then shut down cleanly."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Signal handlers are unavailable off the main thread and on Windows.
                pass

        await self.start()
        try:
            await self._stop_event.wait()
            logger.info("Received shutdown signal")
        finally:
            await self.stop()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def create_app(self) -> Application:
        """Create the aiohttp application with middleware and routes."""
        app = Application()

        app.middlewares.append(self._request_logging_middleware)
        app.middlewares.append(self._cors_middleware)
        app.middlewares.append(self._error_handling_middleware)

        path = self.config.server.http_path
        app.router.add_post(path, self._handle_mcp_request)
        app.router.add_delete(path, self._handle_session_delete)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/stats", self._handle_stats)
        app.router.add_get("/oauth/callback", self._handle_oauth_callback)

        return app

    def _open_session(self) -> str:
        """Register a new session, first dropping idle ones and then the oldest over the cap."""
        now = time.monotonic()
        idle_cutoff = now - self.config.server.session_idle_seconds
        for stale in [sid for sid, seen in self.sessions.items() if seen < idle_cutoff]:
            del self.sessions[stale]

        excess = len(self.sessions) - self.config.server.max_sessions + 1
        if excess > 0:
            for oldest in sorted(self.sessions, key=self.sessions.__getitem__)[:excess]:
                del self.sessions[oldest]
            logger.debug(f"Evicted {excess} MCP sessions over the limit")

        session_id = new_session_id()
        self.sessions[session_id] = now
        return session_id

    async def _handle_mcp_request(self, request: Request) -> Response:
        """Handle one JSON-RPC message or a batch."""
        try:
            user_id = self.service.resolve_user(request.headers.get(USER_HEADER))
        except InvalidUserError as e:
            return web.json_response(
                rpc_error(None, RPCError(INVALID_REQUEST, e.message, e.to_dict())),
                status=400,
            )
        session_id = request.headers.get(SESSION_HEADER)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response(
                rpc_error(None, RPCError(PARSE_ERROR, "Parse error: Invalid JSON")),
                status=400,
            )

        headers: Dict[str, str] = {}
        if isinstance(body, dict) and body.get("method") == "initialize" and not session_id:
            session_id = self._open_session()
            headers[SESSION_HEADER] = session_id
            logger.info(f"New MCP session initialized: {session_id}", extra={"user_id": user_id})
        elif session_id in self.sessions:
            self.sessions[session_id] = time.monotonic()

        if isinstance(body, list):
            if not body:
                return web.json_response(
                    rpc_error(None, RPCError(INVALID_REQUEST, "Empty batch")), status=400
                )
            replies = [await self._dispatch(item, user_id, session_id) for item in body]
            replies = [reply for reply in replies if reply is not None]
            if not replies:
                return web.Response(status=202, headers=headers)
            return web.json_response(replies, headers=headers)

        reply = await self._dispatch(body, user_id, session_id)
        if reply is None:
            return web.Response(status=202, headers=headers)
        return web.json_response(reply, headers=headers)

    async def _dispatch(self, raw: Any, user_id: str, session_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not isinstance(raw, dict):
            return rpc_error(None, RPCError(INVALID_REQUEST, "Request must be a JSON object"))

        try:
            rpc = RPCRequest.model_validate(raw)
        except ValidationError as e:
            return rpc_error(raw.get("id"), RPCError(
                INVALID_REQUEST,
                "Invalid request",
                e.errors(include_url=False, include_context=False, include_input=False),
            ))
        rpc.user_id = user_id
        rpc.session_id = session_id

        if rpc.is_notification:
            logger.debug(f"Notification {rpc.method}", extra={"user_id": user_id})
            return None

        handler = self._methods.get(rpc.method)
        if handler is None:
            return rpc_error(rpc.id, RPCError(METHOD_NOT_FOUND, f"Method not found: {rpc.method}"))

        try:
            return rpc_result(rpc.id, await handler(rpc))
        except RPCError as e:
            return rpc_error(rpc.id, e)
        except GmailMCPError as e:
            logger.warning(f"{rpc.method} failed for {user_id}: {e}")
            return rpc_error(rpc.id, RPCError(SERVER_ERROR, e.message, e.to_dict()))
        except Exception as e:
            logger.exception(f"Unexpected error handling {rpc.method}")
            return rpc_error(rpc.id, RPCError(INTERNAL_ERROR, f"Internal error: {e}"))

    # ------------------------------------------------------------------
    # JSON-RPC methods
    # ------------------------------------------------------------------

    async def _rpc_initialize(self, rpc: RPCRequest) -> Dict[str, Any]:
        return {
            "protocolVersion": rpc.param("protocolVersion") or PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {
                "name": self.config.server.name,
                "version": self.config.server.version or __version__,
            },
        }

    async def _rpc_ping(self, rpc: RPCRequest) -> Dict[str, Any]:
        return {}

    async def _rpc_tools_list(self, rpc: RPCRequest) -> Dict[str, Any]:
        tools = await self.service.list_tools(rpc.user_id)
        return {"tools": [tool.to_mcp() for tool in tools]}

    async def _rpc_tools_call(self, rpc: RPCRequest) -> Dict[str, Any]:
        name = rpc.param("name")
        if not isinstance(name, str) or not name:
            raise RPCError(INVALID_PARAMS, "tools/call requires a tool name")
        arguments = rpc.param("arguments") or {}
        if not isinstance(arguments, dict):
            raise RPCError(INVALID_PARAMS, "tools/call arguments must be an object")
        return await self.service.call_tool(rpc.user_id, name, arguments)

    # ------------------------------------------------------------------
    # Plain HTTP endpoints
    # ------------------------------------------------------------------

    async def _handle_session_delete(self, request: Request) -> Response:
        session_id = request.headers.get(SESSION_HEADER)
        if session_id and self.sessions.pop(session_id, None) is not None:
            logger.info(f"MCP session closed: {session_id}")
            return web.Response(status=200)
        return web.Response(status=404)

    async def _handle_health(self, request: Request) -> Response:
        return web.json_response({
            "status": "healthy",
            "timestamp": time.time(),
            "sessions": len(self.sessions),
            "cached_entries": len(self.cache),
        })

    async def _handle_stats(self, request: Request) -> Response:
        return web.json_response({"cache": self.cache.get_stats()})

    async def _handle_oauth_callback(self, request: Request) -> Response:
        """Authorization finished for a user; forget everything cached for them."""
        try:
            user_id = self.service.resolve_user(
                request.query.get("user_id") or request.headers.get(USER_HEADER)
            )
        except InvalidUserError as e:
            return web.json_response(e.to_dict(), status=400)
        await self.service.on_authorization_completed(user_id)
        return web.json_response({
            "status": "ok",
            "user_id": user_id,
            "message": "Gmail authorization received. Gmail tools will refresh on the next request.",
        })

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    @web.middleware
    async def _request_logging_middleware(self, request: Request, handler) -> Response:
        """Log all requests."""
        start_time = time.time()
        try:
            response = await handler(request)
        except Exception as e:
            processing_time = (time.time() - start_time) * 1000
            logger.error(f"{request.method} {request.path} - Error: {e}", extra={
                "processing_time_ms": round(processing_time, 2),
                "client_ip": request.remote,
            })
            raise

        processing_time = (time.time() - start_time) * 1000
        logger.info(f"{request.method} {request.path}", extra={
            "status": response.status,
            "processing_time_ms": round(processing_time, 2),
            "client_ip": request.remote,
        })
        return response

    def _allowed_origin(self, request: Request) -> Optional[str]:
        origins = self.config.server.cors_origins
        if "*" in origins:
            return "*"
        origin = request.headers.get("Origin")
        return origin if origin in origins else None

    @web.middleware
    async def _cors_middleware(self, request: Request, handler) -> Response:
        """Answer preflight requests and add CORS headers."""
        if request.method == "OPTIONS":
            response = web.Response(status=200)
        else:
            response = await handler(request)

        origin = self._allowed_origin(request)
        if origin:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = (
                f"Content-Type, Authorization, {USER_HEADER}, {SESSION_HEADER}"
            )
            response.headers["Access-Control-Expose-Headers"] = SESSION_HEADER
        return response

    @web.middleware
    async def _error_handling_middleware(self, request: Request, handler) -> Response:
        """Turn unexpected exceptions into a JSON 500."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"Unhandled error in {request.method} {request.path}: {e}")
            return web.json_response({"error": "Internal server error"}, status=500)
