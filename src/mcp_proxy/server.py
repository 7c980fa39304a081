"""
Proxy server - the single MCP endpoint callers talk to.

Modes:
    - stdio: one caller, newline-delimited JSON-RPC on stdin/stdout
    - sse: many callers over HTTP; GET /sse opens a session stream and
      POST /messages?sessionId=<id> delivers requests into it
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any

from aiohttp import web

from mcp_proxy.connection import PROTOCOL_VERSION
from mcp_proxy.errors import ConfigLoadError, SessionNotFound
from mcp_proxy.profile import ProfileManager
from mcp_proxy.router import RequestRouter
from mcp_proxy.session import SessionRegistry
from mcp_proxy.version import __version__

if TYPE_CHECKING:
    from mcp_proxy.config import ProxyConfig

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")
SSE_KEEPALIVE = 15.0

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


def jsonrpc_error(code: int, message: str, request_id: Any = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": request_id}


def jsonrpc_result(result: Any, request_id: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "result": result, "id": request_id}


class SSESessionTransport:
    """Outbound event stream for one SSE session.

    Posted messages are handled one at a time in arrival order. Results
    that finish after the session closed are dropped.
    """

    def __init__(self, server: ProxyServer) -> None:
        self.server = server
        self.closed = False
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._outbox: asyncio.Queue[dict[str, Any] | list[Any] | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._worker = asyncio.create_task(self._process())

    async def handle_message(self, message: Any) -> None:
        if self.closed:
            raise ConnectionResetError("session is closed")
        await self._inbox.put(message)

    async def _process(self) -> None:
        while not self.closed:
            message = await self._inbox.get()
            if message is None or self.closed:
                return
            response = await self.server.handle_message(message)
            if response is not None and not self.closed:
                await self._outbox.put(response)

    async def next_message(self, timeout: float) -> dict[str, Any] | list[Any] | None:
        """Wait for the next outbound message.

        Raises:
            asyncio.TimeoutError: If nothing arrives within *timeout*
            EOFError: Once the transport is closed
        """
        message = await asyncio.wait_for(self._outbox.get(), timeout)
        if message is None:
            raise EOFError
        return message

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # In-flight calls run to completion; queued ones are dropped
        await self._inbox.put(None)
        await self._outbox.put(None)


class ProxyServer:
    """MCP server that aggregates the tools of every backend in a profile.

    Example:
        >>> server = ProxyServer(ProxyConfig(profile="developer", mode="sse"))
        >>> await server.run()
    """

    def __init__(self, config: ProxyConfig, profiles: ProfileManager | None = None) -> None:
        self.config = config
        self.profiles = profiles or ProfileManager(
            loader=config.load_profile, timeout=config.request_timeout
        )
        self.router = RequestRouter(self.profiles)
        self.sessions = SessionRegistry()

    async def start(self) -> None:
        """Activate the initial profile.

        Raises:
            ConfigLoadError: If the initial profile cannot be loaded
        """
        await self.profiles.switch_profile(self.config.profile)

    async def shutdown(self) -> None:
        """Close every session, then every backend."""
        await self.sessions.close_all()
        await self.profiles.deactivate()
        logger.info("Proxy stopped")

    async def run(self) -> None:
        """Start, serve in the configured mode, then shut down."""
        try:
            await self.start()
            if self.config.mode == "stdio":
                logger.info(
                    f"MCP Server Proxy running on stdio with profile {self.profiles.current_profile}"
                )
                await self.serve_stdio()
            else:
                await self.serve_sse()
        finally:
            await self.shutdown()

    # =========================================================================
    # JSON-RPC dispatch
    # =========================================================================

    async def handle_message(self, message: Any) -> dict[str, Any] | list[Any] | None:
        """Handle one decoded JSON-RPC message or batch.

        Returns:
            The response, or None when nothing should be sent back
        """
        if isinstance(message, list):
            if not message:
                return jsonrpc_error(INVALID_REQUEST, "Empty batch")
            responses = [await self._handle_single(item) for item in message]
            return [r for r in responses if r is not None] or None
        return await self._handle_single(message)

    async def _handle_single(self, message: Any) -> dict[str, Any] | None:
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            if isinstance(message, dict) and "method" not in message and (
                "result" in message or "error" in message
            ):
                # Response to a request we never send; ignore
                return None
            request_id = message.get("id") if isinstance(message, dict) else None
            return jsonrpc_error(INVALID_REQUEST, "Invalid request", request_id)

        method = message["method"]
        request_id = message.get("id")
        is_notification = "id" not in message
        params = message.get("params") or {}

        if is_notification:
            logger.debug(f"Notification: {method}")
            return None

        if not isinstance(params, dict):
            return jsonrpc_error(INVALID_PARAMS, "params must be an object", request_id)

        try:
            if method == "initialize":
                return jsonrpc_result(self._initialize(params), request_id)
            elif method == "ping":
                return jsonrpc_result({}, request_id)
            elif method == "tools/list":
                return jsonrpc_result(self.router.list_operations(), request_id)
            elif method == "tools/call":
                return await self._tools_call(params, request_id)
            else:
                return jsonrpc_error(METHOD_NOT_FOUND, f"Unknown method: {method}", request_id)
        except Exception as e:
            logger.exception(f"Error handling {method}")
            return jsonrpc_error(INTERNAL_ERROR, str(e), request_id)

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else PROTOCOL_VERSION
        return {
            "protocolVersion": version,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "mcp-server-proxy", "version": __version__},
        }

    async def _tools_call(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}

        if not isinstance(name, str) or not name:
            return jsonrpc_error(INVALID_PARAMS, "Missing 'name' parameter", request_id)
        if not isinstance(arguments, dict):
            return jsonrpc_error(INVALID_PARAMS, "'arguments' must be an object", request_id)

        result = await self.router.invoke(name, arguments, params.get("_meta"))
        return jsonrpc_result(result, request_id)

    # =========================================================================
    # stdio transport
    # =========================================================================

    async def serve_lines(
        self,
        lines: AsyncIterator[bytes],
        write: Callable[[bytes], Awaitable[None]],
    ) -> None:
        """Serve newline-delimited JSON-RPC until *lines* is exhausted."""
        async for line in lines:
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                response: Any = jsonrpc_error(PARSE_ERROR, "Parse error")
            else:
                response = await self.handle_message(message)
            if response is not None:
                await write((json.dumps(response) + "\n").encode())

    async def serve_stdio(self) -> None:
        """Serve a single caller over this process's stdin and stdout."""

        async def read_lines() -> AsyncIterator[bytes]:
            while True:
                line = await asyncio.to_thread(sys.stdin.buffer.readline)
                if not line:
                    return
                yield line

        async def write(data: bytes) -> None:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()

        await self.serve_lines(read_lines(), write)
        logger.info("stdin closed")

    # =========================================================================
    # SSE transport
    # =========================================================================

    def create_app(self) -> web.Application:
        """Create the aiohttp web application."""
        app = web.Application()

        app.router.add_get("/sse", self._handle_sse)
        app.router.add_post("/messages", self._handle_messages)
        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/profile/{name}", self._handle_switch_profile)

        app.on_shutdown.append(lambda _: self.sessions.close_all())

        return app

    async def serve_sse(self) -> None:
        """Serve many callers over HTTP until cancelled."""
        app = self.create_app()
        runner = web.AppRunner(app)
        await runner.setup()

        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()

        logger.info(
            f"MCP Server Proxy running on SSE at http://{self.config.host}:{self.config.port} "
            f"with profile {self.profiles.current_profile}"
        )

        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runner.cleanup()

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        """Open a session and stream its responses: GET /sse"""
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)

        transport = SSESessionTransport(self)
        session_id = self.sessions.open_session(transport)
        transport.start()
        reason = "closed"

        try:
            await response.write(
                f"event: endpoint\ndata: /messages?sessionId={session_id}\n\n".encode()
            )
            while True:
                try:
                    message = await transport.next_message(SSE_KEEPALIVE)
                except asyncio.TimeoutError:
                    await response.write(b": ping\n\n")
                    continue
                except EOFError:
                    break
                await response.write(f"event: message\ndata: {json.dumps(message)}\n\n".encode())
        except ConnectionResetError:
            reason = "disconnected"
            logger.info(f"Client disconnected (session {session_id})")
        except Exception as e:
            reason = "failed"
            logger.error(f"SSE error (session {session_id}): {e}")
        finally:
            await self.sessions.close_session(session_id, reason)

        return response

    async def _handle_messages(self, request: web.Request) -> web.Response:
        """Deliver a posted message into its session: POST /messages"""
        session_id = request.query.get("sessionId")

        if self.sessions.get(session_id) is None:
            logger.info(f"No transport found for sessionId {session_id}")
            return web.json_response({"error": "No transport found for sessionId"}, status=400)

        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response(jsonrpc_error(PARSE_ERROR, "Parse error"), status=400)

        try:
            await self.sessions.route(session_id, body)
        except (SessionNotFound, ConnectionResetError):
            return web.json_response({"error": "No transport found for sessionId"}, status=400)
        except Exception as e:
            logger.error(f"Error handling message (session {session_id}): {e}")
            return web.json_response({"error": "Internal server error"}, status=500)

        return web.Response(status=202, text="Accepted")

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Health check endpoint."""
        status = {
            "status": "healthy",
            **self.profiles.status(),
            "sessions": len(self.sessions),
        }
        return web.json_response(status)

    async def _handle_switch_profile(self, request: web.Request) -> web.Response:
        """Activate another profile: POST /profile/{name}"""
        name = request.match_info.get("name", "")

        try:
            await self.profiles.switch_profile(name)
        except ConfigLoadError as e:
            return web.json_response({"error": str(e), "profile": name}, status=400)

        logger.info(f"Switched to profile {name}")
        return web.json_response(self.profiles.status())
