"""
Client-side MCP connections - JSON-RPC links to individual backend servers.

Supports three transport types:
    - stdio: Subprocess with newline-delimited JSON-RPC over stdin/stdout
    - http: Streamable HTTP, one POST per request with an optional session id
    - sse: Legacy SSE, GET stream for responses plus POSTs to a message URL
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import aiohttp

from mcp_proxy.errors import BackendInvokeError, ConnectionClosedError
from mcp_proxy.version import __version__

if TYPE_CHECKING:
    from mcp_proxy.config import BackendSpec

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
STOP_TIMEOUT = 5.0
# Upper bound on one stdout line from a stdio backend
STDIO_LINE_LIMIT = 16 * 1024 * 1024


async def iter_sse_events(content: aiohttp.StreamReader) -> AsyncIterator[tuple[str, str]]:
    """Yield ``(event, data)`` pairs from a text/event-stream body."""
    event = "message"
    data: list[str] = []

    async for raw in content:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data.append(line[5:].lstrip(" "))

    if data:
        yield event, "\n".join(data)


class Connection(ABC):
    """A JSON-RPC link to one MCP server.

    Subclasses move messages over their transport; this base class owns
    request ids, the MCP handshake and the tools/* calls.
    """

    def __init__(self, name: str, timeout: float = 60.0) -> None:
        self.name = name
        self.timeout = timeout
        self.server_info: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._closed = False

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """True while the transport can still carry messages."""

    @abstractmethod
    async def _start(self) -> None:
        """Bring the transport up."""

    @abstractmethod
    async def _stop(self) -> None:
        """Tear the transport down."""

    @abstractmethod
    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send a request and return the matching JSON-RPC response."""

    @abstractmethod
    async def _post_notification(self, message: dict[str, Any]) -> None:
        """Send a message that has no response."""

    async def connect(self) -> dict[str, Any]:
        """Start the transport and run the MCP initialize handshake.

        Returns:
            The server's initialize result
        """
        await self._start()
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": f"proxy-{self.name}", "version": __version__},
            },
        )
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self.notify("notifications/initialized")
        logger.info(f"[{self.name}] MCP initialized")
        return result

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a JSON-RPC request and return its result.

        Raises:
            ConnectionClosedError: If the transport is gone
            BackendInvokeError: If the server answered with an error or timed out
        """
        if self._closed:
            raise ConnectionClosedError(f"Connection to {self.name} is closed")

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            message["params"] = params

        try:
            response = await asyncio.wait_for(self._send(message), self.timeout)
        except asyncio.TimeoutError as e:
            raise BackendInvokeError(
                self.name, f"Timeout waiting for response to {method}"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectionClosedError(f"{self.name}: {e}") from e
        except (ValueError, TypeError) as e:
            raise BackendInvokeError(self.name, f"Malformed response to {method}: {e}") from e

        if not isinstance(response, dict):
            raise BackendInvokeError(self.name, f"Malformed response to {method}: {response!r:.200}")
        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise BackendInvokeError(
                    self.name, str(error.get("message", error)), error.get("code")
                )
            raise BackendInvokeError(self.name, str(error))
        return response.get("result")

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a JSON-RPC notification."""
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._post_notification(message)
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectionClosedError(f"{self.name}: {e}") from e

    async def list_tools(self) -> list[dict[str, Any]]:
        """Fetch every tool the server exposes, following pagination."""
        tools: list[dict[str, Any]] = []
        cursor: str | None = None

        while True:
            result = await self.request("tools/list", {"cursor": cursor} if cursor else None)
            result = result or {}
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Invoke a tool and return the raw result."""
        result = await self.request("tools/call", {"name": name, "arguments": arguments})
        if not isinstance(result, dict):
            raise BackendInvokeError(self.name, f"Malformed tools/call result: {result!r:.200}")
        return result

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._stop()


class _PendingMixin:
    """Futures for responses that arrive on a separate reader task."""

    name: str

    def _init_pending(self) -> None:
        self._pending: dict[Any, asyncio.Future[dict[str, Any]]] = {}

    def _expect(self, message_id: Any) -> asyncio.Future[dict[str, Any]]:
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        return future

    def _resolve(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.debug(f"[{self.name}] Ignoring non-object message: {message!r}")
            return
        future = self._pending.pop(message.get("id"), None)
        if future is None:
            logger.debug(f"[{self.name}] Dropping unmatched message: {message}")
        elif not future.done():
            future.set_result(message)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError(reason))
        self._pending.clear()


class StdioConnection(_PendingMixin, Connection):
    """MCP server running as a local subprocess."""

    def __init__(self, spec: BackendSpec, timeout: float = 60.0) -> None:
        super().__init__(spec.id, timeout)
        self.spec = spec
        self.process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()
        self._init_pending()

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed and self.process is not None and self.process.returncode is None
        )

    async def _start(self) -> None:
        command = self.spec.command_list
        if not command:
            raise ConnectionClosedError(f"[{self.name}] No command configured")

        logger.info(f"[{self.name}] Starting: {' '.join(command)}")

        proc_env = os.environ.copy()
        proc_env.update(self.spec.env)
        cwd = Path(self.spec.cwd).expanduser() if self.spec.cwd else None

        self.process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
            limit=STDIO_LINE_LIMIT,
        )
        logger.info(f"[{self.name}] Started (PID: {self.process.pid})")

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def _read_stdout(self) -> None:
        assert self.process and self.process.stdout
        try:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.debug(f"[{self.name}] Non-JSON output: {line[:200]!r}")
                    continue
                await self._dispatch(message)
        finally:
            self._fail_pending(f"{self.name} closed its output stream")
            if not self._closed:
                logger.warning(f"[{self.name}] Backend exited")

    async def _read_stderr(self) -> None:
        assert self.process and self.process.stderr
        while True:
            line = await self.process.stderr.readline()
            if not line:
                return
            logger.debug(f"[{self.name}] stderr: {line.decode(errors='replace').rstrip()}")

    async def _dispatch(self, message: Any) -> None:
        if not isinstance(message, dict):
            logger.debug(f"[{self.name}] Ignoring non-object message: {message!r}")
            return
        if "method" not in message:
            self._resolve(message)
            return
        if "id" not in message:
            logger.debug(f"[{self.name}] Notification: {message['method']}")
            return

        # Server-initiated request
        if message["method"] == "ping":
            reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Unsupported method: {message['method']}"},
            }
        with contextlib.suppress(ConnectionClosedError, OSError):
            await self._write(reply)

    async def _write(self, message: dict[str, Any]) -> None:
        if not self.is_alive:
            raise ConnectionClosedError(f"Backend {self.name} is not running")
        assert self.process and self.process.stdin
        async with self._write_lock:
            self.process.stdin.write((json.dumps(message) + "\n").encode())
            await self.process.stdin.drain()

    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        future = self._expect(message["id"])
        try:
            await self._write(message)
            return await future
        finally:
            self._pending.pop(message["id"], None)

    async def _post_notification(self, message: dict[str, Any]) -> None:
        await self._write(message)

    async def _stop(self) -> None:
        process = self.process
        if process is not None and process.returncode is None:
            logger.info(f"[{self.name}] Stopping (PID: {process.pid})")
            if process.stdin is not None:
                process.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), STOP_TIMEOUT)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._fail_pending(f"Connection to {self.name} is closed")


class StreamableHTTPConnection(Connection):
    """MCP server reached with one HTTP POST per request."""

    def __init__(self, spec: BackendSpec, timeout: float = 60.0) -> None:
        super().__init__(spec.id, timeout)
        self.spec = spec
        self._session: aiohttp.ClientSession | None = None
        self._http_session_id: str | None = None

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._session is not None and not self._session.closed

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.spec.headers,
        }
        if self._http_session_id:
            headers["mcp-session-id"] = self._http_session_id
        return headers

    async def _start(self) -> None:
        logger.info(f"[{self.name}] Initializing HTTP session...")
        self._session = aiohttp.ClientSession()

    async def _post(self, message: dict[str, Any]) -> dict[str, Any] | None:
        if not self.is_alive:
            raise ConnectionClosedError(f"Connection to {self.name} is closed")
        assert self._session is not None

        async with self._session.post(
            self.spec.url,  # type: ignore[arg-type]
            json=message,
            headers=self._headers(),
        ) as resp:
            if "mcp-session-id" in resp.headers:
                self._http_session_id = resp.headers["mcp-session-id"]
            resp.raise_for_status()

            if "id" not in message or resp.status == 202:
                return None

            if "text/event-stream" in resp.content_type:
                async for _event, data in iter_sse_events(resp.content):
                    payload = json.loads(data)
                    if isinstance(payload, dict) and payload.get("id") == message["id"]:
                        return payload
                raise ConnectionClosedError(f"{self.name} ended stream without a response")

            result = await resp.json(content_type=None)
            return result

    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        response = await self._post(message)
        if response is None:
            raise ConnectionClosedError(f"{self.name} returned no response")
        return response

    async def _post_notification(self, message: dict[str, Any]) -> None:
        await self._post(message)

    async def _stop(self) -> None:
        if self._session is None:
            return
        try:
            if self._http_session_id:
                with contextlib.suppress(aiohttp.ClientError, asyncio.TimeoutError):
                    async with self._session.delete(
                        self.spec.url,  # type: ignore[arg-type]
                        headers=self._headers(),
                        timeout=aiohttp.ClientTimeout(total=STOP_TIMEOUT),
                    ):
                        pass
        finally:
            await self._session.close()
            self._http_session_id = None


class SSEConnection(_PendingMixin, Connection):
    """MCP server using the legacy SSE transport.

    Protocol:
    1. GET /sse -> receive 'endpoint' event with message URL
    2. POST JSON-RPC messages to that URL
    3. Responses arrive as 'message' events on the GET stream
    """

    def __init__(self, spec: BackendSpec, timeout: float = 60.0) -> None:
        super().__init__(spec.id, timeout)
        self.spec = spec
        self._session: aiohttp.ClientSession | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._endpoint_ready = asyncio.Event()
        self._message_url: str | None = None
        self._stream_open = False
        self._stream_error: BaseException | None = None
        self._init_pending()

    @property
    def is_alive(self) -> bool:
        return not self._closed and self._stream_open

    async def _start(self) -> None:
        logger.info(f"[{self.name}] Initializing SSE session...")
        self._session = aiohttp.ClientSession(headers=self.spec.headers)
        self._stream_open = True
        self._stream_task = asyncio.create_task(self._read_stream())

        waiter = asyncio.create_task(self._endpoint_ready.wait())
        done, _ = await asyncio.wait(
            {waiter, self._stream_task},
            timeout=self.timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if waiter not in done:
            waiter.cancel()
            if self._stream_error is not None:
                raise ConnectionClosedError(
                    f"{self.name}: SSE connect failed: {self._stream_error}"
                )
            raise ConnectionClosedError(f"{self.name}: No SSE endpoint received")

        logger.info(f"[{self.name}] SSE endpoint: {self._message_url}")

    async def _read_stream(self) -> None:
        assert self._session is not None
        try:
            async with self._session.get(
                self.spec.url,  # type: ignore[arg-type]
                headers={"Accept": "text/event-stream"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout),
            ) as resp:
                resp.raise_for_status()
                async for event, data in iter_sse_events(resp.content):
                    if event == "endpoint":
                        self._message_url = urljoin(self.spec.url, data)  # type: ignore[type-var]
                        self._endpoint_ready.set()
                    elif event == "message":
                        try:
                            self._resolve(json.loads(data))
                        except ValueError:
                            logger.debug(f"[{self.name}] Bad SSE payload: {data[:200]}")
        except (aiohttp.ClientError, OSError) as e:
            self._stream_error = e
            logger.warning(f"[{self.name}] SSE stream error: {e}")
        finally:
            self._stream_open = False
            self._fail_pending(f"SSE stream from {self.name} ended")

    async def _post(self, message: dict[str, Any]) -> None:
        if not self.is_alive or self._message_url is None:
            raise ConnectionClosedError(f"Connection to {self.name} is closed")
        assert self._session is not None
        async with self._session.post(
            self._message_url,
            json=message,
            headers={"Content-Type": "application/json"},
        ) as resp:
            resp.raise_for_status()

    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        future = self._expect(message["id"])
        try:
            await self._post(message)
            return await future
        finally:
            self._pending.pop(message["id"], None)

    async def _post_notification(self, message: dict[str, Any]) -> None:
        await self._post(message)

    async def _stop(self) -> None:
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, aiohttp.ClientError):
                await self._stream_task
        if self._session is not None:
            await self._session.close()
        self._stream_open = False
        self._fail_pending(f"Connection to {self.name} is closed")


def create_connection(spec: BackendSpec, timeout: float = 60.0) -> Connection:
    """Build the right connection type for a backend spec."""
    transport = spec.transport_type
    if transport == "stdio":
        return StdioConnection(spec, timeout)
    elif transport == "sse":
        return SSEConnection(spec, timeout)
    else:
        return StreamableHTTPConnection(spec, timeout)
