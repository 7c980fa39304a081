"""
Backend connections - one live link to one backend MCP server.

A BackendConnection is created by the profile manager when a profile is
activated and closed when that profile is torn down. It is never shared
between profiles.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from mcp_proxy.connection import Connection, create_connection
from mcp_proxy.errors import BackendConnectError, BackendInvokeError, ProxyError

if TYPE_CHECKING:
    from mcp_proxy.config import BackendSpec

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[["BackendSpec", float], Connection]


def qualify(backend_id: str, tool_name: str) -> str:
    """Return the aggregated name for a backend's tool."""
    return f"{backend_id}_{tool_name}"


class ConnectionState(str, Enum):
    """Lifecycle of a backend connection."""

    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class OperationEntry:
    """A backend tool as seen through the aggregated namespace."""

    qualified_name: str
    original_name: str
    backend_id: str
    description: str = ""
    input_schema: Any = None
    tool: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_tool(cls, backend_id: str, tool: dict[str, Any]) -> OperationEntry:
        """Build an entry from a raw ``tools/list`` item."""
        name = tool["name"]
        return cls(
            qualified_name=qualify(backend_id, name),
            original_name=name,
            backend_id=backend_id,
            description=tool.get("description") or "",
            input_schema=tool.get("inputSchema"),
            tool=tool,
        )


@dataclass
class BackendConnection:
    """Owns the connection to a single backend server.

    Handles:
        - MCP handshake and tool discovery on open
        - Forwarding tool calls under their original names
        - Best-effort, idempotent close
    """

    spec: BackendSpec
    connection: Connection
    state: ConnectionState = ConnectionState.CONNECTING
    operations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def backend_id(self) -> str:
        """Backend id from the spec."""
        return self.spec.id

    @property
    def is_connected(self) -> bool:
        """True if the backend is ready and its transport is still up."""
        return self.state is ConnectionState.READY and self.connection.is_alive

    @classmethod
    async def open(
        cls,
        spec: BackendSpec,
        timeout: float = 60.0,
        connection_factory: ConnectionFactory = create_connection,
    ) -> BackendConnection:
        """Connect to a backend and fetch its tools.

        Blocks until the backend answers the handshake or the transport
        fails. A backend that fails to open releases its transport before
        the error is raised.

        Raises:
            BackendConnectError: If the handshake or tool discovery fails
        """
        backend = cls(spec=spec, connection=connection_factory(spec, timeout))

        try:
            await backend.connection.connect()
            backend.operations = await backend.list_operations()
        except Exception as e:
            await backend.close()
            if isinstance(e, BackendConnectError):
                raise
            raise BackendConnectError(spec.id, str(e) or type(e).__name__) from e

        backend.state = ConnectionState.READY
        logger.info(
            f"[{spec.id}] Connected with tools: {[t.get('name') for t in backend.operations]}"
        )
        return backend

    async def list_operations(self) -> list[dict[str, Any]]:
        """Ask the backend for its tools.

        Raises:
            BackendConnectError: If the backend cannot be queried
        """
        try:
            tools = await self.connection.list_tools()
        except ProxyError as e:
            raise BackendConnectError(self.backend_id, str(e)) from e

        valid = []
        for tool in tools:
            if isinstance(tool, dict) and isinstance(tool.get("name"), str):
                valid.append(tool)
            else:
                logger.warning(f"[{self.backend_id}] Ignoring malformed tool: {tool!r}")
        return valid

    async def invoke(self, original_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a tool on the backend by its unprefixed name.

        Raises:
            BackendInvokeError: If the backend is gone or the call fails
        """
        if not self.is_connected:
            raise BackendInvokeError(self.backend_id, f"Server {self.backend_id} is not connected")

        try:
            return await self.connection.call_tool(original_name, arguments)
        except BackendInvokeError:
            raise
        except ProxyError as e:
            raise BackendInvokeError(self.backend_id, str(e)) from e
        except Exception as e:
            logger.warning(f"[{self.backend_id}] Unexpected error calling {original_name}: {e!r}")
            raise BackendInvokeError(self.backend_id, str(e) or type(e).__name__) from e

    async def close(self) -> None:
        """Close the backend. Never raises; failures are logged."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        try:
            await self.connection.close()
        except Exception as e:
            logger.error(f"[{self.backend_id}] Error disconnecting: {e}")
        else:
            logger.debug(f"[{self.backend_id}] Closed")
