"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from mcp_proxy.config import BackendSpec, ProfileConfig
from mcp_proxy.connection import Connection
from mcp_proxy.errors import ConfigLoadError, ConnectionClosedError
from mcp_proxy.profile import ProfileManager


class FakeConnection(Connection):
    """In-memory MCP server speaking the same JSON-RPC as a real backend."""

    def __init__(
        self,
        spec: BackendSpec,
        timeout: float = 60.0,
        tools: list[dict[str, Any]] | None = None,
        fail_connect: bool = False,
        failing_tools: set[str] | None = None,
    ) -> None:
        super().__init__(spec.id, timeout)
        self.spec = spec
        self.tools = tools or []
        self.fail_connect = fail_connect
        self.failing_tools = failing_tools or set()
        self.alive = False
        self.stop_count = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.notifications: list[str] = []

    @property
    def is_alive(self) -> bool:
        return self.alive and not self._closed

    def crash(self) -> None:
        """Simulate the backend process dying."""
        self.alive = False

    async def _start(self) -> None:
        if self.fail_connect:
            raise ConnectionClosedError(f"{self.name}: connection refused")
        self.alive = True

    async def _stop(self) -> None:
        self.stop_count += 1
        self.alive = False

    async def _post_notification(self, message: dict[str, Any]) -> None:
        self.notifications.append(message["method"])

    async def _send(self, message: dict[str, Any]) -> dict[str, Any]:
        if not self.alive:
            raise ConnectionClosedError(f"{self.name} is down")

        method = message["method"]
        params = message.get("params") or {}
        if method == "initialize":
            result: Any = {"serverInfo": {"name": self.name, "version": "1.0"}}
        elif method == "tools/list":
            result = {"tools": self.tools}
        elif method == "tools/call":
            name = params["name"]
            self.calls.append((name, params["arguments"]))
            if name in self.failing_tools:
                return {
                    "jsonrpc": "2.0",
                    "error": {"code": -32000, "message": f"{name} exploded"},
                    "id": message["id"],
                }
            result = {"content": [{"type": "text", "text": f"{self.name}:{name} ok"}]}
        else:
            return {
                "jsonrpc": "2.0",
                "error": {"code": -32601, "message": "Method not found"},
                "id": message["id"],
            }
        return {"jsonrpc": "2.0", "result": result, "id": message["id"]}


class FakeConnectionFactory:
    """Connection factory that serves canned tools per backend id."""

    def __init__(
        self,
        tools: dict[str, list[dict[str, Any]]] | None = None,
        failing: set[str] | None = None,
        failing_tools: set[str] | None = None,
    ) -> None:
        self.tools = tools or {}
        self.failing = failing or set()
        self.failing_tools = failing_tools or set()
        self.created: dict[str, list[FakeConnection]] = {}

    def __call__(self, spec: BackendSpec, timeout: float) -> FakeConnection:
        connection = FakeConnection(
            spec,
            timeout,
            tools=self.tools.get(spec.id, []),
            fail_connect=spec.id in self.failing,
            failing_tools=self.failing_tools,
        )
        self.created.setdefault(spec.id, []).append(connection)
        return connection

    def latest(self, backend_id: str) -> FakeConnection:
        return self.created[backend_id][-1]

    def all_connections(self) -> list[FakeConnection]:
        return [c for conns in self.created.values() for c in conns]


def make_tool(name: str, description: str = "") -> dict[str, Any]:
    return {
        "name": name,
        "description": description or f"{name} tool",
        "inputSchema": {"type": "object", "properties": {}},
    }


def make_profile(name: str, *backend_ids: str) -> ProfileConfig:
    return ProfileConfig(
        name=name,
        backends={bid: BackendSpec(id=bid, command=f"{bid}-server") for bid in backend_ids},
    )


@pytest.fixture
def sample_backend_spec() -> BackendSpec:
    """Create a sample stdio backend spec for testing."""
    return BackendSpec(
        id="test-backend",
        description="Test backend for unit tests",
        command="echo",
        args=["test"],
    )


@pytest.fixture
def sample_http_backend_spec() -> BackendSpec:
    """Create a sample streamable HTTP backend spec."""
    return BackendSpec(id="test-http", url="http://localhost:8080/mcp")


@pytest.fixture
def sample_sse_backend_spec() -> BackendSpec:
    """Create a sample SSE backend spec."""
    return BackendSpec(id="test-sse", url="http://localhost:8080/sse")


@pytest.fixture
def factory() -> FakeConnectionFactory:
    """Backends for the profiles used throughout the tests."""
    return FakeConnectionFactory(
        tools={
            "kubernetes": [make_tool("get_pods", "List pods"), make_tool("get_logs")],
            "docker": [make_tool("list_containers", "List containers")],
            "github": [make_tool("create_issue"), make_tool("search_code")],
            "slack": [make_tool("post_message")],
        }
    )


@pytest.fixture
def profiles() -> dict[str, ProfileConfig]:
    return {
        "developer": make_profile("developer", "kubernetes", "docker"),
        "research": make_profile("research", "github", "slack"),
    }


@pytest.fixture
def manager(factory, profiles) -> ProfileManager:
    """Profile manager wired to the fake backends."""

    def loader(name: str) -> ProfileConfig:
        if name not in profiles:
            raise ConfigLoadError(name, "config file not found")
        return profiles[name]

    return ProfileManager(loader=loader, connection_factory=factory)


@pytest.fixture
def developer_json(tmp_path):
    """Create a JSON profile file."""
    config_file = tmp_path / "config.developer.json"
    config_file.write_text(
        """
{
  "mcpServers": {
    "kubernetes": {"command": "npx", "args": ["-y", "mcp-server-kubernetes"]},
    "docs": {"url": "http://localhost:8000/sse"}
  }
}
"""
    )
    return config_file


@pytest.fixture
def research_yaml(tmp_path):
    """Create a YAML profile file."""
    config_file = tmp_path / "config.research.yaml"
    config_file.write_text(
        """
backends:
  github:
    command: "npx -y @modelcontextprotocol/server-github"
    env:
      GITHUB_TOKEN: "test-token"
  search:
    url: "http://localhost:9000/mcp"
    headers:
      Authorization: "Bearer token"
  archive:
    url: "http://localhost:9001/sse"
    enabled: false
"""
    )
    return config_file
