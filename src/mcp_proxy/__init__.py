"""
MCP Profile Proxy - one MCP endpoint in front of many MCP servers
=================================================================

Connects to every backend server listed in a profile and exposes all of
their tools through a single MCP server, each tool renamed to
``<backend_id>_<tool_name>`` so names never collide.

Features:
    - stdio, SSE and streamable HTTP backends
    - Profiles: swap the whole backend set at runtime
    - Failure isolation: a broken backend only loses its own tools
    - stdio or multi-session SSE serving

Example:
    >>> from mcp_proxy import ProxyConfig, ProxyServer
    >>> server = ProxyServer(ProxyConfig(profile="developer", mode="sse"))
    >>> await server.run()

Or via CLI:
    $ mcp-profile-proxy --profile developer --mode sse --port 8080
"""

from mcp_proxy.config import BackendSpec, ProfileConfig, ProxyConfig, load_profile
from mcp_proxy.profile import ProfileManager
from mcp_proxy.registry import ToolRegistry
from mcp_proxy.router import RequestRouter
from mcp_proxy.server import ProxyServer
from mcp_proxy.session import SessionRegistry
from mcp_proxy.version import __version__

__all__ = [
    "BackendSpec",
    "ProfileConfig",
    "ProfileManager",
    "ProxyConfig",
    "ProxyServer",
    "RequestRouter",
    "SessionRegistry",
    "ToolRegistry",
    "__version__",
    "load_profile",
]
