"""
Request routing - serves tools/list and tools/call against the registry.

Unknown tools, disconnected backends and backend failures all come back
as ordinary results with ``isError`` set, so one bad call never ends the
caller's session.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from mcp_proxy.errors import BackendInvokeError
from mcp_proxy.profile import NotConnected, NotFound

if TYPE_CHECKING:
    from mcp_proxy.profile import ProfileManager

logger = logging.getLogger(__name__)


def error_result(text: str, meta: Any = None) -> dict[str, Any]:
    """Build an error-flagged tool result."""
    result: dict[str, Any] = {
        "content": [{"type": "text", "text": text}],
        "isError": True,
    }
    if meta is not None:
        result["_meta"] = meta
    return result


class RequestRouter:
    """Dispatches caller requests to the backend that owns each tool."""

    def __init__(self, profiles: ProfileManager) -> None:
        self.profiles = profiles

    def list_operations(self) -> dict[str, Any]:
        """Return every tool of the active profile."""
        return {"tools": self.profiles.list_tools()}

    async def invoke(
        self,
        qualified_name: str,
        arguments: dict[str, Any] | None = None,
        meta: Any = None,
    ) -> dict[str, Any]:
        """Call a tool by its qualified name.

        Args:
            qualified_name: ``<backend_id>_<tool_name>``
            arguments: Tool arguments, forwarded unchanged
            meta: Caller's ``_meta``, echoed back on error results

        Returns:
            The backend's result unchanged, or an error-flagged result
        """
        profile = self.profiles.current_profile
        resolution = self.profiles.resolve(qualified_name)

        if isinstance(resolution, NotFound):
            logger.info(f"Tool {qualified_name} not found in profile {profile}")
            return error_result(f"Tool {qualified_name} not found in profile {profile}", meta)

        if isinstance(resolution, NotConnected):
            logger.warning(
                f"[{resolution.backend_id}] Not connected, cannot call {qualified_name}"
            )
            return error_result(
                f"Server {resolution.backend_id} not connected in profile {profile}", meta
            )

        backend = resolution.backend
        try:
            return await backend.invoke(resolution.original_name, arguments or {})
        except BackendInvokeError as e:
            logger.warning(f"[{backend.backend_id}] Error calling {resolution.original_name}: {e}")
            return error_result(f"Error calling tool {qualified_name}: {e}", meta)
