"""Flat tool namespace aggregated from every connected backend."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from mcp_proxy.backend import OperationEntry

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Maps qualified tool names to the backend tools behind them.

    Names are ``<backend_id>_<tool_name>``. Backend ids are unique within a
    profile, so entries from different backends cannot collide. Listing
    order follows registration order.
    """

    def __init__(self) -> None:
        self._entries: dict[str, OperationEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, qualified_name: object) -> bool:
        return qualified_name in self._entries

    def __iter__(self) -> Iterator[OperationEntry]:
        return iter(self._entries.values())

    def build(self, backend_id: str, operations: list[dict[str, Any]]) -> None:
        """Register every tool a backend reported."""
        for tool in operations:
            entry = OperationEntry.from_tool(backend_id, tool)
            if entry.qualified_name in self._entries:
                logger.warning(f"[{backend_id}] Duplicate tool {entry.original_name}, replacing")
            self._entries[entry.qualified_name] = entry

    def lookup(self, qualified_name: str) -> OperationEntry | None:
        return self._entries.get(qualified_name)

    def list(self, profile_name: str) -> list[dict[str, Any]]:
        """Return tools as callers see them.

        Each description is prefixed with ``[<profile>/<backend_id>]``.
        The prefix is display-only and plays no part in lookup.
        """
        return [
            {
                **entry.tool,
                "name": entry.qualified_name,
                "description": f"[{profile_name}/{entry.backend_id}] {entry.description}",
            }
            for entry in self._entries.values()
        ]

    def backend_ids(self) -> list[str]:
        """Backends that contributed at least one tool."""
        return list(dict.fromkeys(entry.backend_id for entry in self._entries.values()))

    def count_for(self, backend_id: str) -> int:
        return sum(1 for entry in self._entries.values() if entry.backend_id == backend_id)

    def clear(self) -> None:
        self._entries.clear()
