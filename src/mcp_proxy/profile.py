"""
Profile management - owns the active set of backend connections.

Switching profiles tears down every connection of the current profile
before the new profile's backends are opened. Only one switch runs at a
time; readers never see tools from two profiles at once because the new
registry and connection set are published together once all backends
have been tried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Union

from mcp_proxy.backend import BackendConnection, OperationEntry
from mcp_proxy.connection import create_connection
from mcp_proxy.errors import BackendConnectError, ConfigLoadError
from mcp_proxy.registry import ToolRegistry

if TYPE_CHECKING:
    from mcp_proxy.backend import ConnectionFactory
    from mcp_proxy.config import BackendSpec, ProfileConfig

logger = logging.getLogger(__name__)

ProfileLoader = Callable[[str], "ProfileConfig"]


class ProfileState(str, Enum):
    """Where the manager is in an activation."""

    IDLE = "idle"
    LOADING = "loading"
    CONNECTING = "connecting"
    ACTIVE = "active"


@dataclass(frozen=True)
class Resolved:
    """A qualified name that maps to a live backend."""

    backend: BackendConnection
    original_name: str
    entry: OperationEntry = field(repr=False)


@dataclass(frozen=True)
class NotFound:
    """No tool is registered under the qualified name."""

    qualified_name: str


@dataclass(frozen=True)
class NotConnected:
    """The tool exists but its backend connection is gone."""

    backend_id: str


Resolution = Union[Resolved, NotFound, NotConnected]


class ProfileManager:
    """Activates profiles and owns their connections and tool registry.

    The registry and the connection set are only ever replaced by
    :meth:`activate` and :meth:`deactivate`, both serialized by one lock.

    Example:
        >>> manager = ProfileManager(loader=config.load_profile)
        >>> await manager.switch_profile("developer")
        >>> manager.resolve("github_create_issue")
    """

    def __init__(
        self,
        loader: ProfileLoader | None = None,
        timeout: float = 60.0,
        connection_factory: ConnectionFactory = create_connection,
    ) -> None:
        self._loader = loader
        self._timeout = timeout
        self._connection_factory = connection_factory
        self._lock = asyncio.Lock()

        self._registry = ToolRegistry()
        self._connections: dict[str, BackendConnection] = {}
        self._profile: ProfileConfig | None = None
        self._current_profile = "default"
        self.state = ProfileState.IDLE

    @property
    def current_profile(self) -> str:
        """Name used in tool descriptions and error messages."""
        return self._current_profile

    @property
    def profile(self) -> ProfileConfig | None:
        return self._profile

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def connections(self) -> Mapping[str, BackendConnection]:
        """Read-only view of the active backends."""
        return MappingProxyType(self._connections)

    @property
    def is_switching(self) -> bool:
        return self._lock.locked()

    async def switch_profile(self, name: str) -> None:
        """Load the profile called *name* and activate it.

        The descriptor is loaded before anything is torn down, so a
        profile that fails to load leaves the active one untouched.

        Raises:
            ConfigLoadError: If the profile cannot be loaded
        """
        if self._loader is None:
            raise ConfigLoadError(name, "no profile loader configured")

        async with self._lock:
            previous = self.state
            self.state = ProfileState.LOADING
            try:
                profile = self._loader(name)
            except ConfigLoadError as e:
                self.state = previous
                logger.error(f"Error reading config file for profile {name}: {e}")
                raise
            await self._activate(profile)

    async def activate(self, profile: ProfileConfig) -> None:
        """Replace the active profile with *profile*."""
        async with self._lock:
            await self._activate(profile)

    async def deactivate(self) -> None:
        """Close every backend and clear the registry. Idempotent."""
        async with self._lock:
            await self._deactivate()

    async def _activate(self, profile: ProfileConfig) -> None:
        if self._connections or self._profile is not None:
            await self._deactivate()

        self.state = ProfileState.CONNECTING
        specs = list(profile.get_enabled_backends().values())
        logger.info(f"Activating profile {profile.name} ({len(specs)} backends)")

        tasks = [asyncio.create_task(self._open_backend(profile.name, spec)) for spec in specs]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # Cancelled mid-activation: nothing opened so far may leak
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            opened = [
                t.result()
                for t in tasks
                if not t.cancelled() and t.exception() is None and t.result() is not None
            ]
            await asyncio.gather(*(backend.close() for backend in opened))
            self.state = ProfileState.IDLE
            raise

        registry = ToolRegistry()
        connections: dict[str, BackendConnection] = {}
        for backend in results:
            if backend is None:
                continue
            connections[backend.backend_id] = backend
            registry.build(backend.backend_id, backend.operations)

        self._registry = registry
        self._connections = connections
        self._profile = profile
        self._current_profile = profile.name
        self.state = ProfileState.ACTIVE

        logger.info(
            f"Profile {profile.name} active: {len(connections)}/{len(specs)} backends, "
            f"{len(registry)} tools"
        )

    async def _open_backend(self, profile_name: str, spec: BackendSpec) -> BackendConnection | None:
        try:
            return await BackendConnection.open(spec, self._timeout, self._connection_factory)
        except BackendConnectError as e:
            logger.error(f"Failed to connect to server {spec.id} in profile {profile_name}: {e}")
            return None

    async def _deactivate(self) -> None:
        connections = list(self._connections.values())

        self._registry.clear()
        self._registry = ToolRegistry()
        self._connections = {}
        self._profile = None
        self.state = ProfileState.IDLE

        if not connections:
            return

        logger.info(f"Closing {len(connections)} backends of profile {self._current_profile}")
        results = await asyncio.gather(
            *(backend.close() for backend in connections), return_exceptions=True
        )
        for backend, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(f"[{backend.backend_id}] Error disconnecting: {result}")

    def resolve(self, qualified_name: str) -> Resolution:
        """Map a qualified tool name to the backend that serves it."""
        entry = self._registry.lookup(qualified_name)
        if entry is None:
            return NotFound(qualified_name)

        backend = self._connections.get(entry.backend_id)
        if backend is None or not backend.is_connected:
            return NotConnected(entry.backend_id)

        return Resolved(backend, entry.original_name, entry)

    def list_tools(self) -> list[dict[str, Any]]:
        return self._registry.list(self._current_profile)

    def status(self) -> dict[str, Any]:
        """Summary of the active profile for health reporting."""
        backends: dict[str, dict[str, Any]] = {}
        if self._profile is not None:
            for backend_id, spec in self._profile.get_enabled_backends().items():
                backend = self._connections.get(backend_id)
                backends[backend_id] = {
                    "transport": spec.transport_type,
                    "connected": backend is not None and backend.is_connected,
                    "tools": self._registry.count_for(backend_id),
                }

        return {
            "profile": self._current_profile,
            "state": self.state.value,
            "switching": self.is_switching,
            "backends": backends,
            "tools": len(self._registry),
        }
