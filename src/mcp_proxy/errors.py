"""
Exception hierarchy for MCP Profile Proxy.

Only configuration and startup failures are allowed to end the process.
Everything raised below that level is caught at the component boundary
and turned into a log line or an error-flagged response.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for all proxy errors."""


class ConfigLoadError(ProxyError):
    """A profile descriptor could not be read or validated."""

    def __init__(self, profile: str, reason: str = "") -> None:
        self.profile = profile
        self.reason = reason
        message = f"Failed to load profile {profile}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class BackendConnectError(ProxyError):
    """A backend could not be opened or did not report its tools."""

    def __init__(self, backend_id: str, reason: str = "") -> None:
        self.backend_id = backend_id
        self.reason = reason
        super().__init__(f"Failed to connect to server {backend_id}: {reason}")


class BackendInvokeError(ProxyError):
    """A backend rejected or failed a tool invocation."""

    def __init__(self, backend_id: str, message: str, code: int | None = None) -> None:
        self.backend_id = backend_id
        self.code = code
        super().__init__(message)


class ConnectionClosedError(ProxyError):
    """The underlying transport to a backend is gone."""


class SessionNotFound(ProxyError):
    """A posted message referenced a stale or unknown session id."""

    def __init__(self, session_id: str | None) -> None:
        self.session_id = session_id
        super().__init__(f"No transport found for sessionId {session_id}")


class TransportCloseError(ProxyError):
    """Closing a caller transport failed. Logged, never escalated."""
