"""Per-client sessions for the multi-session SSE transport."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Any, Protocol
from uuid import uuid4

from mcp_proxy.errors import SessionNotFound, TransportCloseError

logger = logging.getLogger(__name__)


class SessionTransport(Protocol):
    """Caller-facing stream bound to one session."""

    async def handle_message(self, message: Any) -> None: ...

    async def close(self) -> None: ...


class SessionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class Session:
    """One caller's connection, identified by an opaque id."""

    id: str
    transport: SessionTransport
    state: SessionState = SessionState.OPEN
    created_at: float = field(default_factory=monotonic)

    @property
    def age_seconds(self) -> float:
        return monotonic() - self.created_at


class SessionRegistry:
    """Tracks open sessions and routes posted messages to them.

    A session can be closed by an explicit request, a transport error,
    a client disconnect or shutdown. Only the first of these has any
    effect; the state check and the move to CLOSING happen without an
    await in between, so concurrent closers cannot both win.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def open_session(self, transport: SessionTransport) -> str:
        """Register *transport* under a fresh session id."""
        session_id = uuid4().hex
        while session_id in self._sessions:
            session_id = uuid4().hex

        self._sessions[session_id] = Session(id=session_id, transport=transport)
        logger.info(f"Session opened (session {session_id}, {len(self._sessions)} open)")
        return session_id

    async def route(self, session_id: str | None, message: Any) -> None:
        """Hand a posted message to its session's transport.

        Raises:
            SessionNotFound: If the id is unknown or the session is closing
        """
        session = self.get(session_id)
        if session is None or session.state is not SessionState.OPEN:
            raise SessionNotFound(session_id)
        await session.transport.handle_message(message)

    async def close_session(self, session_id: str, reason: str = "closed") -> bool:
        """Close a session once.

        Returns:
            True if this call closed the session, False if it was already
            closing, closed or unknown
        """
        session = self._sessions.get(session_id)
        if session is None or session.state is not SessionState.OPEN:
            return False
        session.state = SessionState.CLOSING

        try:
            await session.transport.close()
        except Exception as e:
            error = TransportCloseError(f"Error closing transport (session {session_id}): {e}")
            error.__cause__ = e
            logger.error(str(error), exc_info=error)
        finally:
            self._sessions.pop(session_id, None)
            session.state = SessionState.CLOSED

        logger.info(f"Session {reason} (session {session_id}, {len(self._sessions)} open)")
        return True

    async def close_all(self) -> None:
        """Close every open session; one failure does not stop the rest."""
        session_ids = list(self._sessions)
        if not session_ids:
            return
        logger.info(f"Closing {len(session_ids)} sessions")
        await asyncio.gather(
            *(self.close_session(sid, "shut down") for sid in session_ids),
            return_exceptions=True,
        )
